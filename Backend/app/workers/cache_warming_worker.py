# Backend/app/workers/cache_warming_worker.py
"""
Cache Warming Worker

Pre-loads popular landmark areas into the POI cache so the first users of the day
hit warm keys. Runs as a background task inside the API (start/stop on app
lifecycle) or once from the command line:

    python -m app.workers.cache_warming_worker --once
"""
from __future__ import annotations

import argparse
import asyncio
from typing import Optional

from app.core.config import Settings, WarmingSettings
from app.core.logging import configure_logging, get_logger
from services.poi_search_service import PoiSearchService, build_poi_search_service

logger = get_logger()


class CacheWarmingWorker:
    """
    Periodically warms the cache; `stop()` interrupts both the wait between runs
    and the pacing between areas of a run in progress.
    """

    def __init__(self, searcher: PoiSearchService, settings: Optional[WarmingSettings] = None) -> None:
        self.searcher = searcher
        self.settings = settings or WarmingSettings()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._stop_event.clear()
        self._task = loop.create_task(self._run(), name="cache-warming-worker")
        logger.info("cache_warming_worker_started", interval_s=self.settings.interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
            logger.info("cache_warming_worker_stopped", runs=self.runs)

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True when a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _run(self) -> None:
        if await self._wait(self.settings.initial_delay_s):
            return
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("cache_warming_run_failed")
            if await self._wait(self.settings.interval_s):
                return

    async def run_once(self) -> int:
        preloaded = await self.searcher.warm_cache(stop_event=self._stop_event)
        self.runs += 1
        self.searcher.monitor.log_report()
        return preloaded


async def main_async(once: bool) -> int:
    settings = Settings()
    searcher = build_poi_search_service(settings)
    worker = CacheWarmingWorker(searcher, settings.warming)
    try:
        if once:
            preloaded = await worker.run_once()
            logger.info("cache_warming_cli_done", preloaded=preloaded)
            return 0
        worker.start()
        try:
            await asyncio.Event().wait()
        finally:
            await worker.stop()
    finally:
        await searcher.aclose()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Warm the POI search cache")
    parser.add_argument("--once", action="store_true", help="Run a single warming pass and exit")
    args = parser.parse_args()

    configure_logging(service_name="worker", level=Settings().LOG_LEVEL)
    raise SystemExit(asyncio.run(main_async(args.once)))


if __name__ == "__main__":
    main()
