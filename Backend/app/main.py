# Backend/app/main.py
from __future__ import annotations

# --- ensure project root is on sys.path so `api.*` and `app.*` are both importable ---
import sys
from pathlib import Path
THIS_FILE = Path(__file__).resolve()
BACKEND_ROOT = THIS_FILE.parents[1]  # .../Backend
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))
# -------------------------------------------------------------------------

from dotenv import load_dotenv
load_dotenv(dotenv_path=".env")
from fastapi import FastAPI, APIRouter, HTTPException
from fastapi.responses import JSONResponse

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response as StarletteResponse

from app.core.config import Settings
from app.core.logging import configure_logging, logger
from app.core.request_id import request_id_scope
from app.workers.cache_warming_worker import CacheWarmingWorker
from services.poi_search_service import build_poi_search_service

from api.routers.pois import router as pois_router

settings = Settings()

configure_logging(service_name="poi-api", level=settings.LOG_LEVEL)

app = FastAPI(
    title="SnapyBara POI Search",
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)


@app.on_event("startup")
async def _startup_search() -> None:
    app.state.poi_search = build_poi_search_service(settings)
    app.state.cache_warmer = CacheWarmingWorker(app.state.poi_search, settings.warming)
    if settings.warming.enabled:
        app.state.cache_warmer.start()
    logger.info("poi_search_ready", cache_backend=settings.cache.backend, warming=settings.warming.enabled)


@app.on_event("shutdown")
async def _shutdown_cleanup() -> None:
    await app.state.cache_warmer.stop()
    await app.state.poi_search.aclose()


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        with request_id_scope(request.headers.get("x-request-id")) as req_id:
            logger.info("request_started", method=request.method, path=str(request.url.path))
            try:
                response: StarletteResponse = await call_next(request)
            except Exception as exc:
                logger.error("request_exception", error=str(exc.__class__.__name__))
                raise
            logger.info("request_ended", status_code=response.status_code)
            response.headers["X-Request-Id"] = req_id
            return response


app.add_middleware(RequestIdMiddleware)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=dict(exc.headers or {}))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


@app.get("/health")
async def health():
    return {"ok": True}


api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(pois_router)
app.include_router(api_v1_router)

logger.info("routers_registered", routers=["api_v1(pois)"])
