# -*- coding: utf-8 -*-
"""
RetryPolicy: reusable attempt loop with per-error-kind backoff
- Rate limits back off exponentially: base * multiplier**attempt
- Timeouts wait a short fixed delay
- Other errors wait half the base delay
- The last error is re-raised once attempts are exhausted
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from app.core.logging import get_logger

logger = get_logger()

T = TypeVar("T")


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    OTHER = "other"


def classify_error(error: BaseException) -> ErrorKind:
    kind = getattr(error, "retry_kind", None)
    if isinstance(kind, ErrorKind):
        return kind
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 429:
            return ErrorKind.RATE_LIMIT
        if status == 504:
            return ErrorKind.TIMEOUT
    text = str(error).lower()
    if "rate limit" in text or "too many requests" in text:
        return ErrorKind.RATE_LIMIT
    return ErrorKind.OTHER


def _always(_: BaseException) -> bool:
    return True


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 5.0
    multiplier: float = 2.0
    timeout_delay_s: float = 2.0
    classify: Callable[[BaseException], ErrorKind] = classify_error
    retryable: Callable[[BaseException], bool] = _always
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def delay_for(self, kind: ErrorKind, attempt: int) -> float:
        """Delay after the failed attempt with 0-based index `attempt`."""
        if kind is ErrorKind.RATE_LIMIT:
            return self.base_delay_s * (self.multiplier ** attempt)
        if kind is ErrorKind.TIMEOUT:
            return self.timeout_delay_s
        return self.base_delay_s / 2

    def with_attempts(self, max_attempts: int) -> "RetryPolicy":
        return RetryPolicy(
            max_attempts=max_attempts,
            base_delay_s=self.base_delay_s,
            multiplier=self.multiplier,
            timeout_delay_s=self.timeout_delay_s,
            classify=self.classify,
            retryable=self.retryable,
            sleep=self.sleep,
        )

    async def run(self, operation: Callable[[int], Awaitable[T]], *, label: str = "operation") -> T:
        last_exc: Optional[BaseException] = None
        attempts = max(1, self.max_attempts)

        for attempt in range(attempts):
            try:
                return await operation(attempt)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_exc = exc
                if attempt == attempts - 1 or not self.retryable(exc):
                    break
                kind = self.classify(exc)
                delay = self.delay_for(kind, attempt)
                logger.info(
                    "retry_scheduled",
                    label=label,
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    error_kind=kind.value,
                    delay_s=delay,
                    error=str(exc)[:200],
                )
                await self.sleep(delay)

        logger.warning("retry_exhausted", label=label, max_attempts=attempts, error=str(last_exc)[:200])
        assert last_exc is not None
        raise last_exc
