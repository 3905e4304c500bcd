# Backend/app/core/request_id.py
from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

_request_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)
_run_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("run_id", default=None)


def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()


def get_run_id() -> Optional[str]:
    return _run_id_ctx.get()


@contextmanager
def _scoped(var: contextvars.ContextVar[Optional[str]], value: Optional[str]) -> Iterator[str]:
    token = var.set(value or uuid.uuid4().hex)
    try:
        yield var.get()
    finally:
        var.reset(token)


def request_id_scope(incoming: Optional[str] = None):
    """API requests: reuse the caller's X-Request-Id or mint one."""
    return _scoped(_request_id_ctx, incoming)


def with_run_id(run_id: Optional[str] = None):
    """
    Tag every log line emitted inside the block with one warming run id:

        with with_run_id() as run_id:
            await searcher.warm_cache()
    """
    return _scoped(_run_id_ctx, run_id)
