from __future__ import annotations

import contextvars
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator, Optional

from starlette.requests import Request

DEFAULT_LOGGER_NAME = "uvicorn.error"
logger = logging.getLogger(DEFAULT_LOGGER_NAME)

_CURRENT_TIMING: contextvars.ContextVar["RequestTiming | None"] = contextvars.ContextVar(
    "request_timing", default=None
)


@dataclass
class RequestTiming:
    method: str
    path: str
    start: float
    sql_seconds: float = 0.0

    def add_sql(self, seconds: float) -> None:
        self.sql_seconds += seconds


def has_active_timing() -> bool:
    return _CURRENT_TIMING.get() is not None


def record_sql_time(seconds: float) -> None:
    timing = _CURRENT_TIMING.get()
    if timing is None:
        return
    timing.add_sql(seconds)


@contextmanager
def request_timing(
    method: str, path: str, log: Optional[logging.Logger] = None
) -> Generator[RequestTiming, None, None]:
    start = time.perf_counter()
    timing = RequestTiming(method=method, path=path, start=start)
    token = _CURRENT_TIMING.set(timing)
    try:
        yield timing
    finally:
        total = time.perf_counter() - start
        non_sql = max(0.0, total - timing.sql_seconds)
        (log or logger).info(
            "request.timing method=%s path=%s total_ms=%.2f sql_ms=%.2f non_sql_ms=%.2f",
            method,
            path,
            total * 1000,
            timing.sql_seconds * 1000,
            non_sql * 1000,
        )
        _CURRENT_TIMING.reset(token)


async def request_timing_middleware(request: Request, call_next):
    with request_timing(request.method, request.url.path):
        return await call_next(request)
