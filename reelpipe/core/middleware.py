"""HTTP middleware: request context and access log, metrics, tracing."""

import logging
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from reelpipe.core.logging import get_correlation_id, log_error, log_info, set_correlation_id
from reelpipe.core.metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
    HTTP_REQUESTS_TOTAL,
)
from reelpipe.core.tracing import add_span_attributes, create_span

access_logger = logging.getLogger("reelpipe.access")

CORRELATION_ID_HEADER = "X-Correlation-ID"

_UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)
_MEDIA_FILE_RE = re.compile(r"/[^/]+\.(ts|m3u8|mp4|jpg)$", re.IGNORECASE)


def route_template(path: str) -> str:
    """``/api/v1/stream/<uuid>/360p/<uuid>_360p_004.ts`` -> ``/api/v1/stream/{id}/360p/{file}``."""
    return _MEDIA_FILE_RE.sub("/{file}", _UUID_RE.sub("{id}", path))


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a correlation id to the request and writes the access log line.

    The id is taken from ``X-Correlation-ID`` when the client sends one and
    echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        started = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception as e:
                log_error(
                    access_logger,
                    "Request failed",
                    exception=e,
                    method=request.method,
                    path=request.url.path,
                    duration_ms=_elapsed_ms(started),
                )
                raise

            response.headers[CORRELATION_ID_HEADER] = correlation_id
            log_info(
                access_logger,
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                range=request.headers.get("range"),
                content_length=response.headers.get("content-length"),
                duration_ms=_elapsed_ms(started),
            )
            return response
        finally:
            set_correlation_id(None)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Request count, latency and in-flight gauge per route template."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        endpoint = route_template(request.url.path)
        in_progress = HTTP_REQUESTS_IN_PROGRESS.labels(method=method, endpoint=endpoint)

        in_progress.inc()
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            HTTP_REQUEST_DURATION_SECONDS.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - started
            )
            HTTP_REQUESTS_TOTAL.labels(
                method=method, endpoint=endpoint, status_code=str(status_code)
            ).inc()
            in_progress.dec()


class TracingMiddleware(BaseHTTPMiddleware):
    """One server span per request, named after the route template."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        endpoint = route_template(request.url.path)
        with create_span(
            f"{request.method} {endpoint}",
            attributes={
                "http.method": request.method,
                "http.route": endpoint,
                "http.target": request.url.path,
                "correlation_id": get_correlation_id(),
            },
            kind=trace.SpanKind.SERVER,
        ):
            response = await call_next(request)
            add_span_attributes({"http.status_code": response.status_code})
            return response
