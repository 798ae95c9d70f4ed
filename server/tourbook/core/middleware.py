"""Custom middleware for request correlation, trace context, and access logging."""

import re
import time
import uuid
from typing import Callable, Optional

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .config import settings
from .observability import REQUEST_COUNT, REQUEST_DURATION

logger = structlog.get_logger(__name__)

TRACEPARENT_PATTERN = re.compile(
    r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$"
)


def parse_traceparent(traceparent: str) -> Optional[dict]:
    """
    Parse a W3C traceparent header.

    https://www.w3.org/TR/trace-context/

    Returns None for malformed headers, unknown versions, and all-zero ids.
    """
    match = TRACEPARENT_PATTERN.match(traceparent)
    if not match:
        return None

    version, trace_id, parent_id, flags = match.groups()
    if version != "00" or trace_id == "0" * 32 or parent_id == "0" * 16:
        return None

    return {"trace_id": trace_id, "parent_id": parent_id, "flags": flags}


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Assign a request id and trace context to every request.

    The request id comes from X-Request-ID when the caller sends one. Both
    values are bound into structlog's context variables so every log line
    emitted while handling the request carries them, and both are echoed
    on the response.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name) or str(uuid.uuid4())

        incoming = request.headers.get("traceparent")
        trace_context = parse_traceparent(incoming) if incoming else None
        if trace_context:
            trace_id = trace_context["trace_id"]
            flags = trace_context["flags"]
        else:
            trace_id = uuid.uuid4().hex
            flags = "01"
        span_id = uuid.uuid4().hex[:16]

        request.state.request_id = request_id
        request.state.trace_context = {
            "trace_id": trace_id,
            "span_id": span_id,
            "parent_span_id": trace_context["parent_id"] if trace_context else None,
            "flags": flags,
        }

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, trace_id=trace_id)

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers[self.header_name] = request_id
        response.headers["traceparent"] = f"00-{trace_id}-{span_id}-{flags}"
        tracestate = request.headers.get("tracestate")
        if tracestate:
            response.headers["tracestate"] = tracestate

        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Log each HTTP request with timing and record request metrics.

    Health and metrics probes are skipped.
    """

    def __init__(self, app: ASGIApp, skip_paths: Optional[list] = None):
        super().__init__(app)
        self.skip_paths = skip_paths or ["/health", "/ready", "/metrics", "/favicon.ico"]

    def _get_client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        if request.client:
            return request.client.host

        return "unknown"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.skip_paths:
            return await call_next(request)

        start_time = time.perf_counter()
        log = logger.bind(
            method=request.method,
            path=path,
            client_ip=self._get_client_ip(request),
        )

        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start_time
            REQUEST_COUNT.labels(method=request.method, endpoint=path, status_code="500").inc()
            REQUEST_DURATION.labels(method=request.method, endpoint=path).observe(duration)
            log.exception("request_failed", duration_ms=round(duration * 1000, 2))
            raise

        duration = time.perf_counter() - start_time
        status_code = response.status_code
        REQUEST_COUNT.labels(method=request.method, endpoint=path, status_code=str(status_code)).inc()
        REQUEST_DURATION.labels(method=request.method, endpoint=path).observe(duration)

        fields = {"status_code": status_code, "duration_ms": round(duration * 1000, 2)}
        if status_code >= 500:
            log.error("request_completed", **fields)
        elif status_code >= 400:
            log.warning("request_completed", **fields)
        else:
            log.info("request_completed", **fields)

        return response


def setup_middleware(app, enable_logging: bool = True) -> None:
    """
    Setup all middleware on the FastAPI app.

    Last added runs first, so the request context is bound before logging.
    """
    if enable_logging and settings.environment != "test":
        app.add_middleware(LoggingMiddleware)

    app.add_middleware(RequestContextMiddleware)
