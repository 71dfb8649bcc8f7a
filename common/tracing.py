"""
Request tracing for the escrow API.

Each request gets one span. Its ids arrive in (or are minted for) the
X-Trace-ID / X-Span-ID headers, are echoed back on the response, are exposed
on request.state for the error envelope and are forwarded to the
advertisement service. A finished span is logged as a single `TRACE:` JSON
line.
"""
import json
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

from fastapi import Request

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"
SPAN_HEADER = "X-Span-ID"

current_trace_id: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
current_span_id: ContextVar[Optional[str]] = ContextVar("span_id", default=None)

class RequestSpan:
    def __init__(self, service: str, operation: str, trace_id: str = None, parent_span_id: str = None):
        self.service = service
        self.operation = operation
        self.trace_id = trace_id or uuid.uuid4().hex[:16]
        self.span_id = uuid.uuid4().hex[:8]
        self.parent_span_id = parent_span_id
        self.tags: Dict[str, Any] = {}
        self.failed = False
        self._started = time.perf_counter()
        self._wall_start = time.time()

        current_trace_id.set(self.trace_id)
        current_span_id.set(self.span_id)

    def tag(self, key: str, value) -> "RequestSpan":
        self.tags[key] = value
        return self

    def fail(self, error: Exception = None) -> "RequestSpan":
        self.failed = True
        if error is not None:
            self.tag("error.type", type(error).__name__)
        return self

    def record(self) -> dict:
        return {
            "service": self.service,
            "operation": self.operation,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "status": "error" if self.failed else "ok",
            "duration_ms": round((time.perf_counter() - self._started) * 1000, 2),
            "timestamp": self._wall_start,
            "tags": self.tags,
        }

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.fail(exc_val)
        logger.info(f"TRACE: {json.dumps(self.record(), default=str)}")

class Tracer:
    def __init__(self, service_name: str):
        self.service_name = service_name

    def span_for(self, request: Request) -> RequestSpan:
        span = RequestSpan(
            self.service_name,
            f"{request.method} {request.url.path}",
            trace_id=request.headers.get(TRACE_HEADER),
            parent_span_id=request.headers.get(SPAN_HEADER),
        )
        span.tag("http.method", request.method)
        span.tag("user.authenticated", request.headers.get("authorization", "").startswith("Bearer "))
        return span

escrow_tracer = Tracer("escrow-service")

def get_trace_headers(request: Request = None) -> Dict[str, str]:
    """Headers that carry the current trace to a downstream service.

    Pass the request when calling from a worker thread, where the context
    variables set by the middleware are not visible.
    """
    if request is not None:
        trace_id = getattr(request.state, "trace_id", None)
        span_id = getattr(request.state, "request_id", None)
    else:
        trace_id, span_id = current_trace_id.get(), current_span_id.get()
    headers = {}
    if trace_id:
        headers[TRACE_HEADER] = trace_id
    if span_id:
        headers[SPAN_HEADER] = span_id
    return headers

async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    with tracer.span_for(request) as span:
        request.state.trace_id = span.trace_id
        request.state.request_id = span.span_id
        response = await call_next(request)

        span.tag("http.status_code", response.status_code)
        if response.status_code >= 500:
            span.fail()
        response.headers[TRACE_HEADER] = span.trace_id
        response.headers[SPAN_HEADER] = span.span_id
        return response
