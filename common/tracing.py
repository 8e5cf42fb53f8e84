"""
Trace ids for payment requests.

Each HTTP request carries one trace id, adopted from X-Trace-ID or minted
here. It tags every span log line and is stored on the callback audit row.
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
# matches the width of the audit column
MAX_TRACE_ID_LENGTH = 32

current_trace_id: ContextVar[Optional[str]] = ContextVar("payments_trace_id", default=None)

def new_trace_id() -> str:
    return uuid.uuid4().hex[:16]

class Span:
    """A timed stage of request handling; logs a single TRACE line on exit"""

    def __init__(self, service: str, operation: str, trace_id: Optional[str] = None, parent_span_id: Optional[str] = None):
        self.service = service
        self.operation = operation
        self.trace_id = trace_id or current_trace_id.get() or new_trace_id()
        self.span_id = uuid.uuid4().hex[:8]
        self.parent_span_id = parent_span_id
        self.tags: Dict[str, Any] = {}
        self.failed = False
        self._started = time.perf_counter()

    def add_tag(self, key: str, value: Any) -> "Span":
        self.tags[key] = value
        return self

    def fail(self, error: BaseException) -> "Span":
        self.failed = True
        self.tags["error"] = f"{type(error).__name__}: {error}"
        return self

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._started) * 1000

    def __enter__(self) -> "Span":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc is not None:
            self.fail(exc)
        line = {
            "service": self.service,
            "operation": self.operation,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "status": "error" if self.failed else "ok",
            "duration_ms": round(self.elapsed_ms, 2),
            "tags": self.tags,
        }
        logger.info(f"TRACE: {json.dumps(line, default=str)}")
        return False

class Tracer:
    def __init__(self, service_name: str):
        self.service_name = service_name

    def start_span(self, operation: str, trace_id: Optional[str] = None, parent_span_id: Optional[str] = None) -> Span:
        return Span(self.service_name, operation, trace_id, parent_span_id)

payments_tracer = Tracer("payment-service")

async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    """Adopt or mint the trace id, expose it on request.state and echo it back"""
    trace_id = (request.headers.get(TRACE_HEADER) or "").strip()[:MAX_TRACE_ID_LENGTH] or new_trace_id()
    request.state.trace_id = trace_id
    token = current_trace_id.set(trace_id)
    try:
        with tracer.start_span(f"{request.method} {request.url.path}", trace_id,
                               request.headers.get("X-Span-ID")) as span:
            response = await call_next(request)
            span.add_tag("http.status_code", response.status_code)
            span.failed = response.status_code >= 500
        response.headers[TRACE_HEADER] = trace_id
        return response
    finally:
        current_trace_id.reset(token)
