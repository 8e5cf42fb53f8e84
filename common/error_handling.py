"""
Payment service errors.

The callback pipeline raises CallbackError subclasses and turns them into
gateway responses itself. The other routes (stk push, admin) answer with the
StandardErrorResponse envelope through the handlers registered here.
"""
import logging
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """{"success": false, "error": {...}, "timestamp": ..., "trace_id": ...}"""
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None

class ErrorCodes:
    # Callers of the service (JWT, CORS)
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    ORIGIN_NOT_ALLOWED = "ORIGIN_NOT_ALLOWED"

    # Gateway callback authenticity
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    MISSING_NONCE = "MISSING_NONCE"
    INVALID_NONCE = "INVALID_NONCE"
    INVALID_TIMESTAMP = "INVALID_TIMESTAMP"
    STALE_TIMESTAMP = "STALE_TIMESTAMP"
    REPLAY_DETECTED = "REPLAY_DETECTED"

    # Payload and lookups
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MALFORMED_CALLBACK = "MALFORMED_CALLBACK"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    PROFILE_NOT_FOUND = "PROFILE_NOT_FOUND"

    # Infrastructure
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"

# HTTPException statuses raised by routes and dependencies
_HTTP_STATUS_CODES = {
    400: ErrorCodes.VALIDATION_ERROR,
    401: ErrorCodes.UNAUTHORIZED,
    403: ErrorCodes.FORBIDDEN,
    502: ErrorCodes.EXTERNAL_SERVICE_ERROR,
}

class CallbackError(Exception):
    """Base for every error the payment pipeline resolves into a response instead of crashing"""
    status_code = 200

    def __init__(self, code: str, message: str, status_code: int = None, context: Dict[str, Any] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = context or {}
        if status_code is not None:
            self.status_code = status_code

class ConfigurationError(CallbackError):
    """Secret, store or gateway credentials missing"""
    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(ErrorCodes.CONFIGURATION_ERROR, message, status_code)

class AuthenticationError(CallbackError):
    status_code = 401

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(ErrorCodes.INVALID_SIGNATURE, message)

class ReplayError(CallbackError):
    """Stale timestamp, reused nonce or missing replay headers"""
    status_code = 401

    def __init__(self, code: str, message: str):
        super().__init__(code, message, 409 if code == ErrorCodes.REPLAY_DETECTED else 401)

class MalformedCallbackError(CallbackError):
    def __init__(self, message: str):
        super().__init__(ErrorCodes.MALFORMED_CALLBACK, message)

class NotFoundError(CallbackError):
    def __init__(self, message: str, code: str = ErrorCodes.PAYMENT_NOT_FOUND):
        super().__init__(code, message)

class PersistenceError(CallbackError):
    """A store read or write failed; surfaced through the audit log, never retried here"""

    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.PERSISTENCE_ERROR, message)
        self.original_error = original_error

def create_error_response(error_code: str, message: str, status_code: int = 500, field: str = None,
                          context: Dict[str, Any] = None, trace_id: str = None) -> JSONResponse:
    body = StandardErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field, context=context),
        timestamp=time.time(),
        trace_id=trace_id,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())

def _trace_id(request: Request) -> Optional[str]:
    return getattr(request.state, "trace_id", None)

async def callback_error_handler(request: Request, exc: CallbackError):
    """Pipeline errors raised outside the callback endpoints (stk push, admin)"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"{request.method} {request.url.path} failed: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": _trace_id(request),
    })
    return create_error_response(exc.code, exc.message, exc.status_code,
                                 context=exc.context or None, trace_id=_trace_id(request))

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body") or None
    message = first.get("msg", "Invalid request")

    logger.warning(f"Rejected request body on {request.url.path}: {field}: {message}", extra={
        "trace_id": _trace_id(request),
        "error_count": len(errors),
    })
    return create_error_response(ErrorCodes.VALIDATION_ERROR, f"Invalid value for '{field}': {message}", 400,
                                 field=field, trace_id=_trace_id(request))

async def http_exception_handler(request: Request, exc: HTTPException):
    error_code = _HTTP_STATUS_CODES.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)
    logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}", extra={
        "error_code": error_code,
        "trace_id": _trace_id(request),
    })
    return create_error_response(error_code, str(exc.detail), exc.status_code, trace_id=_trace_id(request))

async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}", extra={
        "trace_id": _trace_id(request),
    })
    # internal details stay in the log
    return create_error_response(ErrorCodes.INTERNAL_SERVER_ERROR,
                                 "An unexpected error occurred. Please try again later.", 500,
                                 trace_id=_trace_id(request))

def add_error_handlers(app: FastAPI) -> None:
    handlers = (
        (CallbackError, callback_error_handler),
        (RequestValidationError, validation_exception_handler),
        (HTTPException, http_exception_handler),
        (Exception, general_exception_handler),
    )
    for exc_class, handler in handlers:
        app.add_exception_handler(exc_class, handler)
