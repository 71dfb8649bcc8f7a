"""
Error taxonomy for the escrow core and the HTTP error envelope.

Business failures subclass BusinessLogicError and carry a stable code; system
faults subclass ServiceError. The engines never retry either kind. Only
StorageUnavailableError tells the caller that resubmitting is safe.

Every error response has the shape
    {"success": false, "error": {"code", "message", "field", "context"},
     "timestamp", "trace_id", "request_id"}
"""
import logging
import time
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from common.circuit_breaker import CircuitBreakerException

logger = logging.getLogger(__name__)

class ErrorCodes:
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"

HTTP_STATUS = {
    ErrorCodes.UNAUTHORIZED: 401,
    ErrorCodes.FORBIDDEN: 403,
    ErrorCodes.VALIDATION_ERROR: 400,
    ErrorCodes.INSUFFICIENT_FUNDS: 400,
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.INVALID_STATE_TRANSITION: 409,
    ErrorCodes.INTERNAL_SERVER_ERROR: 500,
    ErrorCodes.SERVICE_UNAVAILABLE: 503,
    ErrorCodes.DATABASE_ERROR: 503,
    ErrorCodes.CIRCUIT_BREAKER_OPEN: 503,
    ErrorCodes.EXTERNAL_SERVICE_ERROR: 502,
}

class BusinessLogicError(Exception):
    code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, message: str, field: str = None, context: Dict[str, Any] = None, code: str = None):
        self.code = code or type(self).code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ValidationError(BusinessLogicError):
    """Bad input shape or range"""

class InvalidAmountRange(ValidationError):
    pass

class SelfTradeForbidden(ValidationError):
    pass

class UnknownAsset(ValidationError):
    pass

class AdvertisementInactive(ValidationError):
    pass

class AuthorizationError(BusinessLogicError):
    """Wrong actor for the attempted operation"""
    code = ErrorCodes.FORBIDDEN

Unauthorized = AuthorizationError

class StateConflictError(BusinessLogicError):
    """Transition not valid from the current state, including lost races"""
    code = ErrorCodes.INVALID_STATE_TRANSITION

InvalidStateTransition = StateConflictError

class InsufficientBalanceError(BusinessLogicError):
    code = ErrorCodes.INSUFFICIENT_FUNDS

class InsufficientSellerBalance(InsufficientBalanceError):
    pass

class NotFoundError(BusinessLogicError):
    code = ErrorCodes.NOT_FOUND

class ServiceError(Exception):
    code = ErrorCodes.SERVICE_UNAVAILABLE
    retryable = False

    def __init__(self, message: str, original_error: Exception = None, code: str = None):
        self.code = code or type(self).code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

class StorageUnavailableError(ServiceError):
    code = ErrorCodes.DATABASE_ERROR
    retryable = True

class UpstreamUnavailableError(ServiceError):
    code = ErrorCodes.EXTERNAL_SERVICE_ERROR

class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None
    request_id: Optional[str] = None

def create_error_response(request: Request, code: str, message: str, status_code: int = None,
                          field: str = None, context: Dict[str, Any] = None) -> JSONResponse:
    body = StandardErrorResponse(
        error=ErrorDetail(code=code, message=message, field=field, context=context),
        timestamp=time.time(),
        trace_id=getattr(request.state, "trace_id", None),
        request_id=getattr(request.state, "request_id", None),
    )
    return JSONResponse(status_code=status_code or HTTP_STATUS.get(code, 500),
                        content=jsonable_encoder(body.model_dump()))

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.message}",
                   extra={"error_code": exc.code, "field": exc.field})
    return create_error_response(request, exc.code, exc.message, status_code=HTTP_STATUS.get(exc.code, 400),
                                 field=exc.field, context=exc.context)

async def service_exception_handler(request: Request, exc: ServiceError):
    cause = exc.original_error or exc.__cause__
    logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message} ({cause!r})")
    return create_error_response(request, exc.code, exc.message, context={"retryable": exc.retryable})

async def circuit_breaker_exception_handler(request: Request, exc: CircuitBreakerException):
    logger.error(str(exc))
    return create_error_response(request, ErrorCodes.CIRCUIT_BREAKER_OPEN, str(exc))

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    # Drop the "body"/"query" prefix so the field matches the request schema
    loc = [str(part) for part in errors[0].get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(loc) or None
    message = errors[0].get("msg", "Invalid request")
    return create_error_response(request, ErrorCodes.VALIDATION_ERROR,
                                 f"{field}: {message}" if field else message,
                                 field=field, context={"validation_errors": jsonable_encoder(errors)})

async def http_exception_handler(request: Request, exc: HTTPException):
    code = next((c for c, status in HTTP_STATUS.items() if status == exc.status_code),
                ErrorCodes.INTERNAL_SERVER_ERROR)
    return create_error_response(request, code, str(exc.detail), status_code=exc.status_code)

async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return create_error_response(request, ErrorCodes.INTERNAL_SERVER_ERROR,
                                 "An unexpected error occurred. Please try again later.")

def add_error_handlers(app):
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(CircuitBreakerException, circuit_breaker_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
