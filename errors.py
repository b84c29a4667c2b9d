import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from pymongo.errors import DuplicateKeyError, PyMongoError

log = logging.getLogger(__name__)


class AppError(HTTPException):
    """Operational error with a stable status code and machine-readable code."""

    status = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(status_code=status_code or self.status, detail=message)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return self.detail


class BadRequest(AppError):
    status = 400
    code = "BAD_REQUEST"


class Unauthenticated(AppError):
    status = 401
    code = "AUTHENTICATION_ERROR"

    def __init__(self, message: str = "Authentication required", code: Optional[str] = None):
        super().__init__(message, code=code)
        self.headers = {"WWW-Authenticate": "Bearer"}


class Forbidden(AppError):
    status = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Access denied", code: Optional[str] = None):
        super().__init__(message, code=code)


class NotFound(AppError):
    status = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")
        self.resource = resource


class Conflict(AppError):
    status = 409
    code = "CONFLICT"


class InsufficientStock(BadRequest):
    code = "INSUFFICIENT_STOCK"


class StockChanged(Conflict):
    code = "STOCK_CHANGED"

    def __init__(self, message: str = "Stock changed while placing your order, please retry"):
        super().__init__(message)


class CouponError(BadRequest):
    code = "COUPON_INVALID"


class PaymentGatewayError(AppError):
    status = 502
    code = "PAYMENT_GATEWAY_ERROR"

    def __init__(self, message: str = "Payment gateway error. Please try again."):
        super().__init__(message)


class PaymentGatewayUnavailable(PaymentGatewayError):
    """Timeout or connection failure; safe for the client to retry."""

    status = 503
    code = "PAYMENT_GATEWAY_UNAVAILABLE"

    def __init__(self, message: str = "Payment gateway is not reachable. Please retry."):
        super().__init__(message)


_STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "AUTHENTICATION_ERROR",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
}


def _body(request: Request, message: str, code: str, **extra) -> dict:
    body = {
        "success": False,
        "error": message,
        "code": code,
        "request_id": request.headers.get("x-request-id"),
    }
    body.update(extra)
    return body


def register_error_handlers(app: FastAPI, production: bool = False) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        log.warning("[%s] Operational error: %s", request.headers.get("x-request-id"), exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content=_body(request, exc.detail, exc.code),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        code = _STATUS_CODES.get(exc.status_code, "HTTP_ERROR")
        if exc.status_code == 404 and exc.detail == "Not Found":
            return JSONResponse(
                status_code=404,
                content=_body(request, "The requested resource was not found", "ROUTE_NOT_FOUND"),
            )
        return JSONResponse(status_code=exc.status_code, content=_body(request, str(exc.detail), code))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content=_body(request, "Validation failed", "VALIDATION_ERROR", details=details),
        )

    @app.exception_handler(DuplicateKeyError)
    async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
        log.warning("Duplicate key: %s", exc)
        return JSONResponse(
            status_code=409,
            content=_body(request, "A record with this value already exists", "CONFLICT"),
        )

    @app.exception_handler(PyMongoError)
    async def database_error_handler(request: Request, exc: PyMongoError):
        log.error("Database operation failed", exc_info=exc)
        message = "Database operation failed" if production else str(exc)
        return JSONResponse(status_code=500, content=_body(request, message, "INTERNAL_ERROR"))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        log.error("[%s] Unexpected error", request.headers.get("x-request-id"), exc_info=exc)
        message = "An unexpected error occurred" if production else str(exc)
        return JSONResponse(status_code=500, content=_body(request, message, "INTERNAL_ERROR"))
