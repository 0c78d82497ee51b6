from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException


class ApiError(HTTPException):
    """HTTPException that also carries the code shown in the error envelope."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, str]] = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(status_code=type(self).status_code, detail=message, headers=headers)
        self.message = message
        self.details = details


class BadRequestError(ApiError):
    status_code = 400
    code = "VALIDATION_ERROR"


class UnauthorizedError(ApiError):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(ApiError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(ApiError):
    status_code = 404
    code = "NOT_FOUND"


class MethodNotAllowedError(ApiError):
    status_code = 405
    code = "METHOD_NOT_ALLOWED"


class NotAcceptableError(ApiError):
    status_code = 406
    code = "NOT_ACCEPTABLE"


class ConflictError(ApiError):
    status_code = 409
    code = "CONFLICT"


class PayloadTooLargeError(ApiError):
    status_code = 413
    code = "PAYLOAD_TOO_LARGE"


class UnsupportedMediaTypeError(ApiError):
    status_code = 415
    code = "UNSUPPORTED_MEDIA_TYPE"


class UnprocessableEntityError(ApiError):
    status_code = 422
    code = "UNPROCESSABLE_ENTITY"


class LockedError(ApiError):
    status_code = 423
    code = "LOCKED"


class HeaderTooLargeError(ApiError):
    status_code = 431
    code = "REQUEST_HEADER_FIELDS_TOO_LARGE"


class InternalError(ApiError):
    status_code = 500
    code = "INTERNAL_ERROR"


# plain HTTPExceptions raised by the framework itself (routing, auth helpers)
STATUS_CODES: Dict[int, str] = {
    cls.status_code: cls.code
    for cls in (
        BadRequestError,
        UnauthorizedError,
        ForbiddenError,
        NotFoundError,
        MethodNotAllowedError,
        NotAcceptableError,
        ConflictError,
        PayloadTooLargeError,
        UnsupportedMediaTypeError,
        UnprocessableEntityError,
        LockedError,
        HeaderTooLargeError,
        InternalError,
    )
}

INTERNAL_MESSAGE = "An internal error occurred"


def error_body(code: str, message: str, details: Optional[Dict[str, str]] = None) -> Dict:
    body = {"code": code, "message": message}
    if details:
        body["details"] = details
    return body


def error_response(status_code: int, code: str, message: str, details=None, headers=None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(code, message, details), headers=headers)


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.opt(exception=exc).error("Internal error: {}", exc.message)
        return error_response(exc.status_code, exc.code, INTERNAL_MESSAGE)
    logger.info("{} {} -> {} {}", request.method, request.url.path, exc.status_code, exc.message)
    return error_response(exc.status_code, exc.code, exc.message, exc.details, exc.headers)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = STATUS_CODES.get(exc.status_code, "HTTP_%d" % exc.status_code)
    message = exc.detail if isinstance(exc.detail, str) else code
    return error_response(exc.status_code, code, message, headers=getattr(exc, "headers", None))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: Dict[str, str] = {}
    for err in exc.errors():
        names = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path", "header")]
        field = names[-1] if names else "request"
        details.setdefault(field, err.get("msg", "invalid value"))
    return error_response(400, "VALIDATION_ERROR", "Validation failed", details)


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("Integrity violation reached the boundary: {}", exc.orig)
    return error_response(409, "CONFLICT", "Resource conflicts with existing data")


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.opt(exception=exc).error("Unhandled error on {} {}", request.method, request.url.path)
    return error_response(500, "INTERNAL_ERROR", INTERNAL_MESSAGE)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
