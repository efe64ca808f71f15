import logging
from enum import Enum

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    INSUFFICIENT_STOCK = "insufficient_stock"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_TRANSITION = "invalid_transition"
    INTERNAL = "internal"


STATUS_CODES = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.INSUFFICIENT_STOCK: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.INTERNAL: 500,
}

_KIND_BY_STATUS = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    405: ErrorKind.VALIDATION,
    409: ErrorKind.CONFLICT,
}


class ApiError(HTTPException):
    def __init__(self, kind: ErrorKind, message: str, headers=None):
        super().__init__(status_code=STATUS_CODES[kind], detail=message, headers=headers)
        self.kind = kind
        self.message = message


def error_body(kind: ErrorKind, message: str) -> dict:
    return {"success": False, "error": kind.value, "message": message}


async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.kind, exc.message), headers=exc.headers)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    kind = _KIND_BY_STATUS.get(exc.status_code, ErrorKind.INTERNAL)
    message = exc.detail if isinstance(exc.detail, str) else kind.value
    if exc.status_code == 404 and message == "Not Found":
        message = "Route not found"
    return JSONResponse(status_code=exc.status_code, content=error_body(kind, message), headers=getattr(exc, "headers", None))


async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        fields.append(f"{'.'.join(loc) or 'request'}: {err.get('msg')}")
    return JSONResponse(status_code=400, content=error_body(ErrorKind.VALIDATION, "; ".join(fields) or "Invalid request"))


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content=error_body(ErrorKind.INTERNAL, "Internal server error"))


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
