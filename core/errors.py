# core/errors.py
from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from telemetry.logger import get_logger

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "AUTH_REQUIRED",
    403: "ACCESS_DENIED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMIT_EXCEEDED",
}


class ApiError(HTTPException):
    def __init__(self, status_code: int, message: str, code: str, headers: Optional[dict] = None):
        super().__init__(status_code=status_code, detail=message, headers=headers)
        self.message = message
        self.code = code


def error_body(message: str, code: str, details: Any = None) -> dict:
    error = {"message": message, "code": code}
    if details is not None:
        error["details"] = details
    return {"success": False, "error": error}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if isinstance(exc, ApiError):
            message, code = exc.message, exc.code
        else:
            message = exc.detail if isinstance(exc.detail, str) else "Request failed"
            fallback = "SERVER_ERROR" if exc.status_code >= 500 else "REQUEST_ERROR"
            code = _STATUS_TO_CODE.get(exc.status_code, fallback)
        if exc.status_code >= 500:
            logger.error("http_error", path=request.url.path, status_code=exc.status_code, error_code=code)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(message, code),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
            for err in exc.errors()
        ]
        logger.info("request_validation_failed", path=request.url.path, errors=details)
        return JSONResponse(
            status_code=400,
            content=error_body("Validation failed", "VALIDATION_ERROR", details),
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return JSONResponse(status_code=500, content=error_body("Internal server error", "SERVER_ERROR"))
