import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from app.utils.response import error_response

logger = logging.getLogger(__name__)


class AppException(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppException):
    """Request rejected before anything is sent to an external service."""

    status_code = 400


class NotFoundError(AppException):
    status_code = 404


class ExternalServiceError(AppException):
    """Generation or storage provider unreachable or answered non-2xx."""

    status_code = 502


class FormatError(AppException):
    """Malformed GLB or zip container."""

    status_code = 422


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response(exc.message),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=error_response("Internal server error"),
        )
