"""Exception handlers rendering a stable error envelope."""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from ledgerly.schemas.auth import ErrorResponse
from ledgerly.services.errors import AuthError
from ledgerly.services.users import UserAllocationError

logger = logging.getLogger(__name__)


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(code=code, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def auth_error_response(exc: AuthError) -> JSONResponse:
    return error_response(exc.status_code, exc.code, exc.message)


def register_exception_handlers(app: FastAPI) -> None:
    """Map service errors to envelopes; only storage failures become a 500."""

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        logger.info(f"{request.method} {request.url.path} -> {exc.code}")
        return auth_error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(400, "INVALID_INPUT", "Invalid request data")

    @app.exception_handler(UserAllocationError)
    async def handle_allocation_error(request: Request, exc: UserAllocationError):
        logger.error(f"User allocation failed on {request.url.path}")
        return error_response(500, "INTERNAL_ERROR", "Internal Server Error")

    @app.exception_handler(SQLAlchemyError)
    async def handle_storage_error(request: Request, exc: SQLAlchemyError):
        logger.exception(f"Storage failure on {request.method} {request.url.path}")
        return error_response(500, "INTERNAL_ERROR", "Internal Server Error")
