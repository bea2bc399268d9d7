from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

from .exceptions import BaseAppException
from ..utils.logging import get_logger

logger = get_logger(__name__)

def error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    """Every error leaves the API as {"error": {"code", "message", "details"}}"""
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": code,
                "message": message,
                "details": details or {}
            }
        },
        headers=headers or None
    )

async def app_exception_handler(request: Request, exc: BaseAppException):
    """Handle all application specific exceptions"""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        f"Application error: {exc.error_code} - {exc.message}",
        extra={
            "error_code": exc.error_code,
            "status_code": exc.status_code,
            "path": request.url.path,
            "details": exc.details
        }
    )
    return error_response(exc.status_code, exc.error_code, exc.message, exc.details, exc.headers)

async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies get the same envelope as service-level validation errors"""
    errors = jsonable_encoder(exc.errors())
    logger.warning(
        f"Request validation failed for {request.url.path}",
        extra={"path": request.url.path, "details": errors}
    )
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        "VALIDATION_ERROR",
        "All fields are required.",
        {"errors": errors}
    )

async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
    """Database failures never expose the driver message"""
    logger.error(
        f"Database error: {str(exc)}",
        extra={"path": request.url.path},
        exc_info=True
    )
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "DATABASE_ERROR",
        "A database error occurred"
    )

async def unhandled_exception_handler(request: Request, exc: Exception):
    """Handle any unhandled exceptions"""
    logger.error(
        f"Unhandled error: {str(exc)}",
        extra={"path": request.url.path},
        exc_info=True
    )
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_ERROR",
        "An unexpected error occurred",
        {"debug_message": str(exc)} if not isinstance(exc, HTTPException) else None
    )
