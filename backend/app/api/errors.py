"""Error envelope and the exception handlers that produce it"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import BaseAPIException

logger = logging.getLogger(__name__)


def error_payload(message: str, path: str, details: Optional[Any] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "success": False,
        "error": message,
        "path": path,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if details is not None:
        payload["details"] = details
    return payload


def api_error_response(request: Request, exc: BaseAPIException) -> JSONResponse:
    """Shape an application error; used by the handler and by routes that must add cookies."""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(exc.message, request.url.path, exc.details),
    )


async def handle_api_exception(request: Request, exc: BaseAPIException) -> JSONResponse:
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(
        level,
        f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}",
        extra={"reason": getattr(exc, "reason", None)},
    )
    return api_error_response(request, exc)


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(f"Rejected request body on {request.url.path}: {len(errors)} error(s)")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_payload("Validation failed", request.url.path, errors),
    )


async def handle_database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception(f"Unhandled database error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_payload("A database error occurred. Please try again later.", request.url.path),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BaseAPIException, handle_api_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(SQLAlchemyError, handle_database_error)
