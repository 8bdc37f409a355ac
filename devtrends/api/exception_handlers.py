"""
Exception handlers mapping the DevTrends error hierarchy onto HTTP responses.

Every error body has the same shape::

    {"error": {"type": ..., "message": ..., "error_id": ..., "retryable": ...}}

Provider failures never leak provider text to callers; the details are in
the log line carrying the same ``error_id``.

Usage:
    app = FastAPI()
    configure_exception_handlers(app)
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from devtrends.common.exceptions import (
    ConfigurationError,
    LLMError,
    NotFoundError,
    QualityCheckError,
    StorageError,
    ValidationError,
)

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "AI service is temporarily unavailable. Please try again later."


class ErrorResponse:
    """Standard error response format."""

    def __init__(
        self,
        status_code: int,
        error_type: str,
        message: str,
        error_id: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status_code = status_code
        self.error_type = error_type
        self.message = message
        self.error_id = error_id or str(uuid.uuid4())
        self.details = details or {}
        self.retryable = retryable
        self.headers = headers

    def to_dict(self) -> dict[str, Any]:
        response: dict[str, Any] = {
            "error": {
                "type": self.error_type,
                "message": self.message,
                "error_id": self.error_id,
                "retryable": self.retryable,
            }
        }
        if self.details:
            response["error"]["details"] = self.details
        return response

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code, content=self.to_dict(), headers=self.headers
        )


async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Caller input rejected - 400."""
    error_id = str(uuid.uuid4())
    logger.warning(
        "Validation error: %s - error_id=%s, path=%s", exc, error_id, request.url.path
    )
    return ErrorResponse(
        status_code=400,
        error_type="ValidationError",
        message=exc.message,
        error_id=error_id,
    ).to_response()


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request body or query - 400."""
    error_id = str(uuid.uuid4())
    logger.warning(
        "Invalid request: %s - error_id=%s, path=%s", exc.errors(), error_id, request.url.path
    )
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    return ErrorResponse(
        status_code=400,
        error_type="ValidationError",
        message="Invalid request",
        error_id=error_id,
        details={"fields": fields},
    ).to_response()


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    """Missing record - 404."""
    error_id = str(uuid.uuid4())
    logger.warning("Not found: %s - error_id=%s, path=%s", exc, error_id, request.url.path)
    return ErrorResponse(
        status_code=404,
        error_type="NotFound",
        message=exc.message,
        error_id=error_id,
    ).to_response()


async def quality_check_handler(request: Request, exc: QualityCheckError) -> JSONResponse:
    """Generated output below the quality threshold - 503 (retryable)."""
    error_id = str(uuid.uuid4())
    logger.warning(
        "Quality check failed: %s - error_id=%s, path=%s", exc, error_id, request.url.path
    )
    return ErrorResponse(
        status_code=503,
        error_type="QualityCheckFailed",
        message=UNAVAILABLE_MESSAGE,
        error_id=error_id,
        retryable=True,
    ).to_response()


async def llm_error_handler(request: Request, exc: LLMError) -> JSONResponse:
    """Provider, circuit or exhausted-chain failure - 503."""
    error_id = str(uuid.uuid4())
    logger.error("LLM failure: %s - error_id=%s, path=%s", exc, error_id, request.url.path)
    return ErrorResponse(
        status_code=503,
        error_type="ServiceUnavailable",
        message=UNAVAILABLE_MESSAGE,
        error_id=error_id,
        retryable=True,
    ).to_response()


async def configuration_error_handler(
    request: Request, exc: ConfigurationError
) -> JSONResponse:
    """No usable provider configured - 503."""
    error_id = str(uuid.uuid4())
    logger.error(
        "Configuration error: %s - error_id=%s, path=%s", exc, error_id, request.url.path
    )
    return ErrorResponse(
        status_code=503,
        error_type="NoActiveProvider",
        message=UNAVAILABLE_MESSAGE,
        error_id=error_id,
    ).to_response()


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    """Shared store failure - 500."""
    error_id = str(uuid.uuid4())
    logger.error(
        "Storage error: %s - error_id=%s, path=%s",
        exc,
        error_id,
        request.url.path,
        exc_info=True,
    )
    return ErrorResponse(
        status_code=500,
        error_type="StorageError",
        message="A data access error occurred. Please try again.",
        error_id=error_id,
        retryable=True,
    ).to_response()


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything else - 500 without internal details."""
    error_id = str(uuid.uuid4())
    logger.error(
        "Unhandled exception: %s - error_id=%s, path=%s",
        exc,
        error_id,
        request.url.path,
        exc_info=exc,
    )
    return ErrorResponse(
        status_code=500,
        error_type="InternalServerError",
        message="An unexpected error occurred. Please try again later.",
        error_id=error_id,
    ).to_response()


def configure_exception_handlers(app: FastAPI) -> None:
    """Register the handlers; the most specific class wins."""
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(QualityCheckError, quality_check_handler)
    app.add_exception_handler(LLMError, llm_error_handler)
    app.add_exception_handler(ConfigurationError, configuration_error_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


__all__ = ["ErrorResponse", "configure_exception_handlers", "UNAVAILABLE_MESSAGE"]
