from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from peaceverse.api.schemas import Envelope, ErrorBody
from peaceverse.logging import get_logger, sanitize_error_message
from peaceverse.service.errors import ServiceError
from peaceverse.storage.errors import ConstraintViolation, StorageUnavailable

logger = get_logger(__name__)

RETRY_AFTER_SECONDS = 5

_CODES_BY_STATUS = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    503: "service_unavailable",
}


def error_envelope(
    status_code: int,
    message: str,
    details: Any = None,
    *,
    code: Optional[str] = None,
) -> JSONResponse:
    """Render an error as the standard envelope.

    503 responses carry ``Retry-After`` so clients back off before retrying.
    """
    body = ErrorBody(
        code=code or _CODES_BY_STATUS.get(status_code, "server_error"),
        message=message,
        details=details,
    )
    envelope = Envelope(status="error", error=body)
    headers = {"Retry-After": str(RETRY_AFTER_SECONDS)} if status_code == 503 else None
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def service_error_response(exc: ServiceError) -> JSONResponse:
    return error_envelope(exc.status_code, exc.message, exc.detail, code=exc.error_code)


def _request_fields(request: Request) -> dict:
    return {"path": request.url.path, "method": request.method}


async def _on_constraint_violation(request: Request, exc: ConstraintViolation):
    logger.warning("constraint_violation", detail=exc.detail, **_request_fields(request))
    return error_envelope(409, exc.message, exc.detail, code="conflict")


async def _on_storage_unavailable(request: Request, exc: StorageUnavailable):
    logger.error(
        "storage_unavailable",
        backend=exc.backend,
        error=sanitize_error_message(exc.message),
        **_request_fields(request),
    )
    return error_envelope(
        503,
        "service temporarily unavailable",
        {"kind": "store_unavailable", "retryable": True},
    )


async def _on_service_error(request: Request, exc: ServiceError):
    logger.warning(
        "request_rejected",
        status_code=exc.status_code,
        kind=exc.kind,
        **_request_fields(request),
    )
    return service_error_response(exc)


async def _on_http_exception(request: Request, exc: HTTPException):
    if isinstance(exc.detail, str):
        message, details = exc.detail, None
    else:
        message, details = "http error", exc.detail
    return error_envelope(exc.status_code, message, details)


async def _on_unhandled(request: Request, exc: Exception):
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        error_type=type(exc).__name__,
        **_request_fields(request),
    )
    return error_envelope(500, "internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    """Map storage, domain and uncaught errors onto envelope responses."""
    app.add_exception_handler(ConstraintViolation, _on_constraint_violation)
    app.add_exception_handler(StorageUnavailable, _on_storage_unavailable)
    app.add_exception_handler(ServiceError, _on_service_error)
    app.add_exception_handler(HTTPException, _on_http_exception)
    app.add_exception_handler(Exception, _on_unhandled)
