from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse
from starlette.requests import Request

from app.business.quotations.errors import (
    ClientProvisioningFailedError,
    InvalidTransitionError,
    LeadNotFoundError,
    QuotationError,
    QuotationLockedError,
    QuotationNotFoundError,
)
from app.context import get_correlation_id
from app.core.database import TransactionTimeoutError


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


class UnauthorizedError(Exception):
    code = "unauthorized"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=asdict(payload))


_STATUS_BY_ERROR: tuple[tuple[type[Exception], int], ...] = (
    (QuotationNotFoundError, status.HTTP_404_NOT_FOUND),
    (LeadNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_400_BAD_REQUEST),
    (ClientProvisioningFailedError, status.HTTP_400_BAD_REQUEST),
    (QuotationLockedError, status.HTTP_409_CONFLICT),
    (TransactionTimeoutError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def domain_error_response(request: Request, exc: QuotationError | TransactionTimeoutError) -> JSONResponse:
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, mapped in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = mapped
            break

    details: dict[str, Any] | None = None
    if isinstance(exc, ClientProvisioningFailedError):
        details = {"reason": exc.reason.value}
    elif isinstance(exc, InvalidTransitionError):
        details = {"current": exc.current, "target": exc.target}
    elif isinstance(exc, TransactionTimeoutError):
        details = {"step": exc.step, "timeout_seconds": exc.timeout_seconds}

    return error_response(request, status_code=status_code, code=exc.code, message=str(exc), details=details)


async def _unauthorized_handler(request: Request, exc: Exception) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_401_UNAUTHORIZED,
        code=UnauthorizedError.code,
        message=str(exc) or "Authentication required",
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(UnauthorizedError, _unauthorized_handler)
