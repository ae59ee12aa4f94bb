from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from manifest_billing.core.errors import (
    BillingError,
    ConfirmationRequired,
    NotFoundError,
    RecognitionFailure,
    SessionAlreadyActive,
    SessionBusy,
    ValidationError,
)
from manifest_billing.core.logging import get_logger, log_event
from manifest_billing.core.storage import StorageError

logger = get_logger(__name__)

_STATUS_BY_ERROR: dict[type[BillingError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConfirmationRequired: status.HTTP_409_CONFLICT,
    SessionAlreadyActive: status.HTTP_409_CONFLICT,
    SessionBusy: status.HTTP_409_CONFLICT,
    RecognitionFailure: status.HTTP_502_BAD_GATEWAY,
}


def status_for(exc: BillingError) -> int:
    for error_type, code in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    code = status_for(exc)
    log_event(
        logger,
        "http.request.rejected",
        method=request.method,
        path=request.url.path,
        status_code=code,
        error_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    log_event(
        logger,
        "http.request.storage_unavailable",
        method=request.method,
        path=request.url.path,
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
