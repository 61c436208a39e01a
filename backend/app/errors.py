"""Map core errors onto HTTP responses."""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from checkpay.errors import (
    ApprovalStepError,
    CollaboratorFailure,
    CommerceError,
    DuplicateEscrowError,
    InvalidCheckpointIndexError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    RateUnavailableError,
    UnauthorizedError,
    UnknownAssetError,
)

from .logging_config import get_logger

logger = get_logger("checkpay.api.errors")

# Most specific first
_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (UnauthorizedError, status.HTTP_403_FORBIDDEN),
    (InvalidInputError, status.HTTP_400_BAD_REQUEST),
    (InvalidCheckpointIndexError, status.HTTP_400_BAD_REQUEST),
    (UnknownAssetError, status.HTTP_400_BAD_REQUEST),
    (RateUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (DuplicateEscrowError, status.HTTP_409_CONFLICT),
    (CollaboratorFailure, status.HTTP_502_BAD_GATEWAY),
)


def status_for(error: CommerceError) -> int:
    """HTTP status for a core error."""
    if isinstance(error, ApprovalStepError):
        if isinstance(error.cause, RateUnavailableError):
            return status.HTTP_503_SERVICE_UNAVAILABLE
        return status.HTTP_502_BAD_GATEWAY
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


async def commerce_error_handler(request: Request, exc: CommerceError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.to_dict()}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({code}): {exc.message}")
    body = exc.to_dict()
    body["detail"] = exc.message
    return JSONResponse(status_code=code, content=body)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CommerceError, commerce_error_handler)
