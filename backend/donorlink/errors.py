from __future__ import annotations

from typing import Any, Dict

from fastapi import Request, status
from fastapi.responses import JSONResponse
from loguru import logger


class DonorLinkError(Exception):
    """Base class for per-operation failures. None of them is fatal to the process."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    kind: str = "error"
    retryable: bool = False

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def to_payload(self) -> Dict[str, Any]:
        return {"detail": self.detail, "kind": self.kind, "retryable": self.retryable}


class ValidationError(DonorLinkError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    kind = "validation_error"


class SelfReference(ValidationError):
    kind = "self_reference"


class Conflict(DonorLinkError):
    status_code = status.HTTP_409_CONFLICT
    kind = "conflict"


class AlreadyExists(Conflict):
    kind = "already_exists"


class IllegalTransition(DonorLinkError):
    status_code = status.HTTP_409_CONFLICT
    kind = "illegal_transition"


class NotFound(DonorLinkError):
    status_code = status.HTTP_404_NOT_FOUND
    kind = "not_found"


class PermissionDenied(DonorLinkError):
    status_code = status.HTTP_403_FORBIDDEN
    kind = "permission_denied"


class ExternalServiceError(DonorLinkError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    kind = "external_service_error"
    retryable = True


async def donorlink_error_handler(request: Request, exc: DonorLinkError) -> JSONResponse:
    if isinstance(exc, (IllegalTransition, NotFound, ExternalServiceError)):
        logger.warning("{} {} failed: {} ({})", request.method, request.url.path, exc.detail, exc.kind)
    return JSONResponse(exc.to_payload(), status_code=exc.status_code)
