from __future__ import annotations

import contextlib
from typing import Optional

from scopevault.logging import sanitize_error_message
from scopevault.storage.errors import (
    BackendError,
    ResourceAlreadyExists,
    ResourceNotFound,
    TransientBackendError,
)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - stuck_resource (500)
    - not_ready (503)
    - transient (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class NotReadyError(ServerError):
    """A new scope did not become active in time (503)."""
    status_code = 503
    error_code = "not_ready"


class StuckResourceError(ServerError):
    """A scope survived deletion and forced finalization (500)."""
    status_code = 500
    error_code = "stuck_resource"


class TransientError(ServerError):
    """The backend hiccuped; the whole operation may be retried (503)."""
    status_code = 503
    error_code = "transient"


@contextlib.contextmanager
def translate_backend_errors(operation: str):
    """Re-raise storage-layer failures as the matching service error.

    Callers handle the outcomes that carry meaning for them (a missing
    credential record, an existing scope) before this catch-all applies.
    """
    try:
        yield
    except ResourceNotFound as exc:
        raise NotFoundError(f"{exc.kind or 'resource'} not found") from exc
    except ResourceAlreadyExists as exc:
        raise ConflictError(f"{exc.kind or 'resource'} already exists") from exc
    except TransientBackendError as exc:
        raise TransientError(
            f"{operation} failed: backend temporarily unavailable",
            detail={"retryable": True},
        ) from exc
    except BackendError as exc:
        raise ServerError(
            f"{operation} failed: {sanitize_error_message(exc.message)}"
        ) from exc


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "NotReadyError",
    "StuckResourceError",
    "TransientError",
    "translate_backend_errors",
]
