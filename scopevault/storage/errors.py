from __future__ import annotations

from typing import Any, Dict, Optional


class BackendError(Exception):
    """Raised when the resource backend rejects an operation.

    A bare ``BackendError`` is terminal; the subclasses tell callers whether
    the resource state or a passing hiccup caused the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[str] = None,
        name: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.name = name
        self.detail = detail or {}


class ResourceNotFound(BackendError):
    """The addressed scope or secret does not exist."""


class ResourceAlreadyExists(BackendError):
    """A create collided with an existing scope or secret."""


class TransientBackendError(BackendError):
    """Backend hiccup (timeout, throttling, 5xx); retrying may succeed."""


__all__ = [
    "BackendError",
    "ResourceNotFound",
    "ResourceAlreadyExists",
    "TransientBackendError",
]
