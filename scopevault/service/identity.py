"""Carry a verified identity alongside one in-flight request.

The carrier writes to the request's own ``state`` namespace, so nothing is
shared between requests and everything is discarded when the request ends.
Service calls never read it implicitly; the HTTP layer reads it once and
passes the identity on as an argument.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, TypeVar

_STATE_ATTR = "verified_identity"

R = TypeVar("R")


@dataclass(frozen=True)
class VerifiedIdentity:
    """An identity whose token has passed verification."""

    name: str

    def __str__(self) -> str:
        return self.name


def attach_identity(request: R, identity: VerifiedIdentity) -> R:
    """Attach ``identity`` to ``request`` and return the same request."""
    if not isinstance(identity, VerifiedIdentity):
        raise TypeError("only a VerifiedIdentity can be attached to a request")
    setattr(request.state, _STATE_ATTR, identity)  # type: ignore[attr-defined]
    return request


def read_identity(request: Any) -> Optional[VerifiedIdentity]:
    """Return the attached identity, or ``None`` when nothing was attached.

    ``None`` means "absent"; a ``VerifiedIdentity`` is returned as-is even
    when its name is empty, so callers can never mistake one for the other.
    """
    state = getattr(request, "state", None)
    if state is None:
        return None
    value = getattr(state, _STATE_ATTR, None)
    return value if isinstance(value, VerifiedIdentity) else None
