"""Backend contract and naming rules shared by the memory and cluster backends."""

from __future__ import annotations

import re
from typing import Dict, List, Protocol

from scopevault.storage.models import Scope

# Scope names are DNS-1123 labels; secret names are DNS-1123 subdomains.
MAX_LABEL_LENGTH = 63
MAX_SUBDOMAIN_LENGTH = 253

_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_DNS_SUBDOMAIN = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)


class ResourceBackend(Protocol):
    """Synchronous-looking operations against an eventually-consistent store.

    Every call returns once the backend has *accepted* the request. Scope
    creation and deletion converge later; callers observe that through
    ``get_scope``.
    """

    async def create_secret(
        self, scope: str, name: str, data: Dict[str, str]
    ) -> None: ...

    async def get_secret(self, scope: str, name: str) -> Dict[str, str]: ...

    async def update_secret(
        self, scope: str, name: str, data: Dict[str, str]
    ) -> None: ...

    async def delete_secret(self, scope: str, name: str) -> None: ...

    async def list_secrets(self, scope: str) -> List[str]: ...

    async def create_scope(self, name: str) -> None: ...

    async def get_scope(self, name: str) -> Scope: ...

    async def delete_scope(self, name: str) -> None: ...

    async def finalize_scope(self, name: str) -> List[str]: ...

    async def close(self) -> None: ...


def is_dns_label(value: str) -> bool:
    return len(value) <= MAX_LABEL_LENGTH and bool(_DNS_LABEL.match(value))


def is_dns_subdomain(value: str) -> bool:
    return len(value) <= MAX_SUBDOMAIN_LENGTH and bool(_DNS_SUBDOMAIN.match(value))


def scope_name_for(identity: str, prefix: str) -> str:
    """Derive the one scope an identity may address.

    The prefix is prepended verbatim, so distinct identities always map to
    distinct scope names. Raises ``ValueError`` when the result is not a
    valid scope name.
    """
    if not identity:
        raise ValueError("identity must be non-empty")
    name = f"{prefix}{identity}"
    if not is_dns_label(name) or not is_dns_label(identity):
        raise ValueError(
            "identity must be lowercase letters, digits or '-', start and end "
            f"alphanumeric, and at most {MAX_LABEL_LENGTH - len(prefix)} characters"
        )
    return name


__all__ = [
    "ResourceBackend",
    "is_dns_label",
    "is_dns_subdomain",
    "scope_name_for",
]
