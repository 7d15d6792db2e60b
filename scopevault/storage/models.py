from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "scopevault"


class ScopePhase(str, Enum):
    """Observable scope status as reported by the backend.

    ``PENDING`` covers the window between an accepted create and the backend
    reporting the scope usable; clusters that expose no such phase simply
    never report it.
    """

    PENDING = "Pending"
    ACTIVE = "Active"
    TERMINATING = "Terminating"


@dataclass
class Scope:
    name: str
    phase: ScopePhase
    finalizers: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.phase == ScopePhase.ACTIVE


@dataclass
class SecretResource:
    scope: str
    name: str
    data: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class CredentialRecord:
    """The ``credentials`` secret stored in every tenant scope."""

    username: str
    password_hash: str
    extra: Dict[str, str] = field(default_factory=dict)

    USERNAME_KEY = "username"
    PASSWORD_KEY = "password"

    @classmethod
    def from_data(cls, data: Dict[str, str]) -> "CredentialRecord":
        extra = {
            k: v
            for k, v in data.items()
            if k not in (cls.USERNAME_KEY, cls.PASSWORD_KEY)
        }
        return cls(
            username=data.get(cls.USERNAME_KEY, ""),
            password_hash=data.get(cls.PASSWORD_KEY, ""),
            extra=extra,
        )

    def to_data(self) -> Dict[str, str]:
        data = dict(self.extra)
        data[self.USERNAME_KEY] = self.username
        data[self.PASSWORD_KEY] = self.password_hash
        return data
