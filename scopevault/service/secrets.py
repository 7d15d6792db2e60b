from __future__ import annotations

import re
from typing import Dict, List

from scopevault.logging import get_logger
from scopevault.service.auth import scope_for
from scopevault.service.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
    translate_backend_errors,
)
from scopevault.service.identity import VerifiedIdentity
from scopevault.storage.common import MAX_SUBDOMAIN_LENGTH, ResourceBackend, is_dns_subdomain
from scopevault.storage.errors import ResourceAlreadyExists, ResourceNotFound

logger = get_logger(__name__)

_DATA_KEY = re.compile(r"^[-._a-zA-Z0-9]+$")


class SecretService:
    """CRUD on a tenant's arbitrary secrets.

    The scope is always derived from the verified identity passed in, never
    from request input, so a caller can only ever address its own scope.
    """

    def __init__(
        self,
        backend: ResourceBackend,
        *,
        scope_prefix: str = "user-",
        credentials_name: str = "credentials",
    ) -> None:
        self.backend = backend
        self.scope_prefix = scope_prefix
        self.credentials_name = credentials_name

    def _scope(self, identity: VerifiedIdentity) -> str:
        return scope_for(identity.name, self.scope_prefix)

    def _validate_name(self, name: str) -> str:
        if not name or not is_dns_subdomain(name):
            raise ValidationError(
                "secret name must be lowercase letters, digits, '-' or '.', "
                f"at most {MAX_SUBDOMAIN_LENGTH} characters",
                detail={"field": "name"},
            )
        if name == self.credentials_name:
            raise ValidationError(
                f"secret name {name!r} is reserved", detail={"field": "name"}
            )
        return name

    @staticmethod
    def _validate_data(data: Dict[str, str]) -> Dict[str, str]:
        if not isinstance(data, dict):
            raise ValidationError("secret data must be an object", detail={"field": "data"})
        for key, value in data.items():
            if not isinstance(key, str) or not _DATA_KEY.match(key) or len(key) > MAX_SUBDOMAIN_LENGTH:
                raise ValidationError(
                    f"invalid secret data key {key!r}", detail={"field": "data"}
                )
            if not isinstance(value, str):
                raise ValidationError(
                    f"secret data value for {key!r} must be a string",
                    detail={"field": "data"},
                )
        return dict(data)

    async def put_secret(
        self, identity: VerifiedIdentity, name: str, data: Dict[str, str]
    ) -> Dict[str, str]:
        scope = self._scope(identity)
        self._validate_name(name)
        payload = self._validate_data(data)
        with translate_backend_errors("create secret"):
            try:
                await self.backend.create_secret(scope, name, payload)
            except ResourceAlreadyExists as exc:
                raise ConflictError(f"secret {name!r} already exists") from exc
            except ResourceNotFound as exc:
                raise NotFoundError("identity not found") from exc
        logger.info("secret_created", identity=identity.name, name=name, keys=len(payload))
        return payload

    async def get_secret(self, identity: VerifiedIdentity, name: str) -> Dict[str, str]:
        scope = self._scope(identity)
        self._validate_name(name)
        with translate_backend_errors("get secret"):
            try:
                return await self.backend.get_secret(scope, name)
            except ResourceNotFound as exc:
                raise NotFoundError(f"secret {name!r} not found") from exc

    async def update_secret(
        self, identity: VerifiedIdentity, name: str, data: Dict[str, str]
    ) -> Dict[str, str]:
        """Replace the secret's whole key/value mapping.

        Concurrent updates are last-writer-wins.
        """
        scope = self._scope(identity)
        self._validate_name(name)
        payload = self._validate_data(data)
        with translate_backend_errors("update secret"):
            try:
                await self.backend.update_secret(scope, name, payload)
            except ResourceNotFound as exc:
                raise NotFoundError(f"secret {name!r} not found") from exc
        logger.info("secret_updated", identity=identity.name, name=name, keys=len(payload))
        return payload

    async def delete_secret(self, identity: VerifiedIdentity, name: str) -> None:
        scope = self._scope(identity)
        self._validate_name(name)
        with translate_backend_errors("delete secret"):
            try:
                await self.backend.delete_secret(scope, name)
            except ResourceNotFound as exc:
                raise NotFoundError(f"secret {name!r} not found") from exc
        logger.info("secret_deleted", identity=identity.name, name=name)

    async def list_secrets(self, identity: VerifiedIdentity) -> List[str]:
        scope = self._scope(identity)
        with translate_backend_errors("list secrets"):
            try:
                names = await self.backend.list_secrets(scope)
            except ResourceNotFound as exc:
                raise NotFoundError("identity not found") from exc
        return [name for name in names if name != self.credentials_name]
