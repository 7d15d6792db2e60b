from __future__ import annotations

import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from scopevault.logging import get_logger
from scopevault.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
    translate_backend_errors,
)
from scopevault.service.identity import VerifiedIdentity
from scopevault.service.lifecycle import ScopeLifecycleController, ScopeTransition
from scopevault.service.tokens import TokenCodec
from scopevault.storage.common import ResourceBackend, scope_name_for
from scopevault.storage.errors import ResourceAlreadyExists, ResourceNotFound
from scopevault.storage.models import CredentialRecord

logger = get_logger(__name__)

# Login failures share one message whatever the cause, so responses never
# reveal whether an identity exists.
INVALID_CREDENTIALS = "invalid username or password"

MAX_PASSWORD_LENGTH = 1024


def scope_for(identity: str, prefix: str) -> str:
    try:
        return scope_name_for(identity, prefix)
    except ValueError as exc:
        raise ValidationError(str(exc), detail={"field": "username"}) from exc


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    parts = header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


class AccountService:
    """Registration, login, password change and identity deletion.

    Each identity owns exactly one scope, named from the identity alone; the
    scope holds the ``credentials`` record next to the tenant's secrets, so
    deleting the scope deletes everything the identity stored.
    """

    def __init__(
        self,
        backend: ResourceBackend,
        lifecycle: ScopeLifecycleController,
        tokens: TokenCodec,
        *,
        scope_prefix: str = "user-",
        credentials_name: str = "credentials",
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.backend = backend
        self.lifecycle = lifecycle
        self.tokens = tokens
        self.scope_prefix = scope_prefix
        self.credentials_name = credentials_name
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def scope_for(self, identity: str) -> str:
        return scope_for(identity, self.scope_prefix)

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_verification(self, password: str) -> None:
        """Spend one hash verification so unknown identities cost the same."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hash_password(secrets.token_urlsafe(16))
        self._verify_password(self._dummy_hash, password)

    @staticmethod
    def _validate_password(password: str) -> str:
        if not password:
            raise ValidationError("password must not be empty", detail={"field": "password"})
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at most {MAX_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        return password

    async def register(self, identity: str, password: str) -> ScopeTransition:
        """Create the identity's scope and store its credential record."""
        scope = self.scope_for(identity)
        self._validate_password(password)
        with translate_backend_errors("register"):
            transition = await self.lifecycle.create_scope_and_await_ready(scope)
            try:
                existing = CredentialRecord.from_data(
                    await self.backend.get_secret(scope, self.credentials_name)
                )
            except ResourceNotFound:
                existing = None
            if existing is not None:
                if existing.username != identity:
                    self.logger.error(
                        "credential_identity_mismatch",
                        scope=scope,
                        identity=identity,
                    )
                raise ConflictError("identity already registered")
            record = CredentialRecord(
                username=identity, password_hash=self._hash_password(password)
            )
            try:
                await self.backend.create_secret(scope, self.credentials_name, record.to_data())
            except ResourceAlreadyExists as exc:
                raise ConflictError("identity already registered") from exc
        self.logger.info("identity_registered", identity=identity, scope=scope)
        return transition

    async def authenticate(self, identity: str, password: str) -> str:
        """Check the password against the stored record and issue a token."""
        try:
            scope = self.scope_for(identity)
        except ValidationError:
            self._burn_verification(password or "")
            raise AuthenticationError(INVALID_CREDENTIALS) from None
        with translate_backend_errors("login"):
            try:
                data = await self.backend.get_secret(scope, self.credentials_name)
            except ResourceNotFound:
                data = None
        if data is None:
            self._burn_verification(password or "")
            self.logger.warning("login_failed", identity=identity, reason="unknown_identity")
            raise AuthenticationError(INVALID_CREDENTIALS)
        record = CredentialRecord.from_data(data)
        if record.username != identity or not self._verify_password(
            record.password_hash, password or ""
        ):
            self.logger.warning("login_failed", identity=identity, reason="bad_password")
            raise AuthenticationError(INVALID_CREDENTIALS)
        token = self.tokens.issue(identity)
        self.logger.info("login_succeeded", identity=identity)
        return token

    async def change_password(self, identity: VerifiedIdentity, new_password: str) -> None:
        """Replace the stored hash, keeping every other credential field."""
        scope = self.scope_for(identity.name)
        self._validate_password(new_password)
        with translate_backend_errors("change password"):
            try:
                data = await self.backend.get_secret(scope, self.credentials_name)
            except ResourceNotFound as exc:
                raise NotFoundError("identity not found") from exc
            record = CredentialRecord.from_data(data)
            record.password_hash = self._hash_password(new_password)
            try:
                await self.backend.update_secret(scope, self.credentials_name, record.to_data())
            except ResourceNotFound as exc:
                raise NotFoundError("identity not found") from exc
        self.logger.info("password_changed", identity=identity.name)

    async def delete_identity(self, identity: VerifiedIdentity) -> ScopeTransition:
        """Remove the identity's scope and, with it, every secret it held."""
        scope = self.scope_for(identity.name)
        with translate_backend_errors("delete identity"):
            transition = await self.lifecycle.delete_scope_and_await_removed(scope)
        self.logger.info(
            "identity_deleted",
            identity=identity.name,
            scope=scope,
            forced_finalization=transition.forced_finalization,
        )
        return transition

    def identity_from_token(self, token: str) -> VerifiedIdentity:
        return VerifiedIdentity(self.tokens.verify(token))

    def identity_from_header(self, authorization: Optional[str]) -> VerifiedIdentity:
        token = _extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("authorization header must be 'Bearer <token>'")
        return self.identity_from_token(token)
