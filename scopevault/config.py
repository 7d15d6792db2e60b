from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from scopevault.logging import get_logger

logger = get_logger(__name__)

# Kubernetes names (namespaces) are DNS-1123 labels
MAX_SCOPE_NAME_LENGTH = 63
MIN_JWT_SECRET_LENGTH = 32

_SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"


class BackendKind(str, Enum):
    """Resource backends a deployment can multiplex tenant scopes onto."""

    KUBERNETES = "kubernetes"
    MEMORY = "memory"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide configuration, read once at startup and never mutated."""

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("scopevault", "JWT_ISSUER")
    jwt_audience: str = env_field("scopevault-clients", "JWT_AUDIENCE")
    token_ttl_minutes: int = env_field(
        24 * 60,
        "TOKEN_TTL_MINUTES",
        gt=0,
        description="Lifetime of tokens issued at login",
    )
    scope_prefix: str = env_field("user-", "SCOPE_PREFIX")
    credentials_secret_name: str = env_field("credentials", "CREDENTIALS_SECRET_NAME")
    scope_backend: BackendKind = env_field(BackendKind.KUBERNETES, "SCOPE_BACKEND")

    # Lifecycle polling
    scope_ready_timeout_seconds: float = env_field(
        10.0,
        "SCOPE_READY_TIMEOUT_SECONDS",
        gt=0,
        description="How long registration waits for a new scope to become active",
    )
    scope_delete_timeout_seconds: float = env_field(
        30.0,
        "SCOPE_DELETE_TIMEOUT_SECONDS",
        gt=0,
        description="How long deletion waits before forcing finalization",
    )
    scope_finalize_timeout_seconds: float = env_field(
        30.0,
        "SCOPE_FINALIZE_TIMEOUT_SECONDS",
        gt=0,
        description="Second wait window after forced finalization",
    )
    scope_poll_interval_seconds: float = env_field(
        0.2, "SCOPE_POLL_INTERVAL_SECONDS", gt=0
    )
    scope_poll_backoff: float = env_field(
        1.0,
        "SCOPE_POLL_BACKOFF",
        ge=1.0,
        description="Multiplier applied to the poll interval after each miss; 1.0 polls at a fixed rate",
    )
    scope_poll_max_interval_seconds: float = env_field(
        1.0, "SCOPE_POLL_MAX_INTERVAL_SECONDS", gt=0
    )

    # Kubernetes connection
    kube_api_url: str = env_field("https://kubernetes.default.svc", "KUBE_API_URL")
    kube_token: str | None = env_field(None, "KUBE_TOKEN")
    kube_token_path: str = env_field(f"{_SERVICE_ACCOUNT_DIR}/token", "KUBE_TOKEN_PATH")
    kube_ca_path: str = env_field(f"{_SERVICE_ACCOUNT_DIR}/ca.crt", "KUBE_CA_PATH")
    kube_verify_tls: bool = env_field(True, "KUBE_VERIFY_TLS")
    kube_request_timeout_seconds: float = env_field(
        10.0, "KUBE_REQUEST_TIMEOUT_SECONDS", gt=0
    )

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("scope_backend")
    @classmethod
    def _validate_backend(cls, value: BackendKind) -> BackendKind:
        return BackendKind(value)

    @field_validator("scope_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        if not value or len(value) >= MAX_SCOPE_NAME_LENGTH:
            raise ValueError("scope_prefix must be non-empty and shorter than 63 characters")
        if value != value.lower() or not value[0].isalnum():
            raise ValueError("scope_prefix must be lowercase and start with a letter or digit")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        # Tokens signed with a generated key do not survive a restart and are
        # not accepted by other replicas.
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; using an ephemeral signing key",
        )
        return secrets.token_urlsafe(64)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
