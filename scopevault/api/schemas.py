from __future__ import annotations

import json
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from scopevault.logging import get_correlation_id

# Stable error codes returned in the error envelope
_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "not_found",
        "conflict",
        "server_error",
        "not_ready",
        "stuck_resource",
        "transient",
    }
)

# Accepted spellings of the secret name in create requests
_SECRET_NAME_ALIASES = ("name", "secretName", "secret_name", "secret-name")

MAX_SECRET_KEYS = 256


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class CredentialsRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=63)
    password: str = Field(..., min_length=1, max_length=1024)


class RegisterRequest(CredentialsRequest):
    pass


class LoginRequest(CredentialsRequest):
    pass


class PasswordChangeRequest(BaseModel):
    new_password: str = Field(..., min_length=1, max_length=1024)


def _stringify_values(data: Any) -> Any:
    # Non-string values are stored as their JSON encoding.
    if not isinstance(data, dict):
        return data
    return {
        key: value if isinstance(value, str) else json.dumps(value, separators=(",", ":"))
        for key, value in data.items()
    }


class SecretCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=253)
    data: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _resolve_name_alias(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        resolved = dict(values)
        for alias in _SECRET_NAME_ALIASES:
            candidate = values.get(alias)
            if isinstance(candidate, str) and candidate:
                resolved["name"] = candidate
                break
        if resolved.get("data") is None:
            resolved["data"] = {}
        resolved["data"] = _stringify_values(resolved["data"])
        return resolved

    @field_validator("data")
    @classmethod
    def _limit_keys(cls, value: Dict[str, str]) -> Dict[str, str]:
        if len(value) > MAX_SECRET_KEYS:
            raise ValueError(f"secret data may hold at most {MAX_SECRET_KEYS} keys")
        return value


class SecretUpdateRequest(BaseModel):
    data: Dict[str, str]

    @field_validator("data", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return _stringify_values(value)

    @field_validator("data")
    @classmethod
    def _limit_keys(cls, value: Dict[str, str]) -> Dict[str, str]:
        if len(value) > MAX_SECRET_KEYS:
            raise ValueError(f"secret data may hold at most {MAX_SECRET_KEYS} keys")
        return value


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_in: int


class MessageResponse(BaseModel):
    message: str


class SecretResponse(BaseModel):
    name: str
    data: Dict[str, str]


class SecretListResponse(BaseModel):
    secrets: List[str]
