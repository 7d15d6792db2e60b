from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from scopevault.config import Settings
from scopevault.logging import get_logger
from scopevault.service.errors import AuthenticationError, ServerError

logger = get_logger(__name__)

# The only algorithm a token may name; anything else is rejected outright.
ALGORITHM = "HS256"
_SIGNATURE_BYTES = hashlib.sha256().digest_size


class TokenError(AuthenticationError):
    """Base class for tokens that must not be honoured."""


class InvalidTokenError(TokenError):
    """Token is structurally wrong, mis-signed, or carries unusable claims."""


class ExpiredTokenError(TokenError):
    """Token was valid but its expiry has passed."""


class MalformedSignatureError(TokenError):
    """Signature segment is not a well-formed HS256 digest."""


class SigningError(ServerError):
    """A token could not be produced."""


@dataclass(frozen=True)
class TokenClaims:
    identity: str
    issued_at: float
    expires_at: float


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    # Only the unpadded URL-safe alphabet; b64decode alone would also take "+/=".
    if any(char in segment for char in "+/="):
        raise ValueError("segment is not unpadded base64url")
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.b64decode(segment + padding, altchars=b"-_", validate=True)


class TokenCodec:
    """Issues and verifies stateless HS256 identity tokens.

    Validity depends only on the signature and the clock: there is no
    revocation list and no leeway for clock skew.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        default_ttl: timedelta,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("signing secret must be non-empty")
        self._key = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.default_ttl = default_ttl
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            default_ttl=timedelta(minutes=settings.token_ttl_minutes),
            clock=clock,
        )

    def _sign(self, signing_input: str) -> bytes:
        return hmac.new(self._key, signing_input.encode("utf-8"), hashlib.sha256).digest()

    def issue(self, identity: str, ttl: Optional[timedelta] = None) -> str:
        """Return a signed token asserting ``identity`` for ``ttl``."""
        lifetime = self.default_ttl if ttl is None else ttl
        if not identity:
            raise SigningError("cannot issue a token for an empty identity")
        if lifetime.total_seconds() <= 0:
            raise SigningError("token lifetime must be positive")
        now = self._clock()
        header = {"alg": ALGORITHM, "typ": "JWT"}
        payload = {
            "sub": identity,
            "iat": now,
            "exp": now + lifetime.total_seconds(),
            "iss": self.issuer,
            "aud": self.audience,
        }
        try:
            header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
            payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        except (TypeError, ValueError) as exc:
            raise SigningError("token claims are not serializable") from exc
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_encode_segment(self._sign(signing_input))}"

    def verify(self, token: str) -> str:
        """Return the identity a token asserts, or raise a ``TokenError``."""
        return self.decode(token).identity

    def decode(self, token: str) -> TokenClaims:
        if not token or not isinstance(token, str):
            raise InvalidTokenError("invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("invalid token") from None

        # Reject algorithm substitution (alg=none, RS256 with the HMAC key...)
        # before any signature work.
        header = self._load_json(header_b64, "header")
        if header.get("alg") != ALGORITHM:
            logger.warning("token_rejected", reason="unexpected_algorithm", alg=header.get("alg"))
            raise InvalidTokenError("invalid token")

        try:
            signature = _decode_segment(sig_b64)
        except (binascii.Error, ValueError):
            logger.warning("token_rejected", reason="malformed_signature")
            raise MalformedSignatureError("malformed token signature") from None
        if len(signature) != _SIGNATURE_BYTES:
            logger.warning("token_rejected", reason="malformed_signature")
            raise MalformedSignatureError("malformed token signature")

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected, signature):
            logger.warning("token_rejected", reason="signature_mismatch")
            raise InvalidTokenError("invalid token")

        payload = self._load_json(payload_b64, "payload")
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidTokenError("invalid token")

        identity = payload.get("sub")
        if not isinstance(identity, str) or not identity:
            raise InvalidTokenError("invalid token")
        try:
            issued_at = float(payload.get("iat", 0))
            expires_at = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("invalid token") from None
        if self._clock() >= expires_at:
            raise ExpiredTokenError("token expired")
        return TokenClaims(identity=identity, issued_at=issued_at, expires_at=expires_at)

    @staticmethod
    def _load_json(segment: str, part: str) -> dict[str, Any]:
        try:
            value = json.loads(_decode_segment(segment))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            logger.warning("token_rejected", reason=f"{part}_decode_failed")
            raise InvalidTokenError("invalid token") from None
        if not isinstance(value, dict):
            raise InvalidTokenError("invalid token")
        return value
