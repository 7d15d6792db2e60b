"""Unit tests for the token codec.

Tests for:
- Issue/verify of identity tokens
- Expiry against an injected clock
- Rejection of algorithm substitution, tampering and malformed signatures
"""

import base64
import hashlib
import hmac
import json
from datetime import timedelta

import pytest

from scopevault.config import Settings
from scopevault.service.errors import AuthenticationError
from scopevault.service.tokens import (
    ExpiredTokenError,
    InvalidTokenError,
    MalformedSignatureError,
    SigningError,
    TokenCodec,
    TokenError,
)

SECRET = "unit-test-signing-key-0123456789abcdef"


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _forge(header: dict, payload: dict, key: str = SECRET) -> str:
    header_enc = _b64(json.dumps(header).encode())
    payload_enc = _b64(json.dumps(payload).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    sig = hmac.new(key.encode(), signing_input.encode(), hashlib.sha256).digest()
    return f"{signing_input}.{_b64(sig)}"


@pytest.fixture
def clock():
    """Mutable wall clock starting at a fixed epoch second."""
    state = {"now": 1_700_000_000.0}

    def _now():
        return state["now"]

    _now.state = state
    return _now


@pytest.fixture
def codec(clock):
    return TokenCodec(
        SECRET,
        issuer="scopevault",
        audience="scopevault-clients",
        default_ttl=timedelta(hours=24),
        clock=clock,
    )


class TestIssueAndVerify:
    """Tests for the happy path."""

    def test_verify_returns_issued_identity(self, codec):
        """Test that a freshly issued token verifies to its identity."""
        token = codec.issue("alice")

        assert codec.verify(token) == "alice"

    def test_token_has_three_unpadded_segments(self, codec):
        """Test the compact serialization uses base64url without padding."""
        token = codec.issue("alice")

        parts = token.split(".")
        assert len(parts) == 3
        assert "=" not in token

    def test_claims_carry_issue_and_expiry(self, codec, clock):
        """Test decoded claims reflect the clock and the default lifetime."""
        claims = codec.decode(codec.issue("alice"))

        assert claims.identity == "alice"
        assert claims.issued_at == clock()
        assert claims.expires_at == clock() + 24 * 3600

    def test_from_settings_uses_configured_lifetime(self, clock):
        """Test the codec reads secret, issuer, audience and TTL from settings."""
        settings = Settings(jwt_secret=SECRET, token_ttl_minutes=5)
        codec = TokenCodec.from_settings(settings, clock=clock)

        claims = codec.decode(codec.issue("bob"))

        assert claims.expires_at - claims.issued_at == 300

    def test_issue_rejects_empty_identity(self, codec):
        with pytest.raises(SigningError):
            codec.issue("")

    def test_issue_rejects_non_positive_lifetime(self, codec):
        with pytest.raises(SigningError):
            codec.issue("alice", ttl=timedelta(0))


class TestExpiry:
    """Tests for time-based validity."""

    def test_token_expires_after_lifetime(self, codec, clock):
        """Test a 1s token is rejected 1.5s after issue."""
        token = codec.issue("alice", ttl=timedelta(seconds=1))
        clock.state["now"] += 1.5

        with pytest.raises(ExpiredTokenError):
            codec.verify(token)

    def test_token_expired_at_exact_expiry(self, codec, clock):
        """Test there is no leeway: the expiry instant itself is too late."""
        token = codec.issue("alice", ttl=timedelta(seconds=10))
        clock.state["now"] += 10

        with pytest.raises(ExpiredTokenError):
            codec.verify(token)

    def test_token_valid_just_before_expiry(self, codec, clock):
        token = codec.issue("alice", ttl=timedelta(seconds=10))
        clock.state["now"] += 9.5

        assert codec.verify(token) == "alice"


class TestRejection:
    """Tests for tokens that must never be honoured."""

    def test_alg_none_rejected(self, codec, clock):
        """Test an unsigned token naming alg=none is refused."""
        payload = {
            "sub": "alice",
            "iat": clock(),
            "exp": clock() + 60,
            "iss": "scopevault",
            "aud": "scopevault-clients",
        }
        header_enc = _b64(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        payload_enc = _b64(json.dumps(payload).encode())

        with pytest.raises(InvalidTokenError):
            codec.verify(f"{header_enc}.{payload_enc}.")

    def test_rs256_header_rejected_even_with_valid_hmac(self, codec, clock):
        """Test algorithm substitution is refused before the signature is checked."""
        token = _forge(
            {"alg": "RS256", "typ": "JWT"},
            {
                "sub": "alice",
                "iat": clock(),
                "exp": clock() + 60,
                "iss": "scopevault",
                "aud": "scopevault-clients",
            },
        )

        with pytest.raises(InvalidTokenError):
            codec.verify(token)

    def test_tampered_payload_rejected(self, codec, clock):
        """Test swapping the payload invalidates the signature."""
        header, _, signature = codec.issue("alice").split(".")
        forged_payload = _b64(
            json.dumps(
                {
                    "sub": "mallory",
                    "iat": clock(),
                    "exp": clock() + 60,
                    "iss": "scopevault",
                    "aud": "scopevault-clients",
                }
            ).encode()
        )

        with pytest.raises(InvalidTokenError):
            codec.verify(f"{header}.{forged_payload}.{signature}")

    def test_wrong_key_rejected(self, codec, clock):
        other = TokenCodec(
            "another-signing-key-0123456789abcdef",
            issuer="scopevault",
            audience="scopevault-clients",
            default_ttl=timedelta(hours=1),
            clock=clock,
        )

        with pytest.raises(InvalidTokenError):
            codec.verify(other.issue("alice"))

    def test_wrong_audience_rejected(self, codec, clock):
        other = TokenCodec(
            SECRET,
            issuer="scopevault",
            audience="somebody-else",
            default_ttl=timedelta(hours=1),
            clock=clock,
        )

        with pytest.raises(InvalidTokenError):
            codec.verify(other.issue("alice"))

    def test_non_base64_signature_is_malformed(self, codec):
        header, payload, _ = codec.issue("alice").split(".")

        with pytest.raises(MalformedSignatureError):
            codec.verify(f"{header}.{payload}.!!!")

    def test_truncated_signature_is_malformed(self, codec):
        """Test a signature that decodes to the wrong length is refused."""
        header, payload, signature = codec.issue("alice").split(".")

        with pytest.raises(MalformedSignatureError):
            codec.verify(f"{header}.{payload}.{signature[:-4]}")

    def test_standard_alphabet_signature_rejected(self, codec):
        """Test a signature re-spelled with "+" and "/" is not the same token."""
        tokens = (codec.issue(f"user{i}") for i in range(200))
        token = next(t for t in tokens if any(c in t.rsplit(".", 1)[1] for c in "-_"))
        header, payload, signature = token.split(".")
        respelled = signature.replace("-", "+").replace("_", "/")

        with pytest.raises(MalformedSignatureError):
            codec.verify(f"{header}.{payload}.{respelled}")

    def test_padded_signature_rejected(self, codec):
        token = codec.issue("alice")

        with pytest.raises(MalformedSignatureError):
            codec.verify(token + "=")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_wrong_segment_count_rejected(self, codec, token):
        with pytest.raises(InvalidTokenError):
            codec.verify(token)

    def test_token_errors_map_to_unauthorized(self):
        """Test every token failure surfaces as a 401 authentication error."""
        for cls in (InvalidTokenError, ExpiredTokenError, MalformedSignatureError):
            assert issubclass(cls, TokenError)
            assert issubclass(cls, AuthenticationError)
            assert cls("x").status_code == 401
