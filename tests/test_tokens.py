"""Tests for access/refresh token issuance and fail-closed verification."""

import base64
import json

import pytest

from taskhub.config import Settings
from taskhub.service.tokens import TokenService
from taskhub.storage.models import GlobalRole


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings():
    return Settings(
        access_token_secret="unit-access-secret-0123456789abcdef",
        refresh_token_secret="unit-refresh-secret-0123456789abcdef",
        access_token_ttl="15m",
        refresh_token_ttl="30d",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestAccessTokens:
    def test_round_trip(self, tokens):
        token = tokens.create_access_token("user-1", GlobalRole.ADMIN)
        claims = tokens.verify_access_token(token)
        assert claims is not None
        assert claims.sub == "user-1"
        assert claims.role == GlobalRole.ADMIN
        assert claims.exp - claims.iat == 900

    def test_expires_after_ttl(self, tokens, clock):
        token = tokens.create_access_token("user-1", GlobalRole.USER)
        clock.advance(899)
        assert tokens.verify_access_token(token) is not None
        clock.advance(2)
        assert tokens.verify_access_token(token) is None

    def test_refresh_token_not_accepted_as_access(self, tokens):
        refresh = tokens.create_refresh_token("user-1", tokens.generate_jti())
        assert tokens.verify_access_token(refresh) is None

    def test_access_token_not_accepted_as_refresh(self, tokens):
        access = tokens.create_access_token("user-1", GlobalRole.USER)
        assert tokens.verify_refresh_token(access) is None

    def test_tampered_payload_rejected(self, tokens):
        token = tokens.create_access_token("user-1", GlobalRole.USER)
        header, _, sig = token.split(".")
        forged = _b64(
            {
                "sub": "user-1",
                "role": "ADMIN",
                "type": "access",
                "iat": 0,
                "exp": 9_999_999_999,
                "iss": "taskhub",
                "aud": "taskhub-clients",
            }
        )
        assert tokens.verify_access_token(f"{header}.{forged}.{sig}") is None

    def test_alg_none_rejected(self, tokens):
        token = tokens.create_access_token("user-1", GlobalRole.USER)
        _, payload, sig = token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        assert tokens.verify_access_token(f"{header}.{payload}.{sig}") is None

    @pytest.mark.parametrize("garbage", [None, "", "abc", "a.b", "a.b.c.d", "!!!.###.$$$"])
    def test_garbage_rejected(self, tokens, garbage):
        assert tokens.verify_access_token(garbage) is None

    def test_wrong_issuer_rejected(self, settings, clock):
        other = TokenService(settings.model_copy(update={"jwt_issuer": "someone-else"}), clock=clock)
        token = other.create_access_token("user-1", GlobalRole.USER)
        assert TokenService(settings, clock=clock).verify_access_token(token) is None

    def test_wrong_audience_rejected(self, settings, clock):
        other = TokenService(settings.model_copy(update={"jwt_audience": "other-app"}), clock=clock)
        token = other.create_access_token("user-1", GlobalRole.USER)
        assert TokenService(settings, clock=clock).verify_access_token(token) is None


class TestRefreshTokens:
    def test_round_trip_carries_jti(self, tokens):
        jti = tokens.generate_jti()
        claims = tokens.verify_refresh_token(tokens.create_refresh_token("user-1", jti))
        assert claims is not None
        assert claims.jti == jti
        assert claims.sub == "user-1"

    def test_signed_with_separate_secret(self, settings, clock):
        token = TokenService(settings, clock=clock).create_refresh_token("user-1", "abc")
        rotated = settings.model_copy(
            update={"refresh_token_secret": "a-completely-different-refresh-secret"}
        )
        assert TokenService(rotated, clock=clock).verify_refresh_token(token) is None
        # Access verification is unaffected by the refresh secret
        access = TokenService(settings, clock=clock).create_access_token("user-1", "USER")
        assert TokenService(rotated, clock=clock).verify_access_token(access) is not None

    def test_expiry_datetime_matches_ttl(self, tokens, clock):
        expiry = tokens.refresh_token_expiry()
        assert expiry.tzinfo is not None
        assert int(expiry.timestamp()) == int(clock.now) + 30 * 86400

    def test_expired_refresh_rejected(self, tokens, clock):
        token = tokens.create_refresh_token("user-1", tokens.generate_jti())
        clock.advance(30 * 86400 + 1)
        assert tokens.verify_refresh_token(token) is None


class TestRandomValues:
    def test_jti_shape(self, tokens):
        jti = tokens.generate_jti()
        assert len(jti) == 32
        int(jti, 16)
        assert jti != tokens.generate_jti()

    def test_reset_code_shape(self, tokens):
        code = tokens.generate_reset_code()
        assert len(code) == 64
        int(code, 16)


class TestNonAsciiInput:
    """Tokens carrying characters outside base64url are rejected, never raised on."""

    NON_ASCII_SIG = "eyJhbGciOiJIUzI1NiJ9.eyJ4IjoxfQ.é"

    def test_non_ascii_signature_rejected(self, tokens):
        assert tokens.verify_refresh_token(self.NON_ASCII_SIG) is None
        assert tokens.verify_access_token(self.NON_ASCII_SIG) is None

    def test_non_ascii_in_valid_token_rejected(self, tokens):
        token = tokens.create_access_token("user-1", GlobalRole.USER)
        assert tokens.verify_access_token(token + "é") is None
        assert tokens.verify_access_token("\ud800" + token) is None
