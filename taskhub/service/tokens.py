from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from taskhub.config import Settings, parse_duration
from taskhub.logging import get_logger
from taskhub.storage.models import GlobalRole

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

__all__ = [
    "AccessClaims",
    "RefreshClaims",
    "TokenPair",
    "TokenService",
    "parse_duration",
]


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    role: GlobalRole
    iat: int
    exp: int


@dataclass(frozen=True)
class RefreshClaims:
    sub: str
    jti: str
    iat: int
    exp: int


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    token_type: str = "bearer"


class TokenService:
    """HS256 access/refresh tokens signed with independent secrets.

    Verification fails closed: any problem yields ``None`` rather than an
    exception, so callers cannot accidentally treat a partial result as valid.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 0,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._leeway = leeway_seconds
        self._secrets = {
            ACCESS: settings.access_token_secret.encode(),
            REFRESH: settings.refresh_token_secret.encode(),
        }
        self.access_ttl = settings.access_token_ttl_seconds
        self.refresh_ttl = settings.refresh_token_ttl_seconds

    def now(self) -> int:
        return int(self._clock())

    def create_access_token(self, user_id: str, role: GlobalRole | str) -> str:
        issued = self.now()
        payload = {
            "sub": user_id,
            "role": GlobalRole(role).value,
            "type": ACCESS,
            "iat": issued,
            "exp": issued + self.access_ttl,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        return self._encode_jwt(payload, ACCESS)

    def create_refresh_token(self, user_id: str, jti: str) -> str:
        issued = self.now()
        payload = {
            "sub": user_id,
            "jti": jti,
            "type": REFRESH,
            "iat": issued,
            "exp": issued + self.refresh_ttl,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        return self._encode_jwt(payload, REFRESH)

    def issue_pair(self, user_id: str, role: GlobalRole | str, jti: str) -> TokenPair:
        return TokenPair(
            access_token=self.create_access_token(user_id, role),
            refresh_token=self.create_refresh_token(user_id, jti),
            access_expires_in=self.access_ttl,
        )

    def verify_access_token(self, token: Optional[str]) -> Optional[AccessClaims]:
        payload = self._decode_jwt(token, ACCESS)
        if payload is None:
            return None
        try:
            role = GlobalRole(payload.get("role"))
        except ValueError:
            return None
        return AccessClaims(
            sub=payload["sub"], role=role, iat=int(payload.get("iat") or 0), exp=int(payload["exp"])
        )

    def verify_refresh_token(self, token: Optional[str]) -> Optional[RefreshClaims]:
        payload = self._decode_jwt(token, REFRESH)
        if payload is None:
            return None
        jti = payload.get("jti")
        if not isinstance(jti, str) or not jti:
            return None
        return RefreshClaims(
            sub=payload["sub"], jti=jti, iat=int(payload.get("iat") or 0), exp=int(payload["exp"])
        )

    def refresh_token_expiry(self) -> datetime:
        return datetime.fromtimestamp(self.now() + self.refresh_ttl, tz=timezone.utc)

    @staticmethod
    def generate_jti() -> str:
        return secrets.token_hex(16)

    @staticmethod
    def generate_reset_code() -> str:
        return secrets.token_hex(32)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, category: str) -> str:
        digest = hmac.new(
            self._secrets[category], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], category: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, category)}"

    def _decode_jwt(self, token: Optional[str], category: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        # Valid tokens are base64url segments
        if not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", category)
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("ascii")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("type") != category:
            return None
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if exp is None or isinstance(exp, bool):
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self._leeway:
            return None
        return payload
