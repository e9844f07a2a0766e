from __future__ import annotations

import hashlib
import hmac
import secrets
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol, Tuple

from taskhub.config import Settings
from taskhub.service import audit as audit_actions
from taskhub.service.audit import AuditLogger
from taskhub.service.errors import (
    AccountBannedError,
    ConflictError,
    InvalidCredentialsError,
    InvalidCurrentPasswordError,
    InvalidOrExpiredCodeError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    ValidationError,
)
from taskhub.service.passwords import PasswordHasher
from taskhub.service.tokens import TokenPair, TokenService
from taskhub.storage.errors import ConstraintViolation
from taskhub.storage.models import (
    Device,
    GlobalRole,
    PasswordResetCode,
    RefreshTokenRecord,
    User,
)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        role: GlobalRole = GlobalRole.USER,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...

    def save_password(
        self, user_id: str, password_hash: str, *, revoke_sessions: bool = False
    ) -> int: ...

    def create_session(
        self,
        user_id: str,
        jti: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Device: ...

    def get_refresh_token(self, jti: str) -> Optional[Tuple[RefreshTokenRecord, Device]]: ...

    def rotate_session(
        self,
        old_jti: str,
        user_id: str,
        new_jti: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[Device]: ...

    def revoke_session(self, jti: str) -> bool: ...

    def revoke_device(self, user_id: str, device_id: str) -> Optional[Device]: ...

    def list_devices(self, user_id: str, *, include_revoked: bool = False) -> List[Device]: ...

    def create_reset_code(
        self, user_id: str, code_hash: str, expires_at: datetime
    ) -> PasswordResetCode: ...

    def get_active_reset_code(self, user_id: str) -> Optional[PasswordResetCode]: ...

    def complete_password_reset(
        self, user_id: str, code_id: str, password_hash: str
    ) -> bool: ...


@dataclass(frozen=True)
class Principal:
    """Authenticated caller identity, passed explicitly to authorization checks."""

    id: str
    role: GlobalRole

    @property
    def is_admin(self) -> bool:
        return self.role == GlobalRole.ADMIN


@dataclass(frozen=True)
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    device: Device


_ZERO_WIDTH = frozenset("\u200b\u200c\u200d\ufeff")
_BIDI_CONTROLS = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def normalize_email(email: str) -> str:
    """Canonical lookup key for an address: invisible characters dropped, NFKC, lowercase."""
    cleaned = "".join(
        c for c in (email or "") if c not in _ZERO_WIDTH and c not in _BIDI_CONTROLS
    )
    return unicodedata.normalize("NFKC", cleaned).strip().lower()


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthService:
    """Registration, login, refresh rotation, logout, devices and password flows."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: PasswordHasher,
        tokens: TokenService,
        audit: AuditLogger,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.hasher = hasher
        self.tokens = tokens
        self.audit = audit
        self.logger = audit.logger_for("auth")
        # Verified against when the email is unknown so both paths cost one argon2 check
        self._dummy_hash = hasher.hash(secrets.token_urlsafe(24))

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _check_strength(self, password: str) -> None:
        result = self.hasher.strength(password)
        if not result.valid:
            raise ValidationError("password does not meet requirements", errors=result.errors)

    @staticmethod
    def _hash_reset_code(code: str) -> str:
        # Codes carry 256 bits of entropy, a fast digest is sufficient
        return hashlib.sha256(code.encode("utf-8")).hexdigest()

    async def register(
        self, email: str, password: str, full_name: Optional[str] = None
    ) -> User:
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("a valid email is required", errors=["invalid email"])
        self._check_strength(password)
        if self.store.get_user_by_email(normalized):
            raise ConflictError("email already registered", detail={"field": "email"})
        try:
            user = self.store.create_user(
                normalized, self.hasher.hash(password), full_name=full_name
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.audit.record(audit_actions.USER_REGISTERED, user_id=user.id)
        return user

    async def login(
        self, email: str, password: str, client: Optional[ClientInfo] = None
    ) -> AuthResult:
        client = client or ClientInfo()
        user = self.store.get_user_by_email(normalize_email(email))
        stored_hash = self.store.get_password_hash(user.id) if user else None
        password_ok = self.hasher.verify(password, stored_hash or self._dummy_hash)
        if not user or not stored_hash or not password_ok:
            self.audit.record(
                audit_actions.LOGIN_FAILURE,
                user_id=user.id if user else None,
                ip_address=client.ip_address,
                details={"reason": "invalid_credentials"},
                level="warning",
            )
            raise InvalidCredentialsError()
        if user.is_banned:
            self.audit.record(
                audit_actions.LOGIN_FAILURE,
                user_id=user.id,
                ip_address=client.ip_address,
                details={"reason": "account_banned"},
                level="warning",
            )
            raise AccountBannedError()
        if self.hasher.needs_rehash(stored_hash):
            # Upgrade hashes made with older argon2 parameters while the plaintext is at hand
            self.store.save_password(user.id, self.hasher.hash(password))
            self.logger.info("password_rehashed", user_id=user.id)

        jti = self.tokens.generate_jti()
        device = self.store.create_session(
            user.id,
            jti,
            self.tokens.refresh_token_expiry(),
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        pair = self.tokens.issue_pair(user.id, user.role, jti)
        self.audit.record(
            audit_actions.LOGIN_SUCCESS,
            user_id=user.id,
            ip_address=client.ip_address,
            details={"user_agent": client.user_agent, "device_id": device.id},
        )
        return AuthResult(user=user, tokens=pair, device=device)

    async def refresh_access_token(
        self, refresh_token: str, client: Optional[ClientInfo] = None
    ) -> TokenPair:
        """Redeem a refresh token exactly once and return a fresh pair.

        The old token and its device are revoked in the same store transaction
        that creates their replacements; a token that lost a concurrent race,
        or was already redeemed, is rejected.
        """
        client = client or ClientInfo()
        claims = self.tokens.verify_refresh_token(refresh_token)
        if not claims:
            raise InvalidOrExpiredTokenError()
        found = self.store.get_refresh_token(claims.jti)
        if not found:
            raise InvalidOrExpiredTokenError()
        record, device = found
        if record.user_id != claims.sub:
            raise InvalidOrExpiredTokenError()
        if record.is_revoked or device.is_revoked or record.is_expired(self._now()):
            self.logger.warning(
                "refresh_token_rejected",
                user_id=record.user_id,
                device_id=device.id,
                revoked=record.is_revoked,
            )
            raise InvalidOrExpiredTokenError()
        user = self.store.get_user(claims.sub)
        if not user:
            raise InvalidOrExpiredTokenError()
        if user.is_banned:
            raise AccountBannedError()

        new_jti = self.tokens.generate_jti()
        new_device = self.store.rotate_session(
            claims.jti,
            user.id,
            new_jti,
            self.tokens.refresh_token_expiry(),
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        if new_device is None:
            self.logger.warning("refresh_rotation_lost_race", user_id=user.id)
            raise InvalidOrExpiredTokenError()
        self.audit.record(
            audit_actions.TOKEN_REFRESH,
            user_id=user.id,
            ip_address=client.ip_address,
            details={"device_id": new_device.id},
        )
        return self.tokens.issue_pair(user.id, user.role, new_jti)

    async def logout(self, refresh_token: Optional[str], ip_address: Optional[str] = None) -> None:
        """Revoke the session behind ``refresh_token``; idempotent and never raises."""
        claims = None
        try:
            claims = self.tokens.verify_refresh_token(refresh_token)
            if not claims:
                return
            revoked = self.store.revoke_session(claims.jti)
        except Exception as exc:
            self.logger.warning(
                "logout_revoke_failed",
                user_id=claims.sub if claims else None,
                error_type=type(exc).__name__,
            )
            return
        if revoked:
            self.audit.record(audit_actions.LOGOUT, user_id=claims.sub, ip_address=ip_address)

    async def revoke_device(
        self, user_id: str, device_id: str, ip_address: Optional[str] = None
    ) -> Device:
        device = self.store.revoke_device(user_id, device_id)
        if not device:
            raise NotFoundError("device not found", detail={"device_id": device_id})
        self.audit.record(
            audit_actions.DEVICE_REVOKED,
            user_id=user_id,
            ip_address=ip_address,
            details={"device_id": device_id},
        )
        return device

    async def list_devices(self, user_id: str, include_revoked: bool = False) -> List[Device]:
        return self.store.list_devices(user_id, include_revoked=include_revoked)

    async def generate_password_reset_code(self, email: str) -> str:
        """Issue a reset code; unknown emails get an inert code of the same shape."""
        code = self.tokens.generate_reset_code()
        code_hash = self._hash_reset_code(code)
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            self.logger.info(
                "password_reset_unknown_email",
                email_hash=hashlib.sha256(normalize_email(email).encode()).hexdigest(),
            )
            return code
        expires_at = self._now() + timedelta(seconds=self.settings.password_reset_ttl_seconds)
        self.store.create_reset_code(user.id, code_hash, expires_at)
        self.audit.record(audit_actions.PASSWORD_RESET_REQUESTED, user_id=user.id)
        return code

    async def reset_password_with_code(self, email: str, code: str, new_password: str) -> None:
        self._check_strength(new_password)
        user = self.store.get_user_by_email(normalize_email(email))
        record = self.store.get_active_reset_code(user.id) if user else None
        supplied = self._hash_reset_code(code or "")
        if not user or not record or not hmac.compare_digest(record.code_hash, supplied):
            raise InvalidOrExpiredCodeError()
        if not self.store.complete_password_reset(
            user.id, record.id, self.hasher.hash(new_password)
        ):
            raise InvalidOrExpiredCodeError()
        self.audit.record(audit_actions.PASSWORD_RESET, user_id=user.id, level="warning")

    async def update_password(self, user_id: str, old_password: str, new_password: str) -> None:
        stored_hash = self.store.get_password_hash(user_id)
        if stored_hash is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if not self.hasher.verify(old_password, stored_hash):
            raise InvalidCurrentPasswordError()
        self._check_strength(new_password)
        self.store.save_password(user_id, self.hasher.hash(new_password))
        self.audit.record(audit_actions.PASSWORD_CHANGED, user_id=user_id)

    def authenticate(self, authorization: Optional[str]) -> Optional[Principal]:
        token = extract_bearer(authorization)
        if not token:
            return None
        claims = self.tokens.verify_access_token(token)
        if not claims:
            return None
        return Principal(id=claims.sub, role=claims.role)

    async def get_current_user(self, principal: Principal) -> User:
        user = self.store.get_user(principal.id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": principal.id})
        return user
