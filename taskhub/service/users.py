from __future__ import annotations

from typing import List, Optional

from taskhub.service import audit as audit_actions
from taskhub.service.audit import AuditLogger
from taskhub.service.auth import Principal
from taskhub.service.authorization import AuthorizationService
from taskhub.service.errors import NotFoundError, ValidationError
from taskhub.service.passwords import PasswordHasher
from taskhub.storage.models import AuditCategory, GlobalRole, User, UserStatus


class UserService:
    """Admin-only account management: ban, unban, password reset and role changes."""

    def __init__(
        self,
        store,
        authz: AuthorizationService,
        hasher: PasswordHasher,
        audit: AuditLogger,
    ) -> None:
        self.store = store
        self.authz = authz
        self.hasher = hasher
        self.audit = audit

    def _require_target(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def get_user(self, user_id: str) -> User:
        return self._require_target(user_id)

    async def list_users(
        self, admin: Principal, limit: int = 100, offset: int = 0
    ) -> List[User]:
        await self.authz.require_admin(admin.id)
        return self.store.list_users(limit=max(1, min(limit, 500)), offset=max(0, offset))

    async def ban_user(
        self, admin: Principal, user_id: str, ip_address: Optional[str] = None
    ) -> User:
        await self.authz.require_admin(admin.id)
        self._require_target(user_id)
        if user_id == admin.id:
            raise ValidationError("admins cannot ban themselves", errors=["self ban"])
        user = self.store.set_user_status(user_id, UserStatus.BANNED, revoke_sessions=True)
        self.audit.record(
            audit_actions.USER_BANNED,
            user_id=admin.id,
            ip_address=ip_address,
            details={"target_user_id": user_id},
            level="security",
            category=AuditCategory.SYSTEM_LOG,
        )
        return user

    async def unban_user(
        self, admin: Principal, user_id: str, ip_address: Optional[str] = None
    ) -> User:
        await self.authz.require_admin(admin.id)
        self._require_target(user_id)
        user = self.store.set_user_status(user_id, UserStatus.ACTIVE)
        self.audit.record(
            audit_actions.USER_UNBANNED,
            user_id=admin.id,
            ip_address=ip_address,
            details={"target_user_id": user_id},
            level="security",
            category=AuditCategory.SYSTEM_LOG,
        )
        return user

    async def admin_reset_password(
        self,
        admin: Principal,
        user_id: str,
        new_password: str,
        ip_address: Optional[str] = None,
    ) -> int:
        await self.authz.require_admin(admin.id)
        self._require_target(user_id)
        strength = self.hasher.strength(new_password)
        if not strength.valid:
            raise ValidationError("password does not meet requirements", errors=strength.errors)
        revoked = self.store.save_password(
            user_id, self.hasher.hash(new_password), revoke_sessions=True
        )
        self.audit.record(
            audit_actions.ADMIN_RESET_PASSWORD,
            user_id=admin.id,
            ip_address=ip_address,
            details={"target_user_id": user_id, "sessions_revoked": revoked},
            level="security",
            category=AuditCategory.SYSTEM_LOG,
        )
        return revoked

    async def set_user_role(
        self,
        admin: Principal,
        user_id: str,
        role: GlobalRole,
        ip_address: Optional[str] = None,
    ) -> User:
        await self.authz.require_admin(admin.id)
        target = self._require_target(user_id)
        new_role = GlobalRole(role)
        if target.role == new_role:
            return target
        # Ends every session so the next login carries the new role
        user = self.store.set_user_role(user_id, new_role, revoke_sessions=True)
        self.audit.record(
            audit_actions.USER_ROLE_CHANGED,
            user_id=admin.id,
            ip_address=ip_address,
            details={"target_user_id": user_id, "role": new_role.value},
            level="security",
            category=AuditCategory.SYSTEM_LOG,
        )
        return user
