from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class GlobalRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    BANNED = "BANNED"


class WorkspaceRole(str, Enum):
    OWNER = "OWNER"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"


class ProjectRole(str, Enum):
    LEAD = "LEAD"
    CONTRIBUTOR = "CONTRIBUTOR"
    VIEWER = "VIEWER"


class TaskStatus(str, Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class AuditCategory(str, Enum):
    USER_LOG = "USER_LOG"
    SYSTEM_LOG = "SYSTEM_LOG"
    ACTIVITY_TRACKER = "ACTIVITY_TRACKER"


@dataclass
class User:
    """Account record. The password hash lives beside it in storage, never on it."""

    id: str
    email: str
    full_name: Optional[str] = None
    role: GlobalRole = GlobalRole.USER
    global_status: UserStatus = UserStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == GlobalRole.ADMIN

    @property
    def is_banned(self) -> bool:
        return self.global_status == UserStatus.BANNED


@dataclass
class Device:
    """One login session; pairs 1:1 with the refresh token that carries ``jti``."""

    id: str
    user_id: str
    jti: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class RefreshTokenRecord:
    jti: str
    user_id: str
    device_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class PasswordResetCode:
    id: str
    user_id: str
    code_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used: bool = False

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class Workspace:
    id: str
    name: str
    created_by: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class WorkspaceMembership:
    workspace_id: str
    user_id: str
    role: WorkspaceRole
    added_at: datetime = field(default_factory=utcnow)


@dataclass
class Project:
    id: str
    workspace_id: str
    name: str
    created_by: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ProjectMembership:
    project_id: str
    user_id: str
    role: ProjectRole
    added_at: datetime = field(default_factory=utcnow)


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    created_by: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    assignee_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditLogEntry:
    id: str
    action: str
    level: str = "info"
    category: AuditCategory = AuditCategory.USER_LOG
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
