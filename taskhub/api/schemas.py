from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from taskhub.service.auth import normalize_email
from taskhub.storage.models import GlobalRole, ProjectRole, TaskStatus, WorkspaceRole

MAX_PASSWORD_LENGTH = 128
MAX_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 10000
MAX_ASSIGNEES = 50


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "invalid_token",
    "invalid_or_expired_code",
    "invalid_current_password",
    "account_banned",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "last_owner_violation",
    "server_error",
})


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
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_email(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or "." not in domain:
        raise ValueError("invalid email address")
    return normalized


# -- auth -----------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    full_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    # Not format-validated so malformed and unknown emails fail identically
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class AuthResponse(TokenResponse):
    user_id: str
    role: GlobalRole
    device_id: str


class DeviceResponse(BaseModel):
    id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_used_at: datetime
    revoked_at: Optional[datetime] = None


class DeviceListResponse(BaseModel):
    items: List[DeviceResponse]


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=254)


class PasswordResetRequestResponse(BaseModel):
    status: str = "sent"
    # Only populated when reset codes are exposed (tests, local development)
    code: Optional[str] = None


class PasswordResetConfirm(BaseModel):
    email: str = Field(..., max_length=254)
    code: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    role: GlobalRole
    global_status: str
    created_at: datetime


class UserListResponse(BaseModel):
    items: List[UserResponse]


# -- workspaces / projects / tasks -----------------------------------------


class CreateWorkspaceRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)


class WorkspaceResponse(BaseModel):
    id: str
    name: str
    created_by: str
    created_at: datetime


class WorkspaceListResponse(BaseModel):
    items: List[WorkspaceResponse]


class AddWorkspaceMemberRequest(BaseModel):
    user_id: str = Field(..., max_length=128)
    role: WorkspaceRole = WorkspaceRole.MEMBER


class UpdateWorkspaceMemberRequest(BaseModel):
    role: WorkspaceRole


class WorkspaceMemberResponse(BaseModel):
    workspace_id: str
    user_id: str
    role: WorkspaceRole
    added_at: datetime


class WorkspaceMemberListResponse(BaseModel):
    items: List[WorkspaceMemberResponse]


class CreateProjectRequest(BaseModel):
    workspace_id: str = Field(..., max_length=128)
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)


class ProjectResponse(BaseModel):
    id: str
    workspace_id: str
    name: str
    description: Optional[str] = None
    created_by: str
    created_at: datetime


class UpdateProjectRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=MAX_NAME_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)


class ProjectListResponse(BaseModel):
    items: List[ProjectResponse]


class AddProjectMemberRequest(BaseModel):
    user_id: str = Field(..., max_length=128)
    role: ProjectRole = ProjectRole.CONTRIBUTOR


class UpdateProjectMemberRequest(BaseModel):
    role: ProjectRole


class ProjectMemberResponse(BaseModel):
    project_id: str
    user_id: str
    role: ProjectRole
    added_at: datetime


class ProjectMemberListResponse(BaseModel):
    items: List[ProjectMemberResponse]


class CreateTaskRequest(BaseModel):
    project_id: str = Field(..., max_length=128)
    title: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    assignee_ids: List[str] = Field(default_factory=list, max_length=MAX_ASSIGNEES)


class UpdateTaskRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=MAX_NAME_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    status: Optional[TaskStatus] = None
    assignee_ids: Optional[List[str]] = Field(default=None, max_length=MAX_ASSIGNEES)


class TaskResponse(BaseModel):
    id: str
    project_id: str
    title: str
    description: Optional[str] = None
    status: TaskStatus
    assignee_ids: List[str] = []
    created_by: str
    created_at: datetime
    updated_at: datetime


class TaskListResponse(BaseModel):
    items: List[TaskResponse]


# -- admin ------------------------------------------------------------------


class AdminResetPasswordRequest(BaseModel):
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class UpdateUserRoleRequest(BaseModel):
    role: GlobalRole


class AuditEventResponse(BaseModel):
    id: str
    action: str
    level: str
    category: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    details: dict = Field(default_factory=dict)
    created_at: datetime


class AuditEventListResponse(BaseModel):
    items: List[AuditEventResponse]
