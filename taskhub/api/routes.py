from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from taskhub.api.schemas import (
    AddProjectMemberRequest,
    AddWorkspaceMemberRequest,
    AdminResetPasswordRequest,
    AuditEventListResponse,
    AuditEventResponse,
    AuthResponse,
    CreateProjectRequest,
    CreateTaskRequest,
    CreateWorkspaceRequest,
    DeviceListResponse,
    DeviceResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordResetRequestResponse,
    ProjectListResponse,
    ProjectMemberListResponse,
    ProjectMemberResponse,
    ProjectResponse,
    RegisterRequest,
    TaskListResponse,
    TaskResponse,
    TokenRefreshRequest,
    TokenResponse,
    UpdateProjectMemberRequest,
    UpdateProjectRequest,
    UpdateTaskRequest,
    UpdateUserRoleRequest,
    UpdateWorkspaceMemberRequest,
    UserListResponse,
    UserResponse,
    WorkspaceListResponse,
    WorkspaceMemberListResponse,
    WorkspaceMemberResponse,
    WorkspaceResponse,
)
from taskhub.logging import get_logger
from taskhub.service.auth import ClientInfo, Principal, normalize_email
from taskhub.service.errors import RateLimitedError
from taskhub.service.runtime import check_rate_limit, get_runtime
from taskhub.service.tokens import TokenPair
from taskhub.storage.models import (
    AuditLogEntry,
    Device,
    Project,
    ProjectMembership,
    Task,
    User,
    Workspace,
    WorkspaceMembership,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a token-bucket limit on ``key`` and optionally set headers.

    Raises:
        RateLimitedError if the bucket is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.warning("rate_limit_exceeded", key_prefix=key.split(":", 1)[0])
        raise RateLimitedError(retry_after=max(1, reset_seconds))

    return info


async def _enforce_auth_rate_limit(runtime, scope: str, subject: str, response: Response) -> None:
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"{scope}:{subject}",
        settings.auth_rate_limit_per_window,
        settings.auth_rate_limit_window_seconds,
        response=response,
    )


def _client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> Optional[Principal]:
    """Resolve the bearer token to a ``Principal``; ``None`` when absent or invalid."""
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


async def get_user(principal: Optional[Principal] = Depends(get_principal)) -> Principal:
    if principal is None:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return principal


async def get_admin_user(principal: Principal = Depends(get_user)) -> Principal:
    if not principal.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        role=user.role,
        global_status=user.global_status.value,
        created_at=user.created_at,
    )


def _device_response(device: Device) -> DeviceResponse:
    return DeviceResponse(
        id=device.id,
        ip_address=device.ip_address,
        user_agent=device.user_agent,
        created_at=device.created_at,
        last_used_at=device.last_used_at,
        revoked_at=device.revoked_at,
    )


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.access_expires_in,
    )


def _workspace_response(workspace: Workspace) -> WorkspaceResponse:
    return WorkspaceResponse(
        id=workspace.id,
        name=workspace.name,
        created_by=workspace.created_by,
        created_at=workspace.created_at,
    )


def _member_response(membership: WorkspaceMembership) -> WorkspaceMemberResponse:
    return WorkspaceMemberResponse(
        workspace_id=membership.workspace_id,
        user_id=membership.user_id,
        role=membership.role,
        added_at=membership.added_at,
    )


def _project_response(project: Project) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        workspace_id=project.workspace_id,
        name=project.name,
        description=project.description,
        created_by=project.created_by,
        created_at=project.created_at,
    )


def _project_member_response(membership: ProjectMembership) -> ProjectMemberResponse:
    return ProjectMemberResponse(
        project_id=membership.project_id,
        user_id=membership.user_id,
        role=membership.role,
        added_at=membership.added_at,
    )


def _task_response(task: Task) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        project_id=task.project_id,
        title=task.title,
        description=task.description,
        status=task.status,
        assignee_ids=list(task.assignee_ids),
        created_by=task.created_by,
        created_at=task.created_at,
        updated_at=task.updated_at,
    )


def _audit_response(entry: AuditLogEntry) -> AuditEventResponse:
    return AuditEventResponse(
        id=entry.id,
        action=entry.action,
        level=entry.level,
        category=entry.category.value,
        user_id=entry.user_id,
        ip_address=entry.ip_address,
        details=entry.details,
        created_at=entry.created_at,
    )


# -- auth -------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a new user account.

    Raises:
        400: If the password fails the strength policy
        409: If the email is already registered
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_auth_rate_limit(runtime, "register", client.ip_address or "unknown", response)
    user = await runtime.auth.register(body.email, body.password, body.full_name)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password and open a new device session.

    Raises:
        401: If credentials are invalid
        403: If the account is banned
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, "login", normalize_email(body.email), response)
    result = await runtime.auth.login(body.email, body.password, _client_info(request))
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            token_type=result.tokens.token_type,
            expires_in=result.tokens.access_expires_in,
            user_id=result.user.id,
            role=result.user.role,
            device_id=result.device.id,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    """Redeem a refresh token for a new token pair; each refresh token works once."""
    runtime = get_runtime()
    pair = await runtime.auth.refresh_access_token(body.refresh_token, _client_info(request))
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token, _client_info(request).ip_address)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/devices", response_model=Envelope, tags=["auth"])
async def list_devices(
    include_revoked: bool = Query(False),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    devices = await runtime.auth.list_devices(principal.id, include_revoked=include_revoked)
    return Envelope(
        status="ok",
        data=DeviceListResponse(items=[_device_response(d) for d in devices]),
    )


@router.delete("/auth/devices/{device_id}", response_model=Envelope, tags=["auth"])
async def revoke_device(
    request: Request,
    device_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_user),
):
    """Sign out one device of the caller; its refresh token stops working."""
    runtime = get_runtime()
    device = await runtime.auth.revoke_device(
        principal.id, device_id, _client_info(request).ip_address
    )
    return Envelope(status="ok", data=_device_response(device))


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, response: Response):
    """Issue a password reset code.

    The response is identical for known and unknown emails. The code itself is
    only returned when reset codes are exposed (tests, local development).
    """
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, "reset", normalize_email(body.email), response)
    code = await runtime.auth.generate_password_reset_code(body.email)
    settings = runtime.settings
    expose = settings.expose_reset_codes or settings.test_mode
    return Envelope(
        status="ok",
        data=PasswordResetRequestResponse(code=code if expose else None),
    )


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm, response: Response):
    runtime = get_runtime()
    await _enforce_auth_rate_limit(
        runtime, "reset_confirm", normalize_email(body.email), response
    )
    await runtime.auth.reset_password_with_code(body.email, body.code, body.new_password)
    return Envelope(status="ok", data={"message": "password reset"})


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.update_password(principal.id, body.current_password, body.new_password)
    return Envelope(status="ok", data={"message": "password updated"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_current_user(principal)
    return Envelope(status="ok", data=_user_response(user))


# -- workspaces -----------------------------------------------------------------


@router.post("/workspaces", response_model=Envelope, status_code=201, tags=["workspaces"])
async def create_workspace(
    body: CreateWorkspaceRequest, principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    workspace = await runtime.workspaces.create_workspace(principal, body.name)
    return Envelope(status="ok", data=_workspace_response(workspace))


@router.get("/workspaces", response_model=Envelope, tags=["workspaces"])
async def list_workspaces(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    workspaces = await runtime.workspaces.list_workspaces(principal)
    return Envelope(
        status="ok",
        data=WorkspaceListResponse(items=[_workspace_response(w) for w in workspaces]),
    )


@router.get("/workspaces/{workspace_id}", response_model=Envelope, tags=["workspaces"])
async def get_workspace(
    workspace_id: str = Path(..., max_length=128), principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    workspace = await runtime.workspaces.get_workspace(principal, workspace_id)
    return Envelope(status="ok", data=_workspace_response(workspace))


@router.delete("/workspaces/{workspace_id}", response_model=Envelope, tags=["workspaces"])
async def delete_workspace(
    workspace_id: str = Path(..., max_length=128), principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.workspaces.delete_workspace(principal, workspace_id)
    return Envelope(status="ok", data={"id": workspace_id, "deleted": True})


@router.get("/workspaces/{workspace_id}/members", response_model=Envelope, tags=["workspaces"])
async def list_workspace_members(
    workspace_id: str = Path(..., max_length=128), principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    members = await runtime.workspaces.list_members(principal, workspace_id)
    return Envelope(
        status="ok",
        data=WorkspaceMemberListResponse(items=[_member_response(m) for m in members]),
    )


@router.post(
    "/workspaces/{workspace_id}/members",
    response_model=Envelope,
    status_code=201,
    tags=["workspaces"],
)
async def add_workspace_member(
    body: AddWorkspaceMemberRequest,
    workspace_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    membership = await runtime.workspaces.add_workspace_member(
        principal, workspace_id, body.user_id, body.role
    )
    return Envelope(status="ok", data=_member_response(membership))


@router.patch(
    "/workspaces/{workspace_id}/members/{user_id}", response_model=Envelope, tags=["workspaces"]
)
async def update_workspace_member(
    body: UpdateWorkspaceMemberRequest,
    workspace_id: str = Path(..., max_length=128),
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    membership = await runtime.workspaces.update_workspace_member_role(
        principal, workspace_id, user_id, body.role
    )
    return Envelope(status="ok", data=_member_response(membership))


@router.delete(
    "/workspaces/{workspace_id}/members/{user_id}", response_model=Envelope, tags=["workspaces"]
)
async def remove_workspace_member(
    workspace_id: str = Path(..., max_length=128),
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.workspaces.remove_workspace_member(principal, workspace_id, user_id)
    return Envelope(status="ok", data={"workspace_id": workspace_id, "user_id": user_id})


@router.get("/workspaces/{workspace_id}/projects", response_model=Envelope, tags=["projects"])
async def list_projects(
    workspace_id: str = Path(..., max_length=128), principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    projects = await runtime.workspaces.list_projects(principal, workspace_id)
    return Envelope(
        status="ok",
        data=ProjectListResponse(items=[_project_response(p) for p in projects]),
    )


# -- projects ---------------------------------------------------------------


@router.post("/projects", response_model=Envelope, status_code=201, tags=["projects"])
async def create_project(body: CreateProjectRequest, principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    project = await runtime.workspaces.create_project(
        principal, body.workspace_id, body.name, body.description
    )
    return Envelope(status="ok", data=_project_response(project))


@router.get("/projects/{project_id}", response_model=Envelope, tags=["projects"])
async def get_project(project_id: str = Path(..., max_length=128), principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    project = await runtime.workspaces.get_project(principal, project_id)
    return Envelope(status="ok", data=_project_response(project))


@router.patch("/projects/{project_id}", response_model=Envelope, tags=["projects"])
async def update_project(
    body: UpdateProjectRequest,
    project_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    project = await runtime.workspaces.update_project(
        principal, project_id, name=body.name, description=body.description
    )
    return Envelope(status="ok", data=_project_response(project))


@router.delete("/projects/{project_id}", response_model=Envelope, tags=["projects"])
async def delete_project(
    project_id: str = Path(..., max_length=128), principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.workspaces.delete_project(principal, project_id)
    return Envelope(status="ok", data={"id": project_id, "deleted": True})


@router.get("/projects/{project_id}/members", response_model=Envelope, tags=["projects"])
async def list_project_members(
    project_id: str = Path(..., max_length=128), principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    members = await runtime.workspaces.list_project_members(principal, project_id)
    return Envelope(
        status="ok",
        data=ProjectMemberListResponse(items=[_project_member_response(m) for m in members]),
    )


@router.post(
    "/projects/{project_id}/members", response_model=Envelope, status_code=201, tags=["projects"]
)
async def add_project_member(
    body: AddProjectMemberRequest,
    project_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    membership = await runtime.workspaces.add_project_member(
        principal, project_id, body.user_id, body.role
    )
    return Envelope(status="ok", data=_project_member_response(membership))


@router.patch(
    "/projects/{project_id}/members/{user_id}", response_model=Envelope, tags=["projects"]
)
async def update_project_member(
    body: UpdateProjectMemberRequest,
    project_id: str = Path(..., max_length=128),
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    membership = await runtime.workspaces.update_project_member_role(
        principal, project_id, user_id, body.role
    )
    return Envelope(status="ok", data=_project_member_response(membership))


@router.delete(
    "/projects/{project_id}/members/{user_id}", response_model=Envelope, tags=["projects"]
)
async def remove_project_member(
    project_id: str = Path(..., max_length=128),
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.workspaces.remove_project_member(principal, project_id, user_id)
    return Envelope(status="ok", data={"project_id": project_id, "user_id": user_id})


# -- tasks ------------------------------------------------------------------


@router.post("/tasks", response_model=Envelope, status_code=201, tags=["tasks"])
async def create_task(body: CreateTaskRequest, principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    task = await runtime.workspaces.create_task(
        principal,
        body.project_id,
        body.title,
        body.description,
        assignee_ids=body.assignee_ids,
    )
    return Envelope(status="ok", data=_task_response(task))


@router.get("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def get_task(task_id: str = Path(..., max_length=128), principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    task = await runtime.workspaces.get_task(principal, task_id)
    return Envelope(status="ok", data=_task_response(task))


@router.get("/projects/{project_id}/tasks", response_model=Envelope, tags=["tasks"])
async def list_tasks(
    project_id: str = Path(..., max_length=128), principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    tasks = await runtime.workspaces.list_tasks(principal, project_id)
    return Envelope(status="ok", data=TaskListResponse(items=[_task_response(t) for t in tasks]))


@router.patch("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def update_task(
    body: UpdateTaskRequest,
    task_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    task = await runtime.workspaces.update_task(
        principal,
        task_id,
        title=body.title,
        description=body.description,
        status=body.status,
        assignee_ids=body.assignee_ids,
    )
    return Envelope(status="ok", data=_task_response(task))


@router.delete("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def delete_task(task_id: str = Path(..., max_length=128), principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    await runtime.workspaces.delete_task(principal, task_id)
    return Envelope(status="ok", data={"id": task_id, "deleted": True})


# -- admin ------------------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    users = await runtime.users.list_users(principal, limit=limit, offset=offset)
    return Envelope(status="ok", data=UserListResponse(items=[_user_response(u) for u in users]))


@router.post("/admin/users/{user_id}/ban", response_model=Envelope, tags=["admin"])
async def admin_ban_user(
    request: Request,
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_admin_user),
):
    """Ban a user; every device and refresh token of theirs is revoked with it."""
    runtime = get_runtime()
    user = await runtime.users.ban_user(principal, user_id, _client_info(request).ip_address)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/admin/users/{user_id}/unban", response_model=Envelope, tags=["admin"])
async def admin_unban_user(
    request: Request,
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.users.unban_user(principal, user_id, _client_info(request).ip_address)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/admin/users/{user_id}/reset-password", response_model=Envelope, tags=["admin"])
async def admin_reset_password(
    body: AdminResetPasswordRequest,
    request: Request,
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    revoked = await runtime.users.admin_reset_password(
        principal, user_id, body.new_password, _client_info(request).ip_address
    )
    return Envelope(status="ok", data={"user_id": user_id, "sessions_revoked": revoked})


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_user_role(
    body: UpdateUserRoleRequest,
    request: Request,
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.users.set_user_role(
        principal, user_id, body.role, _client_info(request).ip_address
    )
    return Envelope(status="ok", data=_user_response(user))


@router.get("/admin/workspaces", response_model=Envelope, tags=["admin"])
async def admin_list_workspaces(principal: Principal = Depends(get_admin_user)):
    runtime = get_runtime()
    workspaces = await runtime.workspaces.list_all_workspaces(principal)
    return Envelope(
        status="ok",
        data=WorkspaceListResponse(items=[_workspace_response(w) for w in workspaces]),
    )


@router.get("/admin/audit", response_model=Envelope, tags=["admin"])
async def admin_list_audit_events(
    user_id: Optional[str] = Query(None, max_length=128),
    action: Optional[str] = Query(None, max_length=64),
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    await runtime.authz.require_admin(principal.id)
    events = runtime.store.list_audit_events(user_id=user_id, action=action, limit=limit)
    return Envelope(
        status="ok",
        data=AuditEventListResponse(items=[_audit_response(e) for e in events]),
    )
