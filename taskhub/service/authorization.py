from __future__ import annotations

from typing import Iterable, Optional, Protocol

from taskhub.service.audit import AuditLogger
from taskhub.service.errors import ForbiddenError, LastOwnerViolationError, NotFoundError
from taskhub.storage.models import (
    GlobalRole,
    Project,
    ProjectMembership,
    ProjectRole,
    Task,
    User,
    WorkspaceMembership,
    WorkspaceRole,
)

TASK_EDITOR_PROJECT_ROLES = frozenset({ProjectRole.LEAD, ProjectRole.CONTRIBUTOR})
TASK_EDITOR_WORKSPACE_ROLES = frozenset({WorkspaceRole.OWNER, WorkspaceRole.MEMBER})


class AuthorizationStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_workspace_membership(
        self, workspace_id: str, user_id: str
    ) -> Optional[WorkspaceMembership]: ...

    def get_project_membership(
        self, project_id: str, user_id: str
    ) -> Optional[ProjectMembership]: ...

    def get_project(self, project_id: str) -> Optional[Project]: ...

    def get_task(self, task_id: str) -> Optional[Task]: ...

    def count_workspace_owners(self, workspace_id: str) -> int: ...


class AuthorizationService:
    """Resolves global, workspace, project and task-level permissions.

    Every check reads the current membership rows; nothing is cached, so a role
    change is visible to the very next request.
    """

    def __init__(self, store: AuthorizationStore, audit: AuditLogger) -> None:
        self.store = store
        self.audit = audit
        self.logger = audit.logger_for("authorization")

    # -- global ------------------------------------------------------------

    async def has_global_role(self, user_id: str, role: GlobalRole) -> bool:
        user = self.store.get_user(user_id)
        return bool(user and user.role == GlobalRole(role))

    async def require_admin(self, user_id: str) -> None:
        if not await self.has_global_role(user_id, GlobalRole.ADMIN):
            raise ForbiddenError("admin access required")

    # -- workspace ---------------------------------------------------------

    async def get_workspace_membership(
        self, user_id: str, workspace_id: str
    ) -> Optional[WorkspaceMembership]:
        return self.store.get_workspace_membership(workspace_id, user_id)

    async def is_workspace_member(self, user_id: str, workspace_id: str) -> bool:
        return self.store.get_workspace_membership(workspace_id, user_id) is not None

    async def is_workspace_owner(self, user_id: str, workspace_id: str) -> bool:
        membership = self.store.get_workspace_membership(workspace_id, user_id)
        return bool(membership and membership.role == WorkspaceRole.OWNER)

    async def require_workspace_role(
        self, user_id: str, workspace_id: str, allowed: Iterable[WorkspaceRole]
    ) -> WorkspaceMembership:
        allowed_roles = {WorkspaceRole(role) for role in allowed}
        membership = self.store.get_workspace_membership(workspace_id, user_id)
        if not membership or membership.role not in allowed_roles:
            raise ForbiddenError(
                "insufficient workspace role",
                detail={
                    "workspace_id": workspace_id,
                    "required": sorted(role.value for role in allowed_roles),
                },
            )
        return membership

    async def is_only_workspace_owner(self, user_id: str, workspace_id: str) -> bool:
        if not await self.is_workspace_owner(user_id, workspace_id):
            return False
        return self.store.count_workspace_owners(workspace_id) <= 1

    async def validate_workspace_owner_change(
        self, workspace_id: str, user_id: str, new_role: Optional[WorkspaceRole]
    ) -> None:
        """Reject demoting or removing (``new_role=None``) the sole OWNER.

        The store re-checks inside the mutating transaction; this pre-check
        gives callers the error before any write is attempted.
        """
        if new_role is not None and WorkspaceRole(new_role) == WorkspaceRole.OWNER:
            return
        if await self.is_only_workspace_owner(user_id, workspace_id):
            raise LastOwnerViolationError(
                detail={"workspace_id": workspace_id, "user_id": user_id}
            )

    # -- project -----------------------------------------------------------

    async def get_project_membership(
        self, user_id: str, project_id: str
    ) -> Optional[ProjectMembership]:
        return self.store.get_project_membership(project_id, user_id)

    async def is_project_member(self, user_id: str, project_id: str) -> bool:
        return self.store.get_project_membership(project_id, user_id) is not None

    async def require_project_role(
        self, user_id: str, project_id: str, allowed: Iterable[ProjectRole]
    ) -> ProjectMembership:
        allowed_roles = {ProjectRole(role) for role in allowed}
        membership = self.store.get_project_membership(project_id, user_id)
        if not membership or membership.role not in allowed_roles:
            raise ForbiddenError(
                "insufficient project role",
                detail={
                    "project_id": project_id,
                    "required": sorted(role.value for role in allowed_roles),
                },
            )
        return membership

    async def get_workspace_id_from_project(self, project_id: str) -> str:
        project = self.store.get_project(project_id)
        if not project:
            raise NotFoundError("project not found", detail={"project_id": project_id})
        return project.workspace_id

    async def get_workspace_id_from_task(self, task_id: str) -> str:
        task = self.store.get_task(task_id)
        if not task:
            raise NotFoundError("task not found", detail={"task_id": task_id})
        return await self.get_workspace_id_from_project(task.project_id)

    async def can_access_project(self, user_id: str, project_id: str) -> bool:
        if self.store.get_project_membership(project_id, user_id):
            return True
        project = self.store.get_project(project_id)
        if not project:
            return False
        return self.store.get_workspace_membership(project.workspace_id, user_id) is not None

    async def require_project_access(self, user_id: str, project_id: str) -> None:
        if not self.store.get_project(project_id):
            raise NotFoundError("project not found", detail={"project_id": project_id})
        if not await self.can_access_project(user_id, project_id):
            raise ForbiddenError("no access to project", detail={"project_id": project_id})

    # -- task --------------------------------------------------------------

    async def can_modify_task(self, user_id: str, task_id: str) -> bool:
        task = self.store.get_task(task_id)
        if not task:
            return False
        if task.created_by == user_id:
            return True
        project_membership = self.store.get_project_membership(task.project_id, user_id)
        if project_membership and project_membership.role in TASK_EDITOR_PROJECT_ROLES:
            return True
        project = self.store.get_project(task.project_id)
        if not project:
            return False
        workspace_membership = self.store.get_workspace_membership(project.workspace_id, user_id)
        return bool(
            workspace_membership and workspace_membership.role in TASK_EDITOR_WORKSPACE_ROLES
        )

    async def require_task_modify_permission(self, user_id: str, task_id: str) -> None:
        if not self.store.get_task(task_id):
            raise NotFoundError("task not found", detail={"task_id": task_id})
        if not await self.can_modify_task(user_id, task_id):
            self.logger.info("task_modify_denied", user_id=user_id, task_id=task_id)
            raise ForbiddenError("cannot modify task", detail={"task_id": task_id})
