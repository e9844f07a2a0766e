from __future__ import annotations

from typing import List, Optional, Sequence

from taskhub.service import audit as audit_actions
from taskhub.service.audit import AuditLogger
from taskhub.service.auth import Principal
from taskhub.service.authorization import AuthorizationService
from taskhub.service.errors import (
    ForbiddenError,
    LastOwnerViolationError,
    NotFoundError,
    ValidationError,
)
from taskhub.storage.errors import LAST_OWNER, ConstraintViolation
from taskhub.storage.models import (
    AuditCategory,
    Project,
    ProjectMembership,
    ProjectRole,
    Task,
    TaskStatus,
    Workspace,
    WorkspaceMembership,
    WorkspaceRole,
)

OWNER_ONLY = (WorkspaceRole.OWNER,)
PROJECT_CREATORS = (WorkspaceRole.OWNER, WorkspaceRole.MEMBER)
TASK_CREATOR_PROJECT_ROLES = (ProjectRole.LEAD, ProjectRole.CONTRIBUTOR)
TASK_CREATOR_WORKSPACE_ROLES = (WorkspaceRole.OWNER, WorkspaceRole.MEMBER)


def _clean_name(value: str, field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field} is required", errors=[f"{field} must not be empty"])
    return cleaned


class WorkspaceService:
    """Workspace, project and task operations gated by ``AuthorizationService``."""

    def __init__(self, store, authz: AuthorizationService, audit: AuditLogger) -> None:
        self.store = store
        self.authz = authz
        self.audit = audit

    def _translate(self, exc: ConstraintViolation) -> Exception:
        if exc.constraint == LAST_OWNER:
            return LastOwnerViolationError(detail=exc.detail)
        return NotFoundError(exc.message, detail=exc.detail)

    # -- workspaces --------------------------------------------------------

    async def create_workspace(self, principal: Principal, name: str) -> Workspace:
        workspace = self.store.create_workspace(_clean_name(name, "name"), principal.id)
        self.audit.record(
            audit_actions.WORKSPACE_CREATED,
            user_id=principal.id,
            details={"workspace_id": workspace.id, "name": workspace.name},
            category=AuditCategory.ACTIVITY_TRACKER,
        )
        return workspace

    async def get_workspace(self, principal: Principal, workspace_id: str) -> Workspace:
        workspace = self.store.get_workspace(workspace_id)
        if not workspace:
            raise NotFoundError("workspace not found", detail={"workspace_id": workspace_id})
        if not principal.is_admin and not await self.authz.is_workspace_member(
            principal.id, workspace_id
        ):
            raise ForbiddenError("not a workspace member", detail={"workspace_id": workspace_id})
        return workspace

    async def list_workspaces(self, principal: Principal) -> List[Workspace]:
        return self.store.list_workspaces_for_user(principal.id)

    async def list_all_workspaces(self, admin: Principal) -> List[Workspace]:
        await self.authz.require_admin(admin.id)
        return self.store.list_all_workspaces()

    async def list_members(
        self, principal: Principal, workspace_id: str
    ) -> List[WorkspaceMembership]:
        await self.get_workspace(principal, workspace_id)
        return self.store.list_workspace_members(workspace_id)

    async def delete_workspace(self, principal: Principal, workspace_id: str) -> None:
        await self.get_workspace(principal, workspace_id)
        await self.authz.require_workspace_role(principal.id, workspace_id, OWNER_ONLY)
        self.store.delete_workspace(workspace_id)
        self.audit.record(
            audit_actions.WORKSPACE_DELETED,
            user_id=principal.id,
            details={"workspace_id": workspace_id},
            category=AuditCategory.ACTIVITY_TRACKER,
        )

    async def add_workspace_member(
        self,
        principal: Principal,
        workspace_id: str,
        user_id: str,
        role: WorkspaceRole = WorkspaceRole.MEMBER,
    ) -> WorkspaceMembership:
        await self.authz.require_workspace_role(principal.id, workspace_id, OWNER_ONLY)
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        try:
            membership = self.store.add_workspace_member(workspace_id, user_id, WorkspaceRole(role))
        except ConstraintViolation as exc:
            raise self._translate(exc) from exc
        self.audit.record(
            audit_actions.WORKSPACE_MEMBER_ADDED,
            user_id=principal.id,
            details={"workspace_id": workspace_id, "member_id": user_id, "role": membership.role.value},
            category=AuditCategory.ACTIVITY_TRACKER,
        )
        return membership

    async def update_workspace_member_role(
        self,
        principal: Principal,
        workspace_id: str,
        user_id: str,
        role: WorkspaceRole,
    ) -> WorkspaceMembership:
        await self.authz.require_workspace_role(principal.id, workspace_id, OWNER_ONLY)
        new_role = WorkspaceRole(role)
        await self.authz.validate_workspace_owner_change(workspace_id, user_id, new_role)
        try:
            membership = self.store.update_workspace_member_role(workspace_id, user_id, new_role)
        except ConstraintViolation as exc:
            raise self._translate(exc) from exc
        if not membership:
            raise NotFoundError(
                "membership not found", detail={"workspace_id": workspace_id, "user_id": user_id}
            )
        self.audit.record(
            audit_actions.WORKSPACE_MEMBER_ROLE_CHANGED,
            user_id=principal.id,
            details={"workspace_id": workspace_id, "member_id": user_id, "role": new_role.value},
            category=AuditCategory.ACTIVITY_TRACKER,
        )
        return membership

    async def remove_workspace_member(
        self, principal: Principal, workspace_id: str, user_id: str
    ) -> None:
        await self.authz.require_workspace_role(principal.id, workspace_id, OWNER_ONLY)
        await self.authz.validate_workspace_owner_change(workspace_id, user_id, None)
        try:
            removed = self.store.remove_workspace_member(workspace_id, user_id)
        except ConstraintViolation as exc:
            raise self._translate(exc) from exc
        if not removed:
            raise NotFoundError(
                "membership not found", detail={"workspace_id": workspace_id, "user_id": user_id}
            )
        self.audit.record(
            audit_actions.WORKSPACE_MEMBER_REMOVED,
            user_id=principal.id,
            details={"workspace_id": workspace_id, "member_id": user_id},
            category=AuditCategory.ACTIVITY_TRACKER,
        )

    # -- projects ----------------------------------------------------------

    async def _require_project_manager(self, principal: Principal, project_id: str) -> str:
        """Allow a project LEAD or an OWNER of the parent workspace; returns the workspace id."""
        workspace_id = await self.authz.get_workspace_id_from_project(project_id)
        if await self.authz.is_workspace_owner(principal.id, workspace_id):
            return workspace_id
        await self.authz.require_project_role(principal.id, project_id, [ProjectRole.LEAD])
        return workspace_id

    async def create_project(
        self,
        principal: Principal,
        workspace_id: str,
        name: str,
        description: Optional[str] = None,
    ) -> Project:
        if not self.store.get_workspace(workspace_id):
            raise NotFoundError("workspace not found", detail={"workspace_id": workspace_id})
        await self.authz.require_workspace_role(principal.id, workspace_id, PROJECT_CREATORS)
        try:
            project = self.store.create_project(
                workspace_id, _clean_name(name, "name"), principal.id, description
            )
        except ConstraintViolation as exc:
            raise self._translate(exc) from exc
        self.audit.record(
            audit_actions.PROJECT_CREATED,
            user_id=principal.id,
            details={"workspace_id": workspace_id, "project_id": project.id, "name": project.name},
            category=AuditCategory.ACTIVITY_TRACKER,
        )
        return project

    async def get_project(self, principal: Principal, project_id: str) -> Project:
        await self.authz.require_project_access(principal.id, project_id)
        return self.store.get_project(project_id)

    async def list_projects(self, principal: Principal, workspace_id: str) -> List[Project]:
        await self.get_workspace(principal, workspace_id)
        return self.store.list_projects(workspace_id)

    async def update_project(
        self,
        principal: Principal,
        project_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Project:
        await self._require_project_manager(principal, project_id)
        project = self.store.update_project(
            project_id,
            name=_clean_name(name, "name") if name is not None else None,
            description=description,
        )
        if not project:
            raise NotFoundError("project not found", detail={"project_id": project_id})
        self.audit.record(
            audit_actions.PROJECT_UPDATED,
            user_id=principal.id,
            details={"project_id": project_id, "name": project.name},
            category=AuditCategory.ACTIVITY_TRACKER,
        )
        return project

    async def delete_project(self, principal: Principal, project_id: str) -> None:
        workspace_id = await self._require_project_manager(principal, project_id)
        if not self.store.delete_project(project_id):
            raise NotFoundError("project not found", detail={"project_id": project_id})
        self.audit.record(
            audit_actions.PROJECT_DELETED,
            user_id=principal.id,
            details={"workspace_id": workspace_id, "project_id": project_id},
            category=AuditCategory.ACTIVITY_TRACKER,
        )

    async def list_project_members(
        self, principal: Principal, project_id: str
    ) -> List[ProjectMembership]:
        await self.authz.require_project_access(principal.id, project_id)
        return self.store.list_project_members(project_id)

    async def add_project_member(
        self,
        principal: Principal,
        project_id: str,
        user_id: str,
        role: ProjectRole = ProjectRole.CONTRIBUTOR,
    ) -> ProjectMembership:
        workspace_id = await self._require_project_manager(principal, project_id)
        if not await self.authz.is_workspace_member(user_id, workspace_id):
            raise ValidationError(
                "user must belong to the workspace first",
                errors=["user is not a workspace member"],
            )
        try:
            membership = self.store.add_project_member(project_id, user_id, ProjectRole(role))
        except ConstraintViolation as exc:
            raise self._translate(exc) from exc
        self.audit.record(
            audit_actions.PROJECT_MEMBER_ADDED,
            user_id=principal.id,
            details={"project_id": project_id, "member_id": user_id, "role": membership.role.value},
            category=AuditCategory.ACTIVITY_TRACKER,
        )
        return membership

    async def update_project_member_role(
        self,
        principal: Principal,
        project_id: str,
        user_id: str,
        role: ProjectRole,
    ) -> ProjectMembership:
        await self._require_project_manager(principal, project_id)
        new_role = ProjectRole(role)
        membership = self.store.update_project_member_role(project_id, user_id, new_role)
        if not membership:
            raise NotFoundError(
                "membership not found", detail={"project_id": project_id, "user_id": user_id}
            )
        self.audit.record(
            audit_actions.PROJECT_MEMBER_ROLE_CHANGED,
            user_id=principal.id,
            details={"project_id": project_id, "member_id": user_id, "role": new_role.value},
            category=AuditCategory.ACTIVITY_TRACKER,
        )
        return membership

    async def remove_project_member(
        self, principal: Principal, project_id: str, user_id: str
    ) -> None:
        await self._require_project_manager(principal, project_id)
        if not await self.authz.is_project_member(user_id, project_id):
            raise NotFoundError(
                "membership not found", detail={"project_id": project_id, "user_id": user_id}
            )
        self.store.remove_project_member(project_id, user_id)
        self.audit.record(
            audit_actions.PROJECT_MEMBER_REMOVED,
            user_id=principal.id,
            details={"project_id": project_id, "member_id": user_id},
            category=AuditCategory.ACTIVITY_TRACKER,
        )

    # -- tasks -------------------------------------------------------------

    async def _check_assignees(
        self, project_id: str, workspace_id: str, assignee_ids: Sequence[str]
    ) -> List[str]:
        unique = sorted(set(assignee_ids))
        outsiders = []
        for user_id in unique:
            if await self.authz.is_project_member(user_id, project_id):
                continue
            if not await self.authz.is_workspace_member(user_id, workspace_id):
                outsiders.append(user_id)
        if outsiders:
            raise ValidationError(
                "assignees must have access to the project",
                errors=[f"user {uid} is not a project or workspace member" for uid in outsiders],
            )
        return unique

    async def create_task(
        self,
        principal: Principal,
        project_id: str,
        title: str,
        description: Optional[str] = None,
        assignee_ids: Optional[Sequence[str]] = None,
    ) -> Task:
        workspace_id = await self.authz.get_workspace_id_from_project(project_id)
        project_membership = await self.authz.get_project_membership(principal.id, project_id)
        workspace_membership = await self.authz.get_workspace_membership(principal.id, workspace_id)
        allowed = (
            project_membership is not None
            and project_membership.role in TASK_CREATOR_PROJECT_ROLES
        ) or (
            workspace_membership is not None
            and workspace_membership.role in TASK_CREATOR_WORKSPACE_ROLES
        )
        if not allowed:
            raise ForbiddenError("cannot create tasks in project", detail={"project_id": project_id})
        cleaned_title = _clean_name(title, "title")
        assignees = await self._check_assignees(project_id, workspace_id, assignee_ids or ())
        try:
            task = self.store.create_task(
                project_id, cleaned_title, principal.id, description, assignee_ids=assignees
            )
        except ConstraintViolation as exc:
            raise self._translate(exc) from exc
        self.audit.record(
            audit_actions.TASK_CREATED,
            user_id=principal.id,
            details={"project_id": project_id, "task_id": task.id, "assignee_ids": task.assignee_ids},
            category=AuditCategory.ACTIVITY_TRACKER,
        )
        return task

    async def get_task(self, principal: Principal, task_id: str) -> Task:
        task = self.store.get_task(task_id)
        if not task:
            raise NotFoundError("task not found", detail={"task_id": task_id})
        if not await self.authz.can_access_project(principal.id, task.project_id):
            raise ForbiddenError("no access to task", detail={"task_id": task_id})
        return task

    async def list_tasks(self, principal: Principal, project_id: str) -> List[Task]:
        await self.authz.require_project_access(principal.id, project_id)
        return self.store.list_tasks(project_id)

    async def update_task(
        self,
        principal: Principal,
        task_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        assignee_ids: Optional[Sequence[str]] = None,
    ) -> Task:
        await self.authz.require_task_modify_permission(principal.id, task_id)
        before = self.store.get_task(task_id)
        if not before:
            raise NotFoundError("task not found", detail={"task_id": task_id})
        cleaned_title = _clean_name(title, "title") if title is not None else None
        assignees = None
        if assignee_ids is not None:
            workspace_id = await self.authz.get_workspace_id_from_project(before.project_id)
            assignees = await self._check_assignees(before.project_id, workspace_id, assignee_ids)
        try:
            task = self.store.update_task(
                task_id,
                title=cleaned_title,
                description=description,
                status=TaskStatus(status) if status is not None else None,
                assignee_ids=assignees,
            )
        except ConstraintViolation as exc:
            raise self._translate(exc) from exc
        if not task:
            raise NotFoundError("task not found", detail={"task_id": task_id})
        if status is not None and before.status != task.status:
            self.audit.record(
                audit_actions.TASK_STATUS_CHANGE,
                user_id=principal.id,
                details={
                    "task_id": task_id,
                    "from": before.status.value,
                    "to": task.status.value,
                },
                category=AuditCategory.ACTIVITY_TRACKER,
            )
        if assignees is not None and assignees != before.assignee_ids:
            self.audit.record(
                audit_actions.TASK_ASSIGNEES_CHANGED,
                user_id=principal.id,
                details={
                    "task_id": task_id,
                    "added": [a for a in assignees if a not in before.assignee_ids],
                    "removed": [a for a in before.assignee_ids if a not in assignees],
                },
                category=AuditCategory.ACTIVITY_TRACKER,
            )
        return task

    async def delete_task(self, principal: Principal, task_id: str) -> None:
        await self.authz.require_task_modify_permission(principal.id, task_id)
        if not self.store.delete_task(task_id):
            raise NotFoundError("task not found", detail={"task_id": task_id})
        self.audit.record(
            audit_actions.TASK_DELETED,
            user_id=principal.id,
            details={"task_id": task_id},
            category=AuditCategory.ACTIVITY_TRACKER,
        )
