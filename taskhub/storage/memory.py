from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from taskhub.logging import get_logger
from taskhub.storage.errors import EMAIL_UNIQUE, FOREIGN_KEY, LAST_OWNER, ConstraintViolation
from taskhub.storage.models import (
    AuditLogEntry,
    Device,
    GlobalRole,
    PasswordResetCode,
    Project,
    ProjectMembership,
    ProjectRole,
    RefreshTokenRecord,
    Task,
    TaskStatus,
    User,
    UserStatus,
    Workspace,
    WorkspaceMembership,
    WorkspaceRole,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process store used by tests and local development.

    Every public method runs under ``_data_lock`` so each call is atomic with
    respect to the others. Returned records are copies; mutating them never
    changes stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.devices: Dict[str, Device] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.reset_codes: Dict[str, PasswordResetCode] = {}
        self.workspaces: Dict[str, Workspace] = {}
        self.workspace_members: Dict[Tuple[str, str], WorkspaceMembership] = {}
        self.projects: Dict[str, Project] = {}
        self.project_members: Dict[Tuple[str, str], ProjectMembership] = {}
        self.tasks: Dict[str, Task] = {}
        self.audit_events: List[AuditLogEntry] = []
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()

    def check_health(self) -> bool:
        return True

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        role: GlobalRole = GlobalRole.USER,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email", "constraint": EMAIL_UNIQUE}
                )
            user = User(id=new_id(), email=email, full_name=full_name, role=GlobalRole(role))
            self.users[user.id] = user
            self.credentials[user.id] = password_hash
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [replace(u) for u in ordered[offset : offset + limit]]

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def save_password(
        self, user_id: str, password_hash: str, *, revoke_sessions: bool = False
    ) -> int:
        with self._data_lock:
            user = self._require_user(user_id)
            self.credentials[user_id] = password_hash
            user.updated_at = utcnow()
            return self._revoke_user_sessions_locked(user_id) if revoke_sessions else 0

    def set_user_status(
        self, user_id: str, status: UserStatus, *, revoke_sessions: bool = False
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.global_status = UserStatus(status)
            user.updated_at = utcnow()
            if revoke_sessions:
                self._revoke_user_sessions_locked(user_id)
            return replace(user)

    def set_user_role(
        self, user_id: str, role: GlobalRole, *, revoke_sessions: bool = False
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = GlobalRole(role)
            user.updated_at = utcnow()
            if revoke_sessions:
                self._revoke_user_sessions_locked(user_id)
            return replace(user)

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation(
                "user does not exist", {"user_id": user_id, "constraint": FOREIGN_KEY}
            )
        return user

    # -- devices and refresh tokens ---------------------------------------

    def _insert_session_locked(
        self,
        user_id: str,
        jti: str,
        expires_at: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> Device:
        if jti in self.refresh_tokens:
            raise ConstraintViolation("jti already exists", {"field": "jti"})
        now = utcnow()
        device = Device(
            id=new_id(),
            user_id=user_id,
            jti=jti,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            last_used_at=now,
        )
        self.devices[device.id] = device
        self.refresh_tokens[jti] = RefreshTokenRecord(
            jti=jti, user_id=user_id, device_id=device.id, expires_at=expires_at, created_at=now
        )
        return device

    def create_session(
        self,
        user_id: str,
        jti: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Device:
        with self._data_lock:
            self._require_user(user_id)
            device = self._insert_session_locked(user_id, jti, expires_at, ip_address, user_agent)
            return replace(device)

    def get_refresh_token(self, jti: str) -> Optional[Tuple[RefreshTokenRecord, Device]]:
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            if not record:
                return None
            device = self.devices.get(record.device_id)
            if not device:
                return None
            return replace(record), replace(device)

    def rotate_session(
        self,
        old_jti: str,
        user_id: str,
        new_jti: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[Device]:
        with self._data_lock:
            now = utcnow()
            record = self.refresh_tokens.get(old_jti)
            if not record or record.user_id != user_id:
                return None
            device = self.devices.get(record.device_id)
            if record.is_revoked or record.is_expired(now) or not device or device.is_revoked:
                return None
            record.revoked_at = now
            device.revoked_at = now
            device.last_used_at = now
            fresh = self._insert_session_locked(
                user_id,
                new_jti,
                expires_at,
                ip_address if ip_address is not None else device.ip_address,
                user_agent if user_agent is not None else device.user_agent,
            )
            return replace(fresh)

    def revoke_session(self, jti: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            if not record or record.is_revoked:
                return False
            now = utcnow()
            record.revoked_at = now
            device = self.devices.get(record.device_id)
            if device and not device.is_revoked:
                device.revoked_at = now
            return True

    def revoke_device(self, user_id: str, device_id: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device or device.user_id != user_id:
                return None
            now = utcnow()
            if not device.is_revoked:
                device.revoked_at = now
            record = self.refresh_tokens.get(device.jti)
            if record and not record.is_revoked:
                record.revoked_at = now
            return replace(device)

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            return self._revoke_user_sessions_locked(user_id)

    def _revoke_user_sessions_locked(self, user_id: str) -> int:
        now = utcnow()
        count = 0
        for device in self.devices.values():
            if device.user_id == user_id and not device.is_revoked:
                device.revoked_at = now
                count += 1
        for record in self.refresh_tokens.values():
            if record.user_id == user_id and not record.is_revoked:
                record.revoked_at = now
        return count

    def list_devices(self, user_id: str, *, include_revoked: bool = False) -> List[Device]:
        with self._data_lock:
            devices = [
                replace(d)
                for d in self.devices.values()
                if d.user_id == user_id and (include_revoked or not d.is_revoked)
            ]
            return sorted(devices, key=lambda d: d.created_at, reverse=True)

    # -- password reset ----------------------------------------------------

    def create_reset_code(
        self, user_id: str, code_hash: str, expires_at: datetime
    ) -> PasswordResetCode:
        with self._data_lock:
            self._require_user(user_id)
            for existing in self.reset_codes.values():
                if existing.user_id == user_id and not existing.used:
                    existing.used = True
            code = PasswordResetCode(
                id=new_id(), user_id=user_id, code_hash=code_hash, expires_at=expires_at
            )
            self.reset_codes[code.id] = code
            return replace(code)

    def get_active_reset_code(self, user_id: str) -> Optional[PasswordResetCode]:
        with self._data_lock:
            now = utcnow()
            candidates = [
                c
                for c in self.reset_codes.values()
                if c.user_id == user_id and not c.used and not c.is_expired(now)
            ]
            if not candidates:
                return None
            return replace(max(candidates, key=lambda c: c.created_at))

    def complete_password_reset(self, user_id: str, code_id: str, password_hash: str) -> bool:
        with self._data_lock:
            code = self.reset_codes.get(code_id)
            if not code or code.user_id != user_id or code.used or code.is_expired():
                return False
            user = self._require_user(user_id)
            code.used = True
            self.credentials[user_id] = password_hash
            user.updated_at = utcnow()
            self._revoke_user_sessions_locked(user_id)
            return True

    # -- workspaces --------------------------------------------------------

    def create_workspace(self, name: str, owner_id: str) -> Workspace:
        with self._data_lock:
            self._require_user(owner_id)
            workspace = Workspace(id=new_id(), name=name, created_by=owner_id)
            self.workspaces[workspace.id] = workspace
            self.workspace_members[(workspace.id, owner_id)] = WorkspaceMembership(
                workspace_id=workspace.id, user_id=owner_id, role=WorkspaceRole.OWNER
            )
            return replace(workspace)

    def get_workspace(self, workspace_id: str) -> Optional[Workspace]:
        with self._data_lock:
            workspace = self.workspaces.get(workspace_id)
            return replace(workspace) if workspace else None

    def list_workspaces_for_user(self, user_id: str) -> List[Workspace]:
        with self._data_lock:
            ids = {ws_id for (ws_id, uid) in self.workspace_members if uid == user_id}
            found = [replace(self.workspaces[ws_id]) for ws_id in ids if ws_id in self.workspaces]
            return sorted(found, key=lambda w: w.created_at)

    def list_all_workspaces(self) -> List[Workspace]:
        with self._data_lock:
            return sorted((replace(w) for w in self.workspaces.values()), key=lambda w: w.created_at)

    def delete_workspace(self, workspace_id: str) -> bool:
        with self._data_lock:
            if self.workspaces.pop(workspace_id, None) is None:
                return False
            for key in [k for k in self.workspace_members if k[0] == workspace_id]:
                self.workspace_members.pop(key, None)
            project_ids = {p.id for p in self.projects.values() if p.workspace_id == workspace_id}
            for project_id in project_ids:
                self.projects.pop(project_id, None)
            for key in [k for k in self.project_members if k[0] in project_ids]:
                self.project_members.pop(key, None)
            for task_id in [t.id for t in self.tasks.values() if t.project_id in project_ids]:
                self.tasks.pop(task_id, None)
            return True

    def get_workspace_membership(
        self, workspace_id: str, user_id: str
    ) -> Optional[WorkspaceMembership]:
        with self._data_lock:
            membership = self.workspace_members.get((workspace_id, user_id))
            return replace(membership) if membership else None

    def list_workspace_members(self, workspace_id: str) -> List[WorkspaceMembership]:
        with self._data_lock:
            members = [replace(m) for (ws_id, _), m in self.workspace_members.items() if ws_id == workspace_id]
            return sorted(members, key=lambda m: m.added_at)

    def count_workspace_owners(self, workspace_id: str) -> int:
        with self._data_lock:
            return self._count_owners_locked(workspace_id)

    def _count_owners_locked(self, workspace_id: str) -> int:
        return sum(
            1
            for (ws_id, _), m in self.workspace_members.items()
            if ws_id == workspace_id and m.role == WorkspaceRole.OWNER
        )

    def add_workspace_member(
        self, workspace_id: str, user_id: str, role: WorkspaceRole
    ) -> WorkspaceMembership:
        with self._data_lock:
            if workspace_id not in self.workspaces:
                raise ConstraintViolation(
                    "workspace does not exist",
                    {"workspace_id": workspace_id, "constraint": FOREIGN_KEY},
                )
            self._require_user(user_id)
            existing = self.workspace_members.get((workspace_id, user_id))
            if existing:
                return replace(existing)
            membership = WorkspaceMembership(
                workspace_id=workspace_id, user_id=user_id, role=WorkspaceRole(role)
            )
            self.workspace_members[(workspace_id, user_id)] = membership
            return replace(membership)

    def update_workspace_member_role(
        self, workspace_id: str, user_id: str, role: WorkspaceRole
    ) -> Optional[WorkspaceMembership]:
        with self._data_lock:
            membership = self.workspace_members.get((workspace_id, user_id))
            if not membership:
                return None
            new_role = WorkspaceRole(role)
            if (
                membership.role == WorkspaceRole.OWNER
                and new_role != WorkspaceRole.OWNER
                and self._count_owners_locked(workspace_id) <= 1
            ):
                raise ConstraintViolation(
                    "workspace must keep at least one owner",
                    {"workspace_id": workspace_id, "constraint": LAST_OWNER},
                )
            membership.role = new_role
            return replace(membership)

    def remove_workspace_member(self, workspace_id: str, user_id: str) -> bool:
        with self._data_lock:
            membership = self.workspace_members.get((workspace_id, user_id))
            if not membership:
                return False
            if (
                membership.role == WorkspaceRole.OWNER
                and self._count_owners_locked(workspace_id) <= 1
            ):
                raise ConstraintViolation(
                    "workspace must keep at least one owner",
                    {"workspace_id": workspace_id, "constraint": LAST_OWNER},
                )
            self.workspace_members.pop((workspace_id, user_id), None)
            project_ids = {p.id for p in self.projects.values() if p.workspace_id == workspace_id}
            for key in [k for k in self.project_members if k[0] in project_ids and k[1] == user_id]:
                self.project_members.pop(key, None)
            for task in self.tasks.values():
                if task.project_id in project_ids and user_id in task.assignee_ids:
                    task.assignee_ids = [a for a in task.assignee_ids if a != user_id]
            return True

    # -- projects ----------------------------------------------------------

    def create_project(
        self,
        workspace_id: str,
        name: str,
        created_by: str,
        description: Optional[str] = None,
    ) -> Project:
        with self._data_lock:
            if workspace_id not in self.workspaces:
                raise ConstraintViolation(
                    "workspace does not exist",
                    {"workspace_id": workspace_id, "constraint": FOREIGN_KEY},
                )
            project = Project(
                id=new_id(),
                workspace_id=workspace_id,
                name=name,
                created_by=created_by,
                description=description,
            )
            self.projects[project.id] = project
            self.project_members[(project.id, created_by)] = ProjectMembership(
                project_id=project.id, user_id=created_by, role=ProjectRole.LEAD
            )
            return replace(project)

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._data_lock:
            project = self.projects.get(project_id)
            return replace(project) if project else None

    def list_projects(self, workspace_id: str) -> List[Project]:
        with self._data_lock:
            found = [replace(p) for p in self.projects.values() if p.workspace_id == workspace_id]
            return sorted(found, key=lambda p: p.created_at)

    def update_project(
        self,
        project_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Project]:
        with self._data_lock:
            project = self.projects.get(project_id)
            if not project:
                return None
            if name is not None:
                project.name = name
            if description is not None:
                project.description = description
            project.updated_at = utcnow()
            return replace(project)

    def delete_project(self, project_id: str) -> bool:
        with self._data_lock:
            if self.projects.pop(project_id, None) is None:
                return False
            for key in [k for k in self.project_members if k[0] == project_id]:
                self.project_members.pop(key, None)
            for task_id in [t.id for t in self.tasks.values() if t.project_id == project_id]:
                self.tasks.pop(task_id, None)
            return True

    def get_project_membership(
        self, project_id: str, user_id: str
    ) -> Optional[ProjectMembership]:
        with self._data_lock:
            membership = self.project_members.get((project_id, user_id))
            return replace(membership) if membership else None

    def add_project_member(
        self, project_id: str, user_id: str, role: ProjectRole
    ) -> ProjectMembership:
        with self._data_lock:
            if project_id not in self.projects:
                raise ConstraintViolation(
                    "project does not exist", {"project_id": project_id, "constraint": FOREIGN_KEY}
                )
            self._require_user(user_id)
            membership = self.project_members.get((project_id, user_id))
            if membership:
                membership.role = ProjectRole(role)
            else:
                membership = ProjectMembership(
                    project_id=project_id, user_id=user_id, role=ProjectRole(role)
                )
                self.project_members[(project_id, user_id)] = membership
            return replace(membership)

    def list_project_members(self, project_id: str) -> List[ProjectMembership]:
        with self._data_lock:
            found = [replace(m) for (pid, _), m in self.project_members.items() if pid == project_id]
            return sorted(found, key=lambda m: m.added_at)

    def update_project_member_role(
        self, project_id: str, user_id: str, role: ProjectRole
    ) -> Optional[ProjectMembership]:
        with self._data_lock:
            membership = self.project_members.get((project_id, user_id))
            if not membership:
                return None
            membership.role = ProjectRole(role)
            return replace(membership)

    def remove_project_member(self, project_id: str, user_id: str) -> bool:
        with self._data_lock:
            return self.project_members.pop((project_id, user_id), None) is not None

    # -- tasks -------------------------------------------------------------

    @staticmethod
    def _copy_task(task: Task) -> Task:
        return replace(task, assignee_ids=list(task.assignee_ids))

    def create_task(
        self,
        project_id: str,
        title: str,
        created_by: str,
        description: Optional[str] = None,
        assignee_ids: Optional[List[str]] = None,
    ) -> Task:
        with self._data_lock:
            if project_id not in self.projects:
                raise ConstraintViolation(
                    "project does not exist", {"project_id": project_id, "constraint": FOREIGN_KEY}
                )
            for assignee_id in assignee_ids or ():
                self._require_user(assignee_id)
            task = Task(
                id=new_id(),
                project_id=project_id,
                title=title,
                created_by=created_by,
                description=description,
                assignee_ids=sorted(set(assignee_ids or ())),
            )
            self.tasks[task.id] = task
            return self._copy_task(task)

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._data_lock:
            task = self.tasks.get(task_id)
            return self._copy_task(task) if task else None

    def list_tasks(self, project_id: str) -> List[Task]:
        with self._data_lock:
            found = [self._copy_task(t) for t in self.tasks.values() if t.project_id == project_id]
            return sorted(found, key=lambda t: t.created_at)

    def update_task(
        self,
        task_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        assignee_ids: Optional[List[str]] = None,
    ) -> Optional[Task]:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task:
                return None
            for assignee_id in assignee_ids or ():
                self._require_user(assignee_id)
            if title is not None:
                task.title = title
            if description is not None:
                task.description = description
            if status is not None:
                task.status = TaskStatus(status)
            if assignee_ids is not None:
                task.assignee_ids = sorted(set(assignee_ids))
            task.updated_at = utcnow()
            return self._copy_task(task)

    def delete_task(self, task_id: str) -> bool:
        with self._data_lock:
            return self.tasks.pop(task_id, None) is not None

    # -- audit -------------------------------------------------------------

    def record_audit_event(self, entry: AuditLogEntry) -> None:
        with self._data_lock:
            self.audit_events.append(replace(entry))

    def list_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            found = [
                replace(e)
                for e in self.audit_events
                if (user_id is None or e.user_id == user_id)
                and (action is None or e.action == action)
            ]
            return list(reversed(found))[:limit]
