from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from taskhub.logging import get_logger
from taskhub.storage.errors import EMAIL_UNIQUE, FOREIGN_KEY, LAST_OWNER, ConstraintViolation
from taskhub.storage.models import (
    AuditCategory,
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
    utcnow,
)

REQUIRED_TABLES = (
    "users",
    "user_devices",
    "refresh_tokens",
    "password_resets",
    "workspaces",
    "workspace_members",
    "projects",
    "project_memberships",
    "tasks",
    "task_assignees",
    "audit_logs",
)

_TASK_COLUMNS = (
    "t.*, ARRAY(SELECT ta.user_id FROM task_assignees ta "
    "WHERE ta.task_id = t.id ORDER BY ta.user_id) AS assignee_ids"
)


def _sid(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


class PostgresStore:
    """Postgres-backed store; every multi-row mutation runs in one transaction."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Fail fast when the schema in ``sql/001_schema.sql`` is not installed."""

        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    def check_health(self) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT 1 AS ok").fetchone()
            return bool(row and row.get("ok") == 1)
        except Exception as exc:
            self.logger.warning("postgres_health_check_failed", error=str(exc))
            return False

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row.get("full_name"),
            role=GlobalRole(row["role"]),
            global_status=UserStatus(row["global_status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _device_from_row(row: dict) -> Device:
        return Device(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            jti=row["jti"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
            last_used_at=row["last_used_at"],
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            jti=row["jti"],
            user_id=str(row["user_id"]),
            device_id=str(row["device_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _reset_from_row(row: dict) -> PasswordResetCode:
        return PasswordResetCode(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            code_hash=row["code_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            used=bool(row["used"]),
        )

    @staticmethod
    def _workspace_from_row(row: dict) -> Workspace:
        return Workspace(
            id=str(row["id"]),
            name=row["name"],
            created_by=str(row["created_by"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _ws_member_from_row(row: dict) -> WorkspaceMembership:
        return WorkspaceMembership(
            workspace_id=str(row["workspace_id"]),
            user_id=str(row["user_id"]),
            role=WorkspaceRole(row["role"]),
            added_at=row["added_at"],
        )

    @staticmethod
    def _project_from_row(row: dict) -> Project:
        return Project(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            name=row["name"],
            created_by=str(row["created_by"]),
            description=row.get("description"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _project_member_from_row(row: dict) -> ProjectMembership:
        return ProjectMembership(
            project_id=str(row["project_id"]),
            user_id=str(row["user_id"]),
            role=ProjectRole(row["role"]),
            added_at=row["added_at"],
        )

    @staticmethod
    def _task_from_row(row: dict) -> Task:
        return Task(
            id=str(row["id"]),
            project_id=str(row["project_id"]),
            title=row["title"],
            created_by=str(row["created_by"]),
            description=row.get("description"),
            status=TaskStatus(row["status"]),
            assignee_ids=[str(a) for a in row.get("assignee_ids") or []],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _audit_from_row(row: dict) -> AuditLogEntry:
        details = row.get("details") or {}
        if isinstance(details, str):
            details = json.loads(details)
        return AuditLogEntry(
            id=str(row["id"]),
            action=row["action"],
            level=row["level"],
            category=AuditCategory(row["category"]),
            user_id=_sid(row.get("user_id")),
            ip_address=row.get("ip_address"),
            details=details,
            created_at=row["created_at"],
        )

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        role: GlobalRole = GlobalRole.USER,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, password_hash, full_name, role)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), email, password_hash, full_name, GlobalRole(role).value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email", "constraint": EMAIL_UNIQUE}
            )
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users ORDER BY created_at ASC LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return row["password_hash"] if row else None

    def save_password(
        self, user_id: str, password_hash: str, *, revoke_sessions: bool = False
    ) -> int:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "UPDATE users SET password_hash = %s, updated_at = %s WHERE id = %s RETURNING id",
                (password_hash, utcnow(), user_id),
            ).fetchone()
            if not row:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": user_id, "constraint": FOREIGN_KEY}
                )
            return self._revoke_user_sessions(conn, user_id) if revoke_sessions else 0

    def set_user_status(
        self, user_id: str, status: UserStatus, *, revoke_sessions: bool = False
    ) -> Optional[User]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "UPDATE users SET global_status = %s, updated_at = %s WHERE id = %s RETURNING *",
                (UserStatus(status).value, utcnow(), user_id),
            ).fetchone()
            if not row:
                return None
            if revoke_sessions:
                self._revoke_user_sessions(conn, user_id)
        return self._user_from_row(row)

    def set_user_role(
        self, user_id: str, role: GlobalRole, *, revoke_sessions: bool = False
    ) -> Optional[User]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "UPDATE users SET role = %s, updated_at = %s WHERE id = %s RETURNING *",
                (GlobalRole(role).value, utcnow(), user_id),
            ).fetchone()
            if not row:
                return None
            if revoke_sessions:
                self._revoke_user_sessions(conn, user_id)
        return self._user_from_row(row)

    # -- devices and refresh tokens ---------------------------------------

    def _insert_session(
        self,
        conn,
        user_id: str,
        jti: str,
        expires_at: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> Device:
        now = utcnow()
        device_row = conn.execute(
            """
            INSERT INTO user_devices (id, user_id, jti, ip_address, user_agent, created_at, last_used_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (str(uuid.uuid4()), user_id, jti, ip_address, user_agent, now, now),
        ).fetchone()
        conn.execute(
            """
            INSERT INTO refresh_tokens (jti, user_id, device_id, expires_at, created_at)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (jti, user_id, device_row["id"], expires_at, now),
        )
        return self._device_from_row(device_row)

    def create_session(
        self,
        user_id: str,
        jti: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Device:
        try:
            with self._connect() as conn, conn.transaction():
                return self._insert_session(conn, user_id, jti, expires_at, ip_address, user_agent)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user does not exist", {"user_id": user_id, "constraint": FOREIGN_KEY}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("jti already exists", {"field": "jti"})

    def get_refresh_token(self, jti: str) -> Optional[Tuple[RefreshTokenRecord, Device]]:
        with self._connect() as conn:
            token_row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE jti = %s", (jti,)
            ).fetchone()
            if not token_row:
                return None
            device_row = conn.execute(
                "SELECT * FROM user_devices WHERE id = %s", (token_row["device_id"],)
            ).fetchone()
        if not device_row:
            return None
        return self._refresh_from_row(token_row), self._device_from_row(device_row)

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
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                SELECT rt.user_id, rt.device_id, rt.expires_at, rt.revoked_at,
                       d.revoked_at AS device_revoked_at,
                       d.ip_address, d.user_agent
                FROM refresh_tokens rt
                JOIN user_devices d ON d.id = rt.device_id
                WHERE rt.jti = %s
                FOR UPDATE OF rt, d
                """,
                (old_jti,),
            ).fetchone()
            now = utcnow()
            if (
                not row
                or str(row["user_id"]) != user_id
                or row["revoked_at"] is not None
                or row["device_revoked_at"] is not None
                or row["expires_at"] <= now
            ):
                return None
            conn.execute(
                "UPDATE refresh_tokens SET revoked_at = %s WHERE jti = %s", (now, old_jti)
            )
            conn.execute(
                "UPDATE user_devices SET revoked_at = %s, last_used_at = %s WHERE id = %s",
                (now, now, row["device_id"]),
            )
            return self._insert_session(
                conn,
                user_id,
                new_jti,
                expires_at,
                ip_address if ip_address is not None else row.get("ip_address"),
                user_agent if user_agent is not None else row.get("user_agent"),
            )

    def revoke_session(self, jti: str) -> bool:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE refresh_tokens SET revoked_at = %s
                WHERE jti = %s AND revoked_at IS NULL
                RETURNING device_id
                """,
                (utcnow(), jti),
            ).fetchone()
            if not row:
                return False
            conn.execute(
                "UPDATE user_devices SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL",
                (utcnow(), row["device_id"]),
            )
            return True

    def revoke_device(self, user_id: str, device_id: str) -> Optional[Device]:
        now = utcnow()
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT * FROM user_devices WHERE id = %s AND user_id = %s FOR UPDATE",
                (device_id, user_id),
            ).fetchone()
            if not row:
                return None
            if row["revoked_at"] is None:
                row = conn.execute(
                    "UPDATE user_devices SET revoked_at = %s WHERE id = %s RETURNING *",
                    (now, device_id),
                ).fetchone()
            conn.execute(
                "UPDATE refresh_tokens SET revoked_at = %s WHERE device_id = %s AND revoked_at IS NULL",
                (now, device_id),
            )
        return self._device_from_row(row)

    def _revoke_user_sessions(self, conn, user_id: str) -> int:
        now = utcnow()
        cur = conn.execute(
            "UPDATE user_devices SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
            (now, user_id),
        )
        conn.execute(
            "UPDATE refresh_tokens SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
            (now, user_id),
        )
        return cur.rowcount or 0

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn, conn.transaction():
            return self._revoke_user_sessions(conn, user_id)

    def list_devices(self, user_id: str, *, include_revoked: bool = False) -> List[Device]:
        query = "SELECT * FROM user_devices WHERE user_id = %s"
        if not include_revoked:
            query += " AND revoked_at IS NULL"
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._device_from_row(row) for row in rows]

    # -- password reset ----------------------------------------------------

    def create_reset_code(
        self, user_id: str, code_hash: str, expires_at: datetime
    ) -> PasswordResetCode:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    "UPDATE password_resets SET used = TRUE WHERE user_id = %s AND used = FALSE",
                    (user_id,),
                )
                row = conn.execute(
                    """
                    INSERT INTO password_resets (id, user_id, code_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, code_hash, expires_at, utcnow()),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user does not exist", {"user_id": user_id, "constraint": FOREIGN_KEY}
            )
        return self._reset_from_row(row)

    def get_active_reset_code(self, user_id: str) -> Optional[PasswordResetCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM password_resets
                WHERE user_id = %s AND used = FALSE AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, utcnow()),
            ).fetchone()
        return self._reset_from_row(row) if row else None

    def complete_password_reset(self, user_id: str, code_id: str, password_hash: str) -> bool:
        now = utcnow()
        with self._connect() as conn, conn.transaction():
            consumed = conn.execute(
                """
                UPDATE password_resets SET used = TRUE
                WHERE id = %s AND user_id = %s AND used = FALSE AND expires_at > %s
                RETURNING id
                """,
                (code_id, user_id, now),
            ).fetchone()
            if not consumed:
                return False
            conn.execute(
                "UPDATE users SET password_hash = %s, updated_at = %s WHERE id = %s",
                (password_hash, now, user_id),
            )
            self._revoke_user_sessions(conn, user_id)
            return True

    # -- workspaces --------------------------------------------------------

    def create_workspace(self, name: str, owner_id: str) -> Workspace:
        now = utcnow()
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO workspaces (id, name, created_by, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), name, owner_id, now, now),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO workspace_members (workspace_id, user_id, role, added_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (row["id"], owner_id, WorkspaceRole.OWNER.value, now),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user does not exist", {"user_id": owner_id, "constraint": FOREIGN_KEY}
            )
        return self._workspace_from_row(row)

    def get_workspace(self, workspace_id: str) -> Optional[Workspace]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workspaces WHERE id = %s", (workspace_id,)
            ).fetchone()
        return self._workspace_from_row(row) if row else None

    def list_workspaces_for_user(self, user_id: str) -> List[Workspace]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT w.* FROM workspaces w
                JOIN workspace_members m ON m.workspace_id = w.id
                WHERE m.user_id = %s
                ORDER BY w.created_at ASC
                """,
                (user_id,),
            ).fetchall()
        return [self._workspace_from_row(row) for row in rows]

    def list_all_workspaces(self) -> List[Workspace]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM workspaces ORDER BY created_at ASC").fetchall()
        return [self._workspace_from_row(row) for row in rows]

    def delete_workspace(self, workspace_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute("DELETE FROM workspaces WHERE id = %s", (workspace_id,))
            return bool(cur.rowcount)

    def get_workspace_membership(
        self, workspace_id: str, user_id: str
    ) -> Optional[WorkspaceMembership]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workspace_members WHERE workspace_id = %s AND user_id = %s",
                (workspace_id, user_id),
            ).fetchone()
        return self._ws_member_from_row(row) if row else None

    def list_workspace_members(self, workspace_id: str) -> List[WorkspaceMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workspace_members WHERE workspace_id = %s ORDER BY added_at ASC",
                (workspace_id,),
            ).fetchall()
        return [self._ws_member_from_row(row) for row in rows]

    def count_workspace_owners(self, workspace_id: str) -> int:
        with self._connect() as conn:
            return self._count_owners(conn, workspace_id)

    @staticmethod
    def _count_owners(conn, workspace_id: str) -> int:
        row = conn.execute(
            "SELECT COUNT(*) AS c FROM workspace_members WHERE workspace_id = %s AND role = %s",
            (workspace_id, WorkspaceRole.OWNER.value),
        ).fetchone()
        return int(row["c"]) if row else 0

    def add_workspace_member(
        self, workspace_id: str, user_id: str, role: WorkspaceRole
    ) -> WorkspaceMembership:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO workspace_members (workspace_id, user_id, role, added_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (workspace_id, user_id) DO NOTHING
                    """,
                    (workspace_id, user_id, WorkspaceRole(role).value, utcnow()),
                )
                row = conn.execute(
                    "SELECT * FROM workspace_members WHERE workspace_id = %s AND user_id = %s",
                    (workspace_id, user_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "workspace or user does not exist",
                {"workspace_id": workspace_id, "user_id": user_id, "constraint": FOREIGN_KEY},
            )
        return self._ws_member_from_row(row)

    def _lock_membership(self, conn, workspace_id: str, user_id: str) -> Optional[dict]:
        # Workspace row lock serialises concurrent owner changes
        conn.execute("SELECT id FROM workspaces WHERE id = %s FOR UPDATE", (workspace_id,))
        return conn.execute(
            "SELECT * FROM workspace_members WHERE workspace_id = %s AND user_id = %s",
            (workspace_id, user_id),
        ).fetchone()

    def update_workspace_member_role(
        self, workspace_id: str, user_id: str, role: WorkspaceRole
    ) -> Optional[WorkspaceMembership]:
        new_role = WorkspaceRole(role)
        with self._connect() as conn, conn.transaction():
            current = self._lock_membership(conn, workspace_id, user_id)
            if not current:
                return None
            if (
                current["role"] == WorkspaceRole.OWNER.value
                and new_role != WorkspaceRole.OWNER
                and self._count_owners(conn, workspace_id) <= 1
            ):
                raise ConstraintViolation(
                    "workspace must keep at least one owner",
                    {"workspace_id": workspace_id, "constraint": LAST_OWNER},
                )
            row = conn.execute(
                """
                UPDATE workspace_members SET role = %s
                WHERE workspace_id = %s AND user_id = %s
                RETURNING *
                """,
                (new_role.value, workspace_id, user_id),
            ).fetchone()
        return self._ws_member_from_row(row)

    def remove_workspace_member(self, workspace_id: str, user_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            current = self._lock_membership(conn, workspace_id, user_id)
            if not current:
                return False
            if (
                current["role"] == WorkspaceRole.OWNER.value
                and self._count_owners(conn, workspace_id) <= 1
            ):
                raise ConstraintViolation(
                    "workspace must keep at least one owner",
                    {"workspace_id": workspace_id, "constraint": LAST_OWNER},
                )
            conn.execute(
                """
                DELETE FROM project_memberships
                WHERE user_id = %s
                  AND project_id IN (SELECT id FROM projects WHERE workspace_id = %s)
                """,
                (user_id, workspace_id),
            )
            conn.execute(
                """
                DELETE FROM task_assignees
                WHERE user_id = %s
                  AND task_id IN (
                    SELECT t.id FROM tasks t
                    JOIN projects p ON p.id = t.project_id
                    WHERE p.workspace_id = %s
                  )
                """,
                (user_id, workspace_id),
            )
            conn.execute(
                "DELETE FROM workspace_members WHERE workspace_id = %s AND user_id = %s",
                (workspace_id, user_id),
            )
            return True

    # -- projects ----------------------------------------------------------

    def create_project(
        self,
        workspace_id: str,
        name: str,
        created_by: str,
        description: Optional[str] = None,
    ) -> Project:
        now = utcnow()
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO projects (id, workspace_id, name, description, created_by, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), workspace_id, name, description, created_by, now, now),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO project_memberships (project_id, user_id, role, added_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (row["id"], created_by, ProjectRole.LEAD.value, now),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "workspace does not exist",
                {"workspace_id": workspace_id, "constraint": FOREIGN_KEY},
            )
        return self._project_from_row(row)

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM projects WHERE id = %s", (project_id,)).fetchone()
        return self._project_from_row(row) if row else None

    def list_projects(self, workspace_id: str) -> List[Project]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM projects WHERE workspace_id = %s ORDER BY created_at ASC",
                (workspace_id,),
            ).fetchall()
        return [self._project_from_row(row) for row in rows]

    def update_project(
        self,
        project_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Project]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE projects
                SET name = COALESCE(%s, name),
                    description = COALESCE(%s, description),
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (name, description, utcnow(), project_id),
            ).fetchone()
        return self._project_from_row(row) if row else None

    def delete_project(self, project_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute("DELETE FROM projects WHERE id = %s", (project_id,))
            return bool(cur.rowcount)

    def get_project_membership(
        self, project_id: str, user_id: str
    ) -> Optional[ProjectMembership]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM project_memberships WHERE project_id = %s AND user_id = %s",
                (project_id, user_id),
            ).fetchone()
        return self._project_member_from_row(row) if row else None

    def add_project_member(
        self, project_id: str, user_id: str, role: ProjectRole
    ) -> ProjectMembership:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO project_memberships (project_id, user_id, role, added_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (project_id, user_id) DO UPDATE SET role = EXCLUDED.role
                    RETURNING *
                    """,
                    (project_id, user_id, ProjectRole(role).value, utcnow()),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "project or user does not exist",
                {"project_id": project_id, "user_id": user_id, "constraint": FOREIGN_KEY},
            )
        return self._project_member_from_row(row)

    def list_project_members(self, project_id: str) -> List[ProjectMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM project_memberships WHERE project_id = %s ORDER BY added_at ASC",
                (project_id,),
            ).fetchall()
        return [self._project_member_from_row(row) for row in rows]

    def update_project_member_role(
        self, project_id: str, user_id: str, role: ProjectRole
    ) -> Optional[ProjectMembership]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE project_memberships SET role = %s
                WHERE project_id = %s AND user_id = %s
                RETURNING *
                """,
                (ProjectRole(role).value, project_id, user_id),
            ).fetchone()
        return self._project_member_from_row(row) if row else None

    def remove_project_member(self, project_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM project_memberships WHERE project_id = %s AND user_id = %s",
                (project_id, user_id),
            )
            return bool(cur.rowcount)

    # -- tasks -------------------------------------------------------------

    @staticmethod
    def _select_task(conn, task_id: str) -> Optional[dict]:
        return conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks t WHERE t.id = %s", (task_id,)
        ).fetchone()

    @staticmethod
    def _replace_assignees(conn, task_id: str, assignee_ids: List[str]) -> None:
        conn.execute("DELETE FROM task_assignees WHERE task_id = %s", (task_id,))
        now = utcnow()
        for assignee_id in sorted(set(assignee_ids)):
            conn.execute(
                "INSERT INTO task_assignees (task_id, user_id, assigned_at) VALUES (%s, %s, %s)",
                (task_id, assignee_id, now),
            )

    def create_task(
        self,
        project_id: str,
        title: str,
        created_by: str,
        description: Optional[str] = None,
        assignee_ids: Optional[List[str]] = None,
    ) -> Task:
        now = utcnow()
        task_id = str(uuid.uuid4())
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO tasks (id, project_id, title, description, status, created_by, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        task_id,
                        project_id,
                        title,
                        description,
                        TaskStatus.TODO.value,
                        created_by,
                        now,
                        now,
                    ),
                )
                if assignee_ids:
                    self._replace_assignees(conn, task_id, assignee_ids)
                row = self._select_task(conn, task_id)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "project or assignee does not exist",
                {"project_id": project_id, "constraint": FOREIGN_KEY},
            )
        return self._task_from_row(row)

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._connect() as conn:
            row = self._select_task(conn, task_id)
        return self._task_from_row(row) if row else None

    def list_tasks(self, project_id: str) -> List[Task]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM tasks t WHERE t.project_id = %s ORDER BY t.created_at ASC",
                (project_id,),
            ).fetchall()
        return [self._task_from_row(row) for row in rows]

    def update_task(
        self,
        task_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        assignee_ids: Optional[List[str]] = None,
    ) -> Optional[Task]:
        try:
            with self._connect() as conn, conn.transaction():
                updated = conn.execute(
                    """
                    UPDATE tasks
                    SET title = COALESCE(%s, title),
                        description = COALESCE(%s, description),
                        status = COALESCE(%s, status),
                        updated_at = %s
                    WHERE id = %s
                    RETURNING id
                    """,
                    (
                        title,
                        description,
                        TaskStatus(status).value if status is not None else None,
                        utcnow(),
                        task_id,
                    ),
                ).fetchone()
                if not updated:
                    return None
                if assignee_ids is not None:
                    self._replace_assignees(conn, task_id, assignee_ids)
                row = self._select_task(conn, task_id)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "assignee does not exist", {"task_id": task_id, "constraint": FOREIGN_KEY}
            )
        return self._task_from_row(row)

    def delete_task(self, task_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute("DELETE FROM tasks WHERE id = %s", (task_id,))
            return bool(cur.rowcount)

    # -- audit -------------------------------------------------------------

    def record_audit_event(self, entry: AuditLogEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (id, action, level, category, user_id, ip_address, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s)
                """,
                (
                    entry.id,
                    entry.action,
                    entry.level,
                    AuditCategory(entry.category).value,
                    entry.user_id,
                    entry.ip_address,
                    json.dumps(entry.details or {}, default=str),
                    entry.created_at,
                ),
            )

    def list_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        clauses = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_logs {where} ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [self._audit_from_row(row) for row in rows]
