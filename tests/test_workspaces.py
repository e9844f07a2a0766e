"""Workspace, project and task flows through the service layer."""

import pytest

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
from taskhub.service.workspaces import WorkspaceService
from taskhub.storage.memory import MemoryStore
from taskhub.storage.models import GlobalRole, ProjectRole, TaskStatus, WorkspaceRole


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def workspaces(store):
    audit = AuditLogger(store)
    return WorkspaceService(store, AuthorizationService(store, audit), audit)


def _principal(user):
    return Principal(id=user.id, role=user.role)


@pytest.fixture
def people(store):
    return {
        name: _principal(store.create_user(f"{name}@example.com", "h"))
        for name in ("alice", "bob", "carol", "mallory")
    }


class TestWorkspaceLifecycle:
    async def test_create_makes_caller_owner(self, workspaces, store, people):
        workspace = await workspaces.create_workspace(people["alice"], "  Acme  ")
        assert workspace.name == "Acme"
        members = await workspaces.list_members(people["alice"], workspace.id)
        assert [(m.user_id, m.role) for m in members] == [(people["alice"].id, WorkspaceRole.OWNER)]
        events = store.list_audit_events(action=audit_actions.WORKSPACE_CREATED)
        assert events[0].details["workspace_id"] == workspace.id

    async def test_blank_name_rejected(self, workspaces, people):
        with pytest.raises(ValidationError):
            await workspaces.create_workspace(people["alice"], "   ")

    async def test_get_requires_membership(self, workspaces, people):
        workspace = await workspaces.create_workspace(people["alice"], "Acme")
        with pytest.raises(ForbiddenError):
            await workspaces.get_workspace(people["mallory"], workspace.id)
        with pytest.raises(NotFoundError):
            await workspaces.get_workspace(people["alice"], "missing")

    async def test_admin_can_read_any_workspace(self, workspaces, people):
        workspace = await workspaces.create_workspace(people["alice"], "Acme")
        admin = Principal(id=people["mallory"].id, role=GlobalRole.ADMIN)
        assert (await workspaces.get_workspace(admin, workspace.id)).id == workspace.id

    async def test_list_only_shows_own_workspaces(self, workspaces, people):
        await workspaces.create_workspace(people["alice"], "Acme")
        await workspaces.create_workspace(people["bob"], "Globex")
        assert [w.name for w in await workspaces.list_workspaces(people["alice"])] == ["Acme"]

    async def test_list_all_requires_stored_admin_role(self, workspaces, store, people):
        await workspaces.create_workspace(people["alice"], "Acme")
        # A token claiming ADMIN is not enough without the stored role
        forged = Principal(id=people["bob"].id, role=GlobalRole.ADMIN)
        with pytest.raises(ForbiddenError):
            await workspaces.list_all_workspaces(forged)
        store.set_user_role(people["bob"].id, GlobalRole.ADMIN)
        assert len(await workspaces.list_all_workspaces(forged)) == 1

    async def test_only_owner_deletes(self, workspaces, store, people):
        workspace = await workspaces.create_workspace(people["alice"], "Acme")
        await workspaces.add_workspace_member(people["alice"], workspace.id, people["bob"].id)
        with pytest.raises(ForbiddenError):
            await workspaces.delete_workspace(people["bob"], workspace.id)
        await workspaces.delete_workspace(people["alice"], workspace.id)
        assert store.get_workspace(workspace.id) is None


class TestOwnership:
    async def test_owner_scenario(self, workspaces, people):
        alice, bob = people["alice"], people["bob"]
        workspace = await workspaces.create_workspace(alice, "Acme")
        await workspaces.add_workspace_member(alice, workspace.id, bob.id, WorkspaceRole.MEMBER)

        with pytest.raises(LastOwnerViolationError):
            await workspaces.update_workspace_member_role(
                alice, workspace.id, alice.id, WorkspaceRole.MEMBER
            )
        with pytest.raises(LastOwnerViolationError):
            await workspaces.remove_workspace_member(alice, workspace.id, alice.id)

        await workspaces.update_workspace_member_role(alice, workspace.id, bob.id, WorkspaceRole.OWNER)
        demoted = await workspaces.update_workspace_member_role(
            alice, workspace.id, alice.id, WorkspaceRole.MEMBER
        )
        assert demoted.role == WorkspaceRole.MEMBER
        # Alice is no longer an owner and cannot manage members
        with pytest.raises(ForbiddenError):
            await workspaces.remove_workspace_member(alice, workspace.id, bob.id)

    async def test_non_owner_cannot_add_members(self, workspaces, people):
        workspace = await workspaces.create_workspace(people["alice"], "Acme")
        await workspaces.add_workspace_member(people["alice"], workspace.id, people["bob"].id)
        with pytest.raises(ForbiddenError):
            await workspaces.add_workspace_member(people["bob"], workspace.id, people["carol"].id)

    async def test_add_unknown_user(self, workspaces, people):
        workspace = await workspaces.create_workspace(people["alice"], "Acme")
        with pytest.raises(NotFoundError):
            await workspaces.add_workspace_member(people["alice"], workspace.id, "ghost")

    async def test_remove_missing_membership(self, workspaces, people):
        workspace = await workspaces.create_workspace(people["alice"], "Acme")
        with pytest.raises(NotFoundError):
            await workspaces.remove_workspace_member(people["alice"], workspace.id, people["bob"].id)


class TestProjects:
    async def test_member_creates_project_and_becomes_lead(self, workspaces, store, people):
        workspace = await workspaces.create_workspace(people["alice"], "Acme")
        await workspaces.add_workspace_member(people["alice"], workspace.id, people["bob"].id)
        project = await workspaces.create_project(people["bob"], workspace.id, "Launch", "Q3")
        assert project.description == "Q3"
        assert store.get_project_membership(project.id, people["bob"].id).role == ProjectRole.LEAD

    async def test_viewer_cannot_create_project(self, workspaces, people):
        workspace = await workspaces.create_workspace(people["alice"], "Acme")
        await workspaces.add_workspace_member(
            people["alice"], workspace.id, people["carol"].id, WorkspaceRole.VIEWER
        )
        with pytest.raises(ForbiddenError):
            await workspaces.create_project(people["carol"], workspace.id, "Launch")

    async def test_missing_workspace(self, workspaces, people):
        with pytest.raises(NotFoundError):
            await workspaces.create_project(people["alice"], "missing", "Launch")

    async def test_project_member_must_be_in_workspace(self, workspaces, people):
        workspace = await workspaces.create_workspace(people["alice"], "Acme")
        project = await workspaces.create_project(people["alice"], workspace.id, "Launch")
        with pytest.raises(ValidationError):
            await workspaces.add_project_member(people["alice"], project.id, people["mallory"].id)

    async def test_only_lead_or_owner_adds_project_members(self, workspaces, people):
        alice, bob, carol = people["alice"], people["bob"], people["carol"]
        workspace = await workspaces.create_workspace(alice, "Acme")
        await workspaces.add_workspace_member(alice, workspace.id, bob.id)
        await workspaces.add_workspace_member(alice, workspace.id, carol.id)
        project = await workspaces.create_project(alice, workspace.id, "Launch")
        with pytest.raises(ForbiddenError):
            await workspaces.add_project_member(bob, project.id, carol.id)
        membership = await workspaces.add_project_member(
            alice, project.id, carol.id, ProjectRole.VIEWER
        )
        assert membership.role == ProjectRole.VIEWER

    async def test_list_projects_requires_membership(self, workspaces, people):
        workspace = await workspaces.create_workspace(people["alice"], "Acme")
        await workspaces.create_project(people["alice"], workspace.id, "Launch")
        assert len(await workspaces.list_projects(people["alice"], workspace.id)) == 1
        with pytest.raises(ForbiddenError):
            await workspaces.list_projects(people["mallory"], workspace.id)


class TestTasks:
    async def test_task_lifecycle(self, workspaces, store, people):
        alice, bob = people["alice"], people["bob"]
        workspace = await workspaces.create_workspace(alice, "Acme")
        await workspaces.add_workspace_member(alice, workspace.id, bob.id)
        project = await workspaces.create_project(alice, workspace.id, "Launch")

        task = await workspaces.create_task(bob, project.id, "Write docs")
        assert task.status == TaskStatus.TODO
        updated = await workspaces.update_task(alice, task.id, status=TaskStatus.IN_PROGRESS)
        assert updated.status == TaskStatus.IN_PROGRESS
        assert [t.id for t in await workspaces.list_tasks(bob, project.id)] == [task.id]

        changes = store.list_audit_events(action=audit_actions.TASK_STATUS_CHANGE)
        assert changes[0].details == {"task_id": task.id, "from": "TODO", "to": "IN_PROGRESS"}

    async def test_viewer_can_read_but_not_write(self, workspaces, people):
        alice, carol = people["alice"], people["carol"]
        workspace = await workspaces.create_workspace(alice, "Acme")
        await workspaces.add_workspace_member(alice, workspace.id, carol.id, WorkspaceRole.VIEWER)
        project = await workspaces.create_project(alice, workspace.id, "Launch")
        task = await workspaces.create_task(alice, project.id, "Write docs")

        assert (await workspaces.get_task(carol, task.id)).id == task.id
        with pytest.raises(ForbiddenError):
            await workspaces.create_task(carol, project.id, "Sneaky")
        with pytest.raises(ForbiddenError):
            await workspaces.update_task(carol, task.id, title="Renamed")

    async def test_project_contributor_outranks_workspace_viewer(self, workspaces, people):
        alice, carol = people["alice"], people["carol"]
        workspace = await workspaces.create_workspace(alice, "Acme")
        await workspaces.add_workspace_member(alice, workspace.id, carol.id, WorkspaceRole.VIEWER)
        project = await workspaces.create_project(alice, workspace.id, "Launch")
        await workspaces.add_project_member(alice, project.id, carol.id, ProjectRole.CONTRIBUTOR)
        task = await workspaces.create_task(carol, project.id, "Allowed")
        assert task.created_by == carol.id

    async def test_outsider_sees_nothing(self, workspaces, people):
        alice, mallory = people["alice"], people["mallory"]
        workspace = await workspaces.create_workspace(alice, "Acme")
        project = await workspaces.create_project(alice, workspace.id, "Launch")
        task = await workspaces.create_task(alice, project.id, "Private")
        with pytest.raises(ForbiddenError):
            await workspaces.get_task(mallory, task.id)
        with pytest.raises(ForbiddenError):
            await workspaces.list_tasks(mallory, project.id)
        with pytest.raises(NotFoundError):
            await workspaces.get_task(mallory, "missing")

    async def test_removed_member_loses_write_access(self, workspaces, people):
        alice, bob = people["alice"], people["bob"]
        workspace = await workspaces.create_workspace(alice, "Acme")
        await workspaces.add_workspace_member(alice, workspace.id, bob.id)
        project = await workspaces.create_project(alice, workspace.id, "Launch")
        task = await workspaces.create_task(alice, project.id, "Shared")
        await workspaces.update_task(bob, task.id, description="edited")
        await workspaces.remove_workspace_member(alice, workspace.id, bob.id)
        with pytest.raises(ForbiddenError):
            await workspaces.update_task(bob, task.id, description="again")


class TestProjectManagement:
    async def test_lead_renames_project(self, workspaces, store, people):
        alice, bob = people["alice"], people["bob"]
        workspace = await workspaces.create_workspace(alice, "Acme")
        await workspaces.add_workspace_member(alice, workspace.id, bob.id)
        project = await workspaces.create_project(bob, workspace.id, "Launch", "Q3")

        renamed = await workspaces.update_project(bob, project.id, name="  Relaunch ")
        assert renamed.name == "Relaunch"
        assert renamed.description == "Q3"
        events = store.list_audit_events(action=audit_actions.PROJECT_UPDATED)
        assert events[0].details == {"project_id": project.id, "name": "Relaunch"}

        with pytest.raises(ValidationError):
            await workspaces.update_project(bob, project.id, name=" ")

    async def test_contributor_cannot_manage_project(self, workspaces, people):
        alice, bob, carol = people["alice"], people["bob"], people["carol"]
        workspace = await workspaces.create_workspace(alice, "Acme")
        await workspaces.add_workspace_member(alice, workspace.id, bob.id)
        await workspaces.add_workspace_member(alice, workspace.id, carol.id)
        project = await workspaces.create_project(bob, workspace.id, "Launch")
        await workspaces.add_project_member(bob, project.id, carol.id, ProjectRole.CONTRIBUTOR)

        with pytest.raises(ForbiddenError) as excinfo:
            await workspaces.update_project(carol, project.id, name="Hijacked")
        assert excinfo.value.detail["required"] == ["LEAD"]
        with pytest.raises(ForbiddenError):
            await workspaces.delete_project(carol, project.id)
        with pytest.raises(ForbiddenError):
            await workspaces.update_project_member_role(
                carol, project.id, carol.id, ProjectRole.LEAD
            )
        with pytest.raises(ForbiddenError):
            await workspaces.remove_project_member(carol, project.id, bob.id)

    async def test_workspace_owner_manages_any_project(self, workspaces, store, people):
        alice, bob = people["alice"], people["bob"]
        workspace = await workspaces.create_workspace(alice, "Acme")
        await workspaces.add_workspace_member(alice, workspace.id, bob.id)
        project = await workspaces.create_project(bob, workspace.id, "Launch")
        await workspaces.create_task(bob, project.id, "Write docs")

        await workspaces.delete_project(alice, project.id)
        assert store.get_project(project.id) is None
        assert store.list_tasks(project.id) == []
        assert store.get_project_membership(project.id, bob.id) is None
        with pytest.raises(NotFoundError):
            await workspaces.delete_project(alice, project.id)

    async def test_member_role_change_and_removal(self, workspaces, store, people):
        alice, bob, carol = people["alice"], people["bob"], people["carol"]
        workspace = await workspaces.create_workspace(alice, "Acme")
        await workspaces.add_workspace_member(alice, workspace.id, bob.id)
        await workspaces.add_workspace_member(alice, workspace.id, carol.id)
        project = await workspaces.create_project(bob, workspace.id, "Launch")
        await workspaces.add_project_member(bob, project.id, carol.id, ProjectRole.VIEWER)

        promoted = await workspaces.update_project_member_role(
            bob, project.id, carol.id, ProjectRole.LEAD
        )
        assert promoted.role == ProjectRole.LEAD
        # The promoted lead can now manage membership
        await workspaces.remove_project_member(carol, project.id, bob.id)
        members = await workspaces.list_project_members(carol, project.id)
        assert [(m.user_id, m.role) for m in members] == [(carol.id, ProjectRole.LEAD)]

        with pytest.raises(NotFoundError):
            await workspaces.remove_project_member(carol, project.id, bob.id)
        with pytest.raises(NotFoundError):
            await workspaces.update_project_member_role(
                carol, project.id, people["mallory"].id, ProjectRole.VIEWER
            )
        actions = [e.action for e in store.list_audit_events(user_id=carol.id)]
        assert audit_actions.PROJECT_MEMBER_REMOVED in actions

    async def test_missing_project_is_404(self, workspaces, people):
        with pytest.raises(NotFoundError):
            await workspaces.update_project(people["alice"], "missing", name="x")


class TestTaskAssignees:
    async def _project(self, workspaces, people):
        alice, bob = people["alice"], people["bob"]
        workspace = await workspaces.create_workspace(alice, "Acme")
        await workspaces.add_workspace_member(alice, workspace.id, bob.id)
        return workspace, await workspaces.create_project(alice, workspace.id, "Launch")

    async def test_create_with_assignees(self, workspaces, people):
        alice, bob = people["alice"], people["bob"]
        _, project = await self._project(workspaces, people)
        task = await workspaces.create_task(
            alice, project.id, "Write docs", assignee_ids=[bob.id, bob.id, alice.id]
        )
        assert task.assignee_ids == sorted([alice.id, bob.id])
        assert (await workspaces.get_task(bob, task.id)).assignee_ids == task.assignee_ids

    async def test_outsider_cannot_be_assigned(self, workspaces, people):
        alice, mallory = people["alice"], people["mallory"]
        _, project = await self._project(workspaces, people)
        with pytest.raises(ValidationError) as excinfo:
            await workspaces.create_task(alice, project.id, "Docs", assignee_ids=[mallory.id])
        assert len(excinfo.value.errors) == 1
        task = await workspaces.create_task(alice, project.id, "Docs")
        with pytest.raises(ValidationError):
            await workspaces.update_task(alice, task.id, assignee_ids=[mallory.id])
        assert (await workspaces.get_task(alice, task.id)).assignee_ids == []

    async def test_reassign_is_audited_and_empty_list_clears(self, workspaces, store, people):
        alice, bob = people["alice"], people["bob"]
        _, project = await self._project(workspaces, people)
        task = await workspaces.create_task(alice, project.id, "Docs", assignee_ids=[alice.id])

        updated = await workspaces.update_task(alice, task.id, assignee_ids=[bob.id])
        assert updated.assignee_ids == [bob.id]
        event = store.list_audit_events(action=audit_actions.TASK_ASSIGNEES_CHANGED)[0]
        assert event.details == {"task_id": task.id, "added": [bob.id], "removed": [alice.id]}

        # Omitting assignees leaves them alone
        kept = await workspaces.update_task(alice, task.id, title="Docs v2")
        assert kept.assignee_ids == [bob.id]
        cleared = await workspaces.update_task(alice, task.id, assignee_ids=[])
        assert cleared.assignee_ids == []

    async def test_leaving_workspace_drops_assignments(self, workspaces, store, people):
        alice, bob = people["alice"], people["bob"]
        workspace, project = await self._project(workspaces, people)
        task = await workspaces.create_task(alice, project.id, "Docs", assignee_ids=[bob.id])
        await workspaces.remove_workspace_member(alice, workspace.id, bob.id)
        assert store.get_task(task.id).assignee_ids == []


class TestTaskDeletion:
    async def test_creator_deletes_and_viewer_cannot(self, workspaces, store, people):
        alice, carol = people["alice"], people["carol"]
        workspace = await workspaces.create_workspace(alice, "Acme")
        await workspaces.add_workspace_member(alice, workspace.id, carol.id, WorkspaceRole.VIEWER)
        project = await workspaces.create_project(alice, workspace.id, "Launch")
        task = await workspaces.create_task(alice, project.id, "Temporary")

        with pytest.raises(ForbiddenError):
            await workspaces.delete_task(carol, task.id)
        await workspaces.delete_task(alice, task.id)
        assert store.get_task(task.id) is None
        assert store.list_audit_events(action=audit_actions.TASK_DELETED)[0].details == {
            "task_id": task.id
        }
        with pytest.raises(NotFoundError):
            await workspaces.delete_task(alice, task.id)
