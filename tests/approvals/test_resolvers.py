"""
Tests for approver resolution and snapshot behaviour
"""

import pytest

from app.approvals.resolvers import ApproverResolver

from .helpers import TENANT, make_level, start_pr1


class TestApproverResolver:

    @pytest.fixture
    def resolver(self, directory):
        return ApproverResolver(directory)

    def test_specific_user(self, resolver):
        approvers = resolver.resolve(TENANT, make_level(1, "Finance", users=["carol"]))

        assert [a.user_id for a in approvers] == ["carol"]
        assert approvers[0].name == "Carol Finance"
        assert approvers[0].email == "carol@acme.test"
        assert approvers[0].role is None

    def test_role_expands_to_active_members(self, resolver, directory):
        directory.set_membership_active(TENANT, "bob", False)

        approvers = resolver.resolve(TENANT, make_level(1, "Manager", roles=["MANAGER"]))

        assert [a.user_id for a in approvers] == ["alice"]
        assert approvers[0].role == "MANAGER"

    def test_role_is_scoped_to_tenant(self, resolver):
        approvers = resolver.resolve(TENANT, make_level(1, "Manager", roles=["MANAGER"]))
        assert "mallory" not in {a.user_id for a in approvers}

    def test_union_is_deduplicated_first_occurrence_wins(self, resolver):
        level = make_level(1, "Mixed", users=["alice", "carol"], roles=["MANAGER", "FINANCE"])

        approvers = resolver.resolve(TENANT, level)

        assert [a.user_id for a in approvers] == ["alice", "carol", "bob"]
        assert approvers[0].role is None

    def test_unknown_user_is_skipped(self, resolver):
        approvers = resolver.resolve(TENANT, make_level(1, "Ghost", users=["ghost", "carol"]))
        assert [a.user_id for a in approvers] == ["carol"]

    def test_level_without_approvers_resolves_empty(self, resolver):
        assert resolver.resolve(TENANT, make_level(1, "Nobody", roles=["NO_SUCH_ROLE"])) == []


class TestApproverSnapshot:
    """Membership changes after an instance exists do not reach it"""

    def test_role_changes_after_creation_are_ignored(self, engine, directory):
        workflow = start_pr1(engine)
        directory.add_user("zoe", "Zoe New Manager", "zoe@acme.test")
        directory.add_membership(TENANT, "zoe", ["MANAGER"])
        directory.set_membership_active(TENANT, "bob", False)

        instance = engine.get_workflow_status(workflow.id).current_instance()

        assert [a.user_id for a in instance.potential_approvers] == ["alice", "bob"]
        assert not engine.approve(workflow.id, "zoe").success
        assert engine.approve(workflow.id, "bob").success
