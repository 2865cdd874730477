"""
Tests for the SQLAlchemy repositories on SQLite
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from app.approvals.engine import create_approval_engine
from app.approvals.exceptions import DelegationConflictError, WorkflowAlreadyActiveError
from app.approvals.repositories import sql as sql_module
from app.approvals.repositories.sql import (
    SqlDelegationRepository,
    SqlRuleRepository,
    SqlWorkflowRepository,
)
from app.approvals.schemas import (
    ApprovalEngineConfig,
    ApprovalInstance,
    ApprovalMode,
    ApproverVote,
    DecisionAction,
    Delegation,
    DocumentType,
    InstanceDecision,
    LevelDecision,
    Workflow,
    WorkflowStatus,
)
from app.core.settings import Settings
from app.db.session import DatabaseSessionManager

from .helpers import TENANT, make_level, make_rule, start_pr1

PR = DocumentType.PURCHASE_REQUEST


@pytest.fixture
def db_manager():
    manager = DatabaseSessionManager("sqlite:///:memory:", settings=Settings(_env_file=None))
    yield manager
    manager.close()


@pytest.fixture
def sql_rules(db_manager, standard_rule):
    repo = SqlRuleRepository(db_manager.session_scope)
    repo.save_rule(standard_rule)
    return repo


@pytest.fixture
def sql_workflows(db_manager):
    return SqlWorkflowRepository(db_manager.session_scope)


@pytest.fixture
def sql_delegations(db_manager):
    return SqlDelegationRepository(db_manager.session_scope)


def _workflow(document_id="pr-1", current_level=1):
    workflow = Workflow(
        tenant_id=TENANT,
        approval_rule_id="rule-1",
        document_type=PR,
        document_id=document_id,
        current_level=current_level,
        initiated_by="erin",
        level_plan=[make_level(1, "Manager", roles=["MANAGER"]), make_level(2, "Finance", users=["carol"])],
    )
    instance = ApprovalInstance(workflow_id=workflow.id, level_order=current_level, level_name="Manager")
    return workflow, instance


def _next_instance(workflow):
    return ApprovalInstance(workflow_id=workflow.id, level_order=2, level_name="Finance")


def _decision(workflow, instance, **overrides):
    values = dict(
        workflow_id=workflow.id,
        instance_id=instance.id,
        level_order=instance.level_order,
        decision=InstanceDecision.APPROVED,
        decided_by_id="alice",
        decided_by_name="Alice",
    )
    values.update(overrides)
    return LevelDecision(**values)


class TestSqlRuleRepository:

    def test_round_trip_preserves_levels(self, sql_rules, standard_rule):
        stored = sql_rules.get_rule(standard_rule.id)

        assert stored.name == standard_rule.name
        assert stored.max_amount == Decimal("10000")
        assert [level.level_order for level in stored.levels] == [1, 2, 3]
        assert stored.levels[0].approvers[0].role == "MANAGER"
        assert stored.levels[2].approvers[0].user_id == "carol"
        assert stored.created_at.tzinfo is not None

    def test_save_replaces_levels(self, sql_rules, standard_rule):
        edited = sql_rules.get_rule(standard_rule.id)
        edited.levels = [make_level(1, "Only", users=["bob"], mode=ApprovalMode.ALL)]

        saved = sql_rules.save_rule(edited)

        assert [(level.name, level.mode) for level in saved.levels] == [("Only", ApprovalMode.ALL)]

    def test_active_filter_and_ordering(self, sql_rules, standard_rule):
        high = sql_rules.save_rule(make_rule("High", [make_level(1, "L", users=["bob"])], priority=9))
        sql_rules.save_rule(make_rule("Off", [make_level(1, "L", users=["bob"])], priority=99, is_active=False))

        active = sql_rules.list_active_rules(TENANT, PR)

        assert [rule.id for rule in active] == [high.id, standard_rule.id]
        assert len(sql_rules.list_rules(TENANT)) == 3

    def test_delete(self, sql_rules, standard_rule):
        assert sql_rules.delete_rule(standard_rule.id)
        assert not sql_rules.delete_rule(standard_rule.id)
        assert sql_rules.get_rule(standard_rule.id) is None


class TestSqlWorkflowRepository:

    def test_create_and_load(self, sql_workflows):
        workflow, instance = _workflow()

        created = sql_workflows.create_workflow(workflow, instance)

        assert created.id == workflow.id
        assert [level.name for level in created.level_plan] == ["Manager", "Finance"]
        assert created.approvals[0].id == instance.id
        assert sql_workflows.get_active_workflow(PR, "pr-1", TENANT).id == workflow.id
        assert [w.id for w in sql_workflows.list_in_progress(TENANT)] == [workflow.id]

    def test_one_active_workflow_per_document(self, sql_workflows):
        sql_workflows.create_workflow(*_workflow())

        with pytest.raises(WorkflowAlreadyActiveError):
            sql_workflows.create_workflow(*_workflow())

    def test_decide_level_advances_with_decision(self, sql_workflows, now):
        workflow, instance = _workflow()
        sql_workflows.create_workflow(workflow, instance)
        next_instance = _next_instance(workflow)

        assert sql_workflows.decide_level(_decision(workflow, instance, decided_at=now, next_instance=next_instance))
        assert not sql_workflows.decide_level(
            _decision(workflow, instance, decided_by_id="bob", next_instance=_next_instance(workflow))
        )

        stored = sql_workflows.get_workflow(workflow.id)
        assert stored.current_level == 2
        assert [(i.level_order, i.decision) for i in stored.approvals] == [
            (1, InstanceDecision.APPROVED),
            (2, InstanceDecision.PENDING),
        ]
        assert stored.approvals[0].decided_by_id == "alice"
        assert stored.approvals[0].version == 1

    def test_decide_level_closes_workflow(self, sql_workflows, now):
        workflow, instance = _workflow()
        sql_workflows.create_workflow(workflow, instance)

        assert sql_workflows.decide_level(
            _decision(
                workflow,
                instance,
                decision=InstanceDecision.REJECTED,
                comment="no",
                decided_at=now,
                final_status=WorkflowStatus.REJECTED,
            )
        )

        stored = sql_workflows.get_workflow(workflow.id)
        assert stored.status == WorkflowStatus.REJECTED
        assert stored.final_decision == InstanceDecision.REJECTED
        assert stored.final_comment == "no"
        assert stored.completed_at is not None
        assert stored.approvals[0].decision == InstanceDecision.REJECTED

    def test_closing_vote_checks_version(self, sql_workflows):
        workflow, instance = _workflow()
        sql_workflows.create_workflow(workflow, instance)
        assert sql_workflows.record_vote(
            instance.id, ApproverVote(user_id="alice", decision=DecisionAction.APPROVED), expected_version=0
        )
        closing = ApproverVote(user_id="bob", decision=DecisionAction.APPROVED)

        stale = _decision(
            workflow, instance, decided_by_id="bob", closing_vote=closing, expected_version=0,
            next_instance=_next_instance(workflow),
        )
        assert not sql_workflows.decide_level(stale)

        fresh = stale.model_copy(update={"expected_version": 1})
        assert sql_workflows.decide_level(fresh)

        stored = sql_workflows.get_instance(instance.id)
        assert [v.user_id for v in stored.votes] == ["alice", "bob"]
        assert stored.decision == InstanceDecision.APPROVED
        assert stored.version == 2

    def test_failure_inside_decide_level_rolls_back(self, sql_workflows, monkeypatch):
        workflow, instance = _workflow()
        sql_workflows.create_workflow(workflow, instance)

        def broken_row(next_instance):
            raise RuntimeError("connection dropped")

        monkeypatch.setattr(sql_module, "_instance_to_row", broken_row)

        with pytest.raises(RuntimeError):
            sql_workflows.decide_level(_decision(workflow, instance, next_instance=_next_instance(workflow)))

        stored = sql_workflows.get_workflow(workflow.id)
        assert stored.current_level == 1
        assert [i.decision for i in stored.approvals] == [InstanceDecision.PENDING]
        assert stored.approvals[0].version == 0

    def test_record_vote_checks_version(self, sql_workflows):
        workflow, instance = _workflow()
        sql_workflows.create_workflow(workflow, instance)
        vote = ApproverVote(user_id="alice", decision=DecisionAction.APPROVED)

        assert sql_workflows.record_vote(instance.id, vote, expected_version=0)
        assert not sql_workflows.record_vote(instance.id, vote, expected_version=0)

        stored = sql_workflows.get_instance(instance.id)
        assert [v.user_id for v in stored.votes] == ["alice"]
        assert stored.version == 1

    def test_cancel_blocks_later_decisions(self, sql_workflows, now):
        workflow, instance = _workflow()
        sql_workflows.create_workflow(workflow, instance)

        assert sql_workflows.cancel_workflow(workflow.id, now)
        assert not sql_workflows.cancel_workflow(workflow.id, now)
        assert not sql_workflows.decide_level(_decision(workflow, instance, next_instance=_next_instance(workflow)))
        assert not sql_workflows.decide_level(_decision(workflow, instance, final_status=WorkflowStatus.APPROVED))

        stored = sql_workflows.get_workflow(workflow.id)
        assert stored.status == WorkflowStatus.CANCELLED
        assert [i.decision for i in stored.approvals] == [InstanceDecision.SKIPPED]
        assert sql_workflows.get_active_workflow(PR, "pr-1") is None

    def test_completed_document_can_restart(self, sql_workflows, now):
        workflow, instance = _workflow()
        sql_workflows.create_workflow(workflow, instance)
        sql_workflows.decide_level(
            _decision(workflow, instance, decision=InstanceDecision.REJECTED, final_status=WorkflowStatus.REJECTED)
        )

        again, first = _workflow()
        assert sql_workflows.create_workflow(again, first).status == WorkflowStatus.IN_PROGRESS


class TestSqlDelegationRepository:

    def _delegation(self, start, end, delegator="alice", delegate="carol"):
        return Delegation(
            delegator_id=delegator, delegate_id=delegate, tenant_id=TENANT, start_date=start, end_date=end,
        )

    def test_overlap_detection(self, sql_delegations, now):
        first = self._delegation(now, now + timedelta(days=5))

        assert sql_delegations.create_if_no_overlap(first) is None
        conflict = sql_delegations.create_if_no_overlap(self._delegation(now + timedelta(days=5), now + timedelta(days=7)))
        assert conflict.id == first.id
        assert sql_delegations.create_if_no_overlap(
            self._delegation(now + timedelta(days=6), now + timedelta(days=7))
        ) is None

    def test_deactivate_and_lookup(self, sql_delegations, now):
        delegation = self._delegation(now - timedelta(days=1), now + timedelta(days=1))
        sql_delegations.create_if_no_overlap(delegation)

        assert [d.id for d in sql_delegations.list_active_for_delegate("carol", TENANT, now)] == [delegation.id]

        deactivated = sql_delegations.deactivate(delegation.id)

        assert not deactivated.is_active
        assert sql_delegations.list_active_for_delegate("carol", TENANT, now) == []
        assert sql_delegations.deactivate("missing") is None
        assert sql_delegations.get(delegation.id).start_date.tzinfo is not None

    def test_list_for_user(self, sql_delegations, now):
        older = self._delegation(now, now + timedelta(days=1))
        newer = self._delegation(now + timedelta(days=2), now + timedelta(days=3), delegator="carol", delegate="alice")
        sql_delegations.create_if_no_overlap(older)
        sql_delegations.create_if_no_overlap(newer)

        assert [d.id for d in sql_delegations.list_for_user("alice", TENANT)] == [newer.id, older.id]
        assert sql_delegations.list_for_user("alice", "globex") == []


class TestEngineOnSql:
    """End-to-end flows through create_approval_engine with SQL repositories"""

    @pytest.fixture
    def sql_engine(self, db_manager, sql_rules, directory, documents, notification_service):
        return create_approval_engine(
            directory,
            documents,
            session_scope=db_manager.session_scope,
            notification_service=notification_service,
            config=ApprovalEngineConfig(notifications_async=False),
        )

    def test_sequential_approval(self, sql_engine, documents):
        workflow = start_pr1(sql_engine)

        assert sql_engine.approve(workflow.id, "alice").success
        assert not sql_engine.approve(workflow.id, "alice").success
        result = sql_engine.approve(workflow.id, "carol")

        assert result.final_status == WorkflowStatus.APPROVED
        assert documents.status_updates[-1][2] == WorkflowStatus.APPROVED

    def test_failed_write_can_be_retried(self, sql_engine, monkeypatch):
        workflow = start_pr1(sql_engine)
        to_row = sql_module._instance_to_row
        calls = []

        def flaky_to_row(instance):
            calls.append(instance.level_order)
            if len(calls) == 1:
                raise RuntimeError("connection dropped")
            return to_row(instance)

        monkeypatch.setattr(sql_module, "_instance_to_row", flaky_to_row)

        with pytest.raises(RuntimeError):
            sql_engine.approve(workflow.id, "alice")

        untouched = sql_engine.get_workflow_status(workflow.id)
        assert untouched.current_level == 1
        assert untouched.approvals[0].decision == InstanceDecision.PENDING

        retry = sql_engine.approve(workflow.id, "alice")

        assert retry.success
        advanced = sql_engine.get_workflow_status(workflow.id)
        assert advanced.current_level == 3
        assert [i.decision for i in advanced.approvals] == [InstanceDecision.APPROVED, InstanceDecision.PENDING]

    def test_resubmission_and_cancel(self, sql_engine):
        workflow = start_pr1(sql_engine)
        assert start_pr1(sql_engine).id == workflow.id

        assert sql_engine.cancel_workflow(workflow.id)
        assert sql_engine.get_workflow_status(workflow.id).approvals[0].decision == InstanceDecision.SKIPPED

    def test_delegation_conflict(self, sql_engine, now):
        sql_engine.create_delegation("alice", "carol", TENANT, now, now + timedelta(days=2))

        with pytest.raises(DelegationConflictError):
            sql_engine.create_delegation("alice", "bob", TENANT, now + timedelta(days=1), now + timedelta(days=3))

    def test_rule_administration(self, sql_engine):
        rule = sql_engine.rules.create_rule(
            TENANT,
            {"name": "Big", "min_amount": "10001", "levels": [{"name": "CFO", "approvers": [{"user_id": "carol"}]}]},
        )

        workflow = start_pr1(sql_engine, amount="20000")

        assert workflow.approval_rule_id == rule.id
        assert workflow.approvals[0].level_name == "CFO"
