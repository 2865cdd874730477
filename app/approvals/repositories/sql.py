"""
SQLAlchemy repositories.

Each method runs in its own transactional scope obtained from
``DatabaseSessionManager.session_scope``. A level decision and the workflow
change it causes share one transaction. Decisions, votes and cancellation
are conditional UPDATE statements whose row counts tell the caller whether
it won.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, ContextManager, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.db import models as db

from ..exceptions import WorkflowAlreadyActiveError
from ..schemas import (
    ApprovalInstance,
    ApprovalLevel,
    ApprovalRule,
    ApproverSpec,
    ApproverVote,
    Delegation,
    DocumentType,
    InstanceDecision,
    LevelDecision,
    PotentialApprover,
    Workflow,
    WorkflowStatus,
)
from .base import DelegationRepository, RuleRepository, WorkflowRepository

logger = logging.getLogger(__name__)

SessionScope = Callable[[], ContextManager[Session]]

_PENDING = InstanceDecision.PENDING.value
_IN_PROGRESS = WorkflowStatus.IN_PROGRESS.value


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything the engine compares is UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _rule_from_row(row: db.ApprovalRule) -> ApprovalRule:
    return ApprovalRule(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        document_type=row.document_type,
        purchase_type=row.purchase_type,
        min_amount=Decimal(row.min_amount) if row.min_amount is not None else None,
        max_amount=Decimal(row.max_amount) if row.max_amount is not None else None,
        priority=row.priority,
        is_active=row.is_active,
        created_at=_aware(row.created_at),
        levels=[
            ApprovalLevel(
                level_order=level.level_order,
                name=level.name,
                mode=level.approval_mode,
                level_type=level.level_type,
                approvers=[
                    ApproverSpec(user_id=approver.user_id, role=approver.role)
                    for approver in level.approvers
                ],
            )
            for level in row.levels
        ],
    )


def _instance_from_row(row: db.ApprovalInstance) -> ApprovalInstance:
    return ApprovalInstance(
        id=row.id,
        workflow_id=row.workflow_id,
        level_order=row.level_order,
        level_name=row.level_name,
        level_type=row.level_type,
        approval_mode=row.approval_mode,
        potential_approvers=[PotentialApprover.model_validate(item) for item in row.potential_approvers or []],
        decision=row.decision,
        decided_by_id=row.decided_by_id,
        decided_by_name=row.decided_by_name,
        on_behalf_of=row.on_behalf_of,
        comment=row.comment,
        decided_at=_aware(row.decided_at),
        votes=[ApproverVote.model_validate(item) for item in row.votes or []],
        version=row.version,
        created_at=_aware(row.created_at),
    )


def _instance_to_row(instance: ApprovalInstance) -> db.ApprovalInstance:
    return db.ApprovalInstance(
        id=instance.id,
        workflow_id=instance.workflow_id,
        level_order=instance.level_order,
        level_name=instance.level_name,
        level_type=instance.level_type.value,
        approval_mode=instance.approval_mode.value,
        potential_approvers=[p.model_dump(mode="json") for p in instance.potential_approvers],
        decision=instance.decision.value,
        votes=[v.model_dump(mode="json") for v in instance.votes],
        version=instance.version,
        created_at=instance.created_at,
    )


def _workflow_from_row(row: db.ApprovalWorkflow) -> Workflow:
    return Workflow(
        id=row.id,
        tenant_id=row.tenant_id,
        approval_rule_id=row.approval_rule_id,
        document_type=row.document_type,
        document_id=row.document_id,
        status=row.status,
        current_level=row.current_level,
        initiated_by=row.initiated_by,
        requires_spec_approval=row.requires_spec_approval,
        level_plan=[ApprovalLevel.model_validate(item) for item in row.level_plan or []],
        created_at=_aware(row.created_at),
        completed_at=_aware(row.completed_at),
        final_decision=row.final_decision,
        final_comment=row.final_comment,
        approvals=[_instance_from_row(instance) for instance in row.approvals],
    )


def _delegation_from_row(row: db.ApprovalDelegation) -> Delegation:
    return Delegation(
        id=row.id,
        delegator_id=row.delegator_id,
        delegator_name=row.delegator_name or "",
        delegate_id=row.delegate_id,
        delegate_name=row.delegate_name or "",
        tenant_id=row.tenant_id,
        start_date=_aware(row.start_date),
        end_date=_aware(row.end_date),
        reason=row.reason,
        is_active=row.is_active,
        created_at=_aware(row.created_at),
    )


class SqlRuleRepository(RuleRepository):
    def __init__(self, session_scope: SessionScope):
        self._session_scope = session_scope

    def _query(self):
        return (
            select(db.ApprovalRule)
            .options(selectinload(db.ApprovalRule.levels).selectinload(db.ApprovalLevel.approvers))
            .order_by(db.ApprovalRule.priority.desc(), db.ApprovalRule.created_at.asc(), db.ApprovalRule.id.asc())
        )

    def list_active_rules(self, tenant_id: str, document_type: DocumentType) -> List[ApprovalRule]:
        with self._session_scope() as session:
            stmt = self._query().where(
                db.ApprovalRule.tenant_id == tenant_id,
                db.ApprovalRule.document_type == document_type.value,
                db.ApprovalRule.is_active.is_(True),
            )
            return [_rule_from_row(row) for row in session.scalars(stmt)]

    def list_rules(self, tenant_id: str) -> List[ApprovalRule]:
        with self._session_scope() as session:
            stmt = self._query().where(db.ApprovalRule.tenant_id == tenant_id)
            return [_rule_from_row(row) for row in session.scalars(stmt)]

    def get_rule(self, rule_id: str) -> Optional[ApprovalRule]:
        with self._session_scope() as session:
            row = session.scalars(self._query().where(db.ApprovalRule.id == rule_id)).first()
            return _rule_from_row(row) if row else None

    def save_rule(self, rule: ApprovalRule) -> ApprovalRule:
        with self._session_scope() as session:
            row = session.get(db.ApprovalRule, rule.id)
            if row is None:
                row = db.ApprovalRule(id=rule.id, tenant_id=rule.tenant_id, created_at=rule.created_at)
                session.add(row)
            row.name = rule.name
            row.document_type = rule.document_type.value
            row.purchase_type = rule.purchase_type.value if rule.purchase_type else None
            row.min_amount = rule.min_amount
            row.max_amount = rule.max_amount
            row.priority = rule.priority
            row.is_active = rule.is_active
            # Replace the level set; the old rows are orphan-deleted
            row.levels.clear()
            session.flush()
            for level in rule.levels:
                row.levels.append(
                    db.ApprovalLevel(
                        level_order=level.level_order,
                        name=level.name,
                        approval_mode=level.mode.value,
                        level_type=level.level_type.value,
                        approvers=[
                            db.ApprovalLevelApprover(user_id=spec.user_id, role=spec.role)
                            for spec in level.approvers
                        ],
                    )
                )
            session.flush()
        return self.get_rule(rule.id)

    def delete_rule(self, rule_id: str) -> bool:
        with self._session_scope() as session:
            row = session.get(db.ApprovalRule, rule_id)
            if row is None:
                return False
            session.delete(row)
            return True


class SqlWorkflowRepository(WorkflowRepository):
    def __init__(self, session_scope: SessionScope):
        self._session_scope = session_scope

    def _query(self):
        return select(db.ApprovalWorkflow).options(selectinload(db.ApprovalWorkflow.approvals))

    def create_workflow(self, workflow: Workflow, first_instance: ApprovalInstance) -> Workflow:
        try:
            with self._session_scope() as session:
                existing = session.scalars(
                    select(db.ApprovalWorkflow.id).where(
                        db.ApprovalWorkflow.tenant_id == workflow.tenant_id,
                        db.ApprovalWorkflow.document_type == workflow.document_type.value,
                        db.ApprovalWorkflow.document_id == workflow.document_id,
                        db.ApprovalWorkflow.status == _IN_PROGRESS,
                    )
                ).first()
                if existing is not None:
                    raise WorkflowAlreadyActiveError(
                        workflow.document_type.value, workflow.document_id, existing
                    )
                session.add(
                    db.ApprovalWorkflow(
                        id=workflow.id,
                        tenant_id=workflow.tenant_id,
                        approval_rule_id=workflow.approval_rule_id,
                        document_type=workflow.document_type.value,
                        document_id=workflow.document_id,
                        status=workflow.status.value,
                        current_level=workflow.current_level,
                        initiated_by=workflow.initiated_by,
                        requires_spec_approval=workflow.requires_spec_approval,
                        level_plan=[level.model_dump(mode="json") for level in workflow.level_plan],
                        created_at=workflow.created_at,
                    )
                )
                session.flush()
                session.add(_instance_to_row(first_instance))
                session.flush()
        except IntegrityError:
            # Lost the race against a concurrent start for the same document
            logger.warning(f"Concurrent start detected for {workflow.document_type.value} {workflow.document_id}")
            raise WorkflowAlreadyActiveError(workflow.document_type.value, workflow.document_id) from None
        return self.get_workflow(workflow.id)

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        with self._session_scope() as session:
            row = session.scalars(self._query().where(db.ApprovalWorkflow.id == workflow_id)).first()
            return _workflow_from_row(row) if row else None

    def get_active_workflow(
        self,
        document_type: DocumentType,
        document_id: str,
        tenant_id: Optional[str] = None,
    ) -> Optional[Workflow]:
        with self._session_scope() as session:
            stmt = self._query().where(
                db.ApprovalWorkflow.document_type == document_type.value,
                db.ApprovalWorkflow.document_id == document_id,
                db.ApprovalWorkflow.status == _IN_PROGRESS,
            )
            if tenant_id is not None:
                stmt = stmt.where(db.ApprovalWorkflow.tenant_id == tenant_id)
            row = session.scalars(stmt).first()
            return _workflow_from_row(row) if row else None

    def list_in_progress(self, tenant_id: str) -> List[Workflow]:
        with self._session_scope() as session:
            stmt = (
                self._query()
                .where(db.ApprovalWorkflow.tenant_id == tenant_id, db.ApprovalWorkflow.status == _IN_PROGRESS)
                .order_by(db.ApprovalWorkflow.created_at.asc())
            )
            return [_workflow_from_row(row) for row in session.scalars(stmt)]

    def get_instance(self, instance_id: str) -> Optional[ApprovalInstance]:
        with self._session_scope() as session:
            row = session.get(db.ApprovalInstance, instance_id)
            return _instance_from_row(row) if row else None

    def decide_level(self, decision: LevelDecision) -> bool:
        if decision.closes_workflow:
            workflow_values = {
                "status": decision.final_status.value,
                "final_decision": decision.decision.value,
                "final_comment": decision.comment,
                "completed_at": decision.decided_at,
            }
        else:
            workflow_values = {"current_level": decision.next_instance.level_order}

        with self._session_scope() as session:
            # Workflow row first: cancellation takes the same row before touching instances
            moved = session.execute(
                update(db.ApprovalWorkflow)
                .where(
                    db.ApprovalWorkflow.id == decision.workflow_id,
                    db.ApprovalWorkflow.status == _IN_PROGRESS,
                    db.ApprovalWorkflow.current_level == decision.level_order,
                )
                .values(**workflow_values)
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            if not moved:
                return False

            instance_values = {
                "decision": decision.decision.value,
                "decided_by_id": decision.decided_by_id,
                "decided_by_name": decision.decided_by_name,
                "comment": decision.comment,
                "decided_at": decision.decided_at,
                "on_behalf_of": decision.on_behalf_of,
                "version": db.ApprovalInstance.version + 1,
            }
            conditions = [
                db.ApprovalInstance.id == decision.instance_id,
                db.ApprovalInstance.workflow_id == decision.workflow_id,
                db.ApprovalInstance.decision == _PENDING,
            ]
            if decision.expected_version is not None:
                conditions.append(db.ApprovalInstance.version == decision.expected_version)
            if decision.closing_vote is not None:
                current_votes = session.scalars(
                    select(db.ApprovalInstance.votes).where(db.ApprovalInstance.id == decision.instance_id)
                ).first()
                instance_values["votes"] = [*(current_votes or []), decision.closing_vote.model_dump(mode="json")]

            decided = session.execute(
                update(db.ApprovalInstance)
                .where(*conditions)
                .values(**instance_values)
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            if not decided:
                session.rollback()
                return False

            if decision.next_instance is not None:
                session.add(_instance_to_row(decision.next_instance))
            return True

    def record_vote(self, instance_id: str, vote: ApproverVote, expected_version: int) -> bool:
        with self._session_scope() as session:
            row = session.get(db.ApprovalInstance, instance_id)
            if row is None or row.decision != _PENDING or row.version != expected_version:
                return False
            votes = [*(row.votes or []), vote.model_dump(mode="json")]
            stmt = (
                update(db.ApprovalInstance)
                .where(
                    db.ApprovalInstance.id == instance_id,
                    db.ApprovalInstance.decision == _PENDING,
                    db.ApprovalInstance.version == expected_version,
                )
                .values(votes=votes, version=expected_version + 1)
                .execution_options(synchronize_session=False)
            )
            return session.execute(stmt).rowcount == 1

    def cancel_workflow(self, workflow_id: str, completed_at: datetime) -> bool:
        with self._session_scope() as session:
            cancelled = session.execute(
                update(db.ApprovalWorkflow)
                .where(db.ApprovalWorkflow.id == workflow_id, db.ApprovalWorkflow.status == _IN_PROGRESS)
                .values(status=WorkflowStatus.CANCELLED.value, completed_at=completed_at)
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            if not cancelled:
                return False
            session.execute(
                update(db.ApprovalInstance)
                .where(db.ApprovalInstance.workflow_id == workflow_id, db.ApprovalInstance.decision == _PENDING)
                .values(decision=InstanceDecision.SKIPPED.value, version=db.ApprovalInstance.version + 1)
                .execution_options(synchronize_session=False)
            )
            return True


class SqlDelegationRepository(DelegationRepository):
    def __init__(self, session_scope: SessionScope):
        self._session_scope = session_scope

    def create_if_no_overlap(self, delegation: Delegation) -> Optional[Delegation]:
        # TODO: back this with a PostgreSQL exclusion constraint on tstzrange(start_date, end_date)
        # so two concurrent inserts cannot both pass the overlap check.
        with self._session_scope() as session:
            conflict = session.scalars(
                select(db.ApprovalDelegation).where(
                    db.ApprovalDelegation.delegator_id == delegation.delegator_id,
                    db.ApprovalDelegation.tenant_id == delegation.tenant_id,
                    db.ApprovalDelegation.is_active.is_(True),
                    db.ApprovalDelegation.start_date <= delegation.end_date,
                    db.ApprovalDelegation.end_date >= delegation.start_date,
                )
            ).first()
            if conflict is not None:
                return _delegation_from_row(conflict)
            session.add(
                db.ApprovalDelegation(
                    id=delegation.id,
                    delegator_id=delegation.delegator_id,
                    delegator_name=delegation.delegator_name,
                    delegate_id=delegation.delegate_id,
                    delegate_name=delegation.delegate_name,
                    tenant_id=delegation.tenant_id,
                    start_date=delegation.start_date,
                    end_date=delegation.end_date,
                    reason=delegation.reason,
                    is_active=delegation.is_active,
                    created_at=delegation.created_at,
                )
            )
            return None

    def get(self, delegation_id: str) -> Optional[Delegation]:
        with self._session_scope() as session:
            row = session.get(db.ApprovalDelegation, delegation_id)
            return _delegation_from_row(row) if row else None

    def deactivate(self, delegation_id: str) -> Optional[Delegation]:
        with self._session_scope() as session:
            row = session.get(db.ApprovalDelegation, delegation_id)
            if row is None:
                return None
            row.is_active = False
            session.flush()
            return _delegation_from_row(row)

    def list_for_user(self, user_id: str, tenant_id: str) -> List[Delegation]:
        with self._session_scope() as session:
            stmt = (
                select(db.ApprovalDelegation)
                .where(
                    db.ApprovalDelegation.tenant_id == tenant_id,
                    or_(
                        db.ApprovalDelegation.delegator_id == user_id,
                        db.ApprovalDelegation.delegate_id == user_id,
                    ),
                )
                .order_by(db.ApprovalDelegation.start_date.desc())
            )
            return [_delegation_from_row(row) for row in session.scalars(stmt)]

    def list_active_for_delegate(self, delegate_id: str, tenant_id: str, at: datetime) -> List[Delegation]:
        with self._session_scope() as session:
            stmt = select(db.ApprovalDelegation).where(
                and_(
                    db.ApprovalDelegation.delegate_id == delegate_id,
                    db.ApprovalDelegation.tenant_id == tenant_id,
                    db.ApprovalDelegation.is_active.is_(True),
                    db.ApprovalDelegation.start_date <= at,
                    db.ApprovalDelegation.end_date >= at,
                )
            )
            return [_delegation_from_row(row) for row in session.scalars(stmt)]
