"""
In-memory repositories.

Used by tests and local development. Every write happens under a lock and
every read hands back a deep copy, so callers see the same isolation they
would get from a database.
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from ..exceptions import WorkflowAlreadyActiveError
from ..schemas import (
    ApprovalInstance,
    ApprovalRule,
    ApproverVote,
    Delegation,
    DirectoryUser,
    DocumentSummary,
    DocumentType,
    InstanceDecision,
    LevelDecision,
    PurchaseType,
    Workflow,
    WorkflowStatus,
)
from .base import (
    DelegationRepository,
    Directory,
    DocumentStore,
    RuleRepository,
    WorkflowRepository,
)

logger = logging.getLogger(__name__)


def _rule_sort_key(rule: ApprovalRule):
    return (-rule.priority, rule.created_at, rule.id)


class InMemoryRuleRepository(RuleRepository):
    """Rules kept in a dict keyed by id"""

    def __init__(self, rules: Optional[List[ApprovalRule]] = None):
        self._lock = threading.RLock()
        self._rules: Dict[str, ApprovalRule] = {}
        for rule in rules or []:
            self.save_rule(rule)

    def list_active_rules(self, tenant_id: str, document_type: DocumentType) -> List[ApprovalRule]:
        with self._lock:
            rules = [
                rule for rule in self._rules.values()
                if rule.tenant_id == tenant_id
                and rule.document_type == document_type
                and rule.is_active
            ]
            return [rule.model_copy(deep=True) for rule in sorted(rules, key=_rule_sort_key)]

    def list_rules(self, tenant_id: str) -> List[ApprovalRule]:
        with self._lock:
            rules = [rule for rule in self._rules.values() if rule.tenant_id == tenant_id]
            return [rule.model_copy(deep=True) for rule in sorted(rules, key=_rule_sort_key)]

    def get_rule(self, rule_id: str) -> Optional[ApprovalRule]:
        with self._lock:
            rule = self._rules.get(rule_id)
            return rule.model_copy(deep=True) if rule else None

    def save_rule(self, rule: ApprovalRule) -> ApprovalRule:
        with self._lock:
            self._rules[rule.id] = rule.model_copy(deep=True)
            return rule.model_copy(deep=True)

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None


class InMemoryWorkflowRepository(WorkflowRepository):
    """Workflows and their instances, guarded by a single lock"""

    def __init__(self):
        self._lock = threading.RLock()
        self._workflows: Dict[str, Workflow] = {}
        self._instance_index: Dict[str, str] = {}

    def _active_for(self, tenant_id: Optional[str], document_type: DocumentType, document_id: str) -> Optional[Workflow]:
        for workflow in self._workflows.values():
            if (
                workflow.status == WorkflowStatus.IN_PROGRESS
                and workflow.document_type == document_type
                and workflow.document_id == document_id
                and (tenant_id is None or workflow.tenant_id == tenant_id)
            ):
                return workflow
        return None

    def _find_instance(self, instance_id: str) -> Tuple[Optional[Workflow], Optional[ApprovalInstance]]:
        workflow_id = self._instance_index.get(instance_id)
        if workflow_id is None:
            return None, None
        workflow = self._workflows[workflow_id]
        for instance in workflow.approvals:
            if instance.id == instance_id:
                return workflow, instance
        return workflow, None

    def create_workflow(self, workflow: Workflow, first_instance: ApprovalInstance) -> Workflow:
        with self._lock:
            existing = self._active_for(workflow.tenant_id, workflow.document_type, workflow.document_id)
            if existing is not None:
                raise WorkflowAlreadyActiveError(
                    workflow.document_type.value, workflow.document_id, existing.id
                )
            stored = workflow.model_copy(deep=True)
            stored.approvals = [first_instance.model_copy(deep=True)]
            self._workflows[stored.id] = stored
            self._instance_index[first_instance.id] = stored.id
            return stored.model_copy(deep=True)

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            return workflow.model_copy(deep=True) if workflow else None

    def get_active_workflow(
        self,
        document_type: DocumentType,
        document_id: str,
        tenant_id: Optional[str] = None,
    ) -> Optional[Workflow]:
        with self._lock:
            workflow = self._active_for(tenant_id, document_type, document_id)
            return workflow.model_copy(deep=True) if workflow else None

    def list_in_progress(self, tenant_id: str) -> List[Workflow]:
        with self._lock:
            workflows = [
                workflow for workflow in self._workflows.values()
                if workflow.tenant_id == tenant_id and workflow.status == WorkflowStatus.IN_PROGRESS
            ]
            workflows.sort(key=lambda w: w.created_at)
            return [workflow.model_copy(deep=True) for workflow in workflows]

    def get_instance(self, instance_id: str) -> Optional[ApprovalInstance]:
        with self._lock:
            _, instance = self._find_instance(instance_id)
            return instance.model_copy(deep=True) if instance else None

    def decide_level(self, decision: LevelDecision) -> bool:
        with self._lock:
            workflow = self._workflows.get(decision.workflow_id)
            if (
                workflow is None
                or workflow.status != WorkflowStatus.IN_PROGRESS
                or workflow.current_level != decision.level_order
            ):
                return False
            _, instance = self._find_instance(decision.instance_id)
            if (
                instance is None
                or instance.workflow_id != workflow.id
                or instance.decision != InstanceDecision.PENDING
            ):
                return False
            if decision.expected_version is not None and instance.version != decision.expected_version:
                return False

            next_instance = decision.next_instance.model_copy(deep=True) if decision.next_instance else None

            instance.decision = decision.decision
            instance.decided_by_id = decision.decided_by_id
            instance.decided_by_name = decision.decided_by_name
            instance.comment = decision.comment
            instance.decided_at = decision.decided_at
            instance.on_behalf_of = decision.on_behalf_of
            if decision.closing_vote is not None:
                instance.votes = [*instance.votes, decision.closing_vote]
            instance.version += 1

            if next_instance is not None:
                workflow.current_level = next_instance.level_order
                workflow.approvals.append(next_instance)
                self._instance_index[next_instance.id] = workflow.id
            else:
                workflow.status = decision.final_status
                workflow.final_decision = decision.decision
                workflow.final_comment = decision.comment
                workflow.completed_at = decision.decided_at
            return True

    def record_vote(self, instance_id: str, vote: ApproverVote, expected_version: int) -> bool:
        with self._lock:
            _, instance = self._find_instance(instance_id)
            if (
                instance is None
                or instance.decision != InstanceDecision.PENDING
                or instance.version != expected_version
            ):
                return False
            instance.votes = [*instance.votes, vote]
            instance.version += 1
            return True

    def cancel_workflow(self, workflow_id: str, completed_at: datetime) -> bool:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            if workflow is None or workflow.status != WorkflowStatus.IN_PROGRESS:
                return False
            workflow.status = WorkflowStatus.CANCELLED
            workflow.completed_at = completed_at
            for instance in workflow.approvals:
                if instance.decision == InstanceDecision.PENDING:
                    instance.decision = InstanceDecision.SKIPPED
                    instance.version += 1
            return True


class InMemoryDelegationRepository(DelegationRepository):
    """Delegations kept in insertion order"""

    def __init__(self):
        self._lock = threading.RLock()
        self._delegations: Dict[str, Delegation] = {}

    def create_if_no_overlap(self, delegation: Delegation) -> Optional[Delegation]:
        with self._lock:
            for existing in self._delegations.values():
                if (
                    existing.is_active
                    and existing.delegator_id == delegation.delegator_id
                    and existing.tenant_id == delegation.tenant_id
                    and existing.overlaps(delegation.start_date, delegation.end_date)
                ):
                    return existing.model_copy(deep=True)
            self._delegations[delegation.id] = delegation.model_copy(deep=True)
            return None

    def get(self, delegation_id: str) -> Optional[Delegation]:
        with self._lock:
            delegation = self._delegations.get(delegation_id)
            return delegation.model_copy(deep=True) if delegation else None

    def deactivate(self, delegation_id: str) -> Optional[Delegation]:
        with self._lock:
            delegation = self._delegations.get(delegation_id)
            if delegation is None:
                return None
            delegation.is_active = False
            return delegation.model_copy(deep=True)

    def list_for_user(self, user_id: str, tenant_id: str) -> List[Delegation]:
        with self._lock:
            delegations = [
                d for d in self._delegations.values()
                if d.tenant_id == tenant_id and user_id in (d.delegator_id, d.delegate_id)
            ]
            delegations.sort(key=lambda d: d.start_date, reverse=True)
            return [d.model_copy(deep=True) for d in delegations]

    def list_active_for_delegate(self, delegate_id: str, tenant_id: str, at: datetime) -> List[Delegation]:
        with self._lock:
            return [
                d.model_copy(deep=True) for d in self._delegations.values()
                if d.delegate_id == delegate_id and d.tenant_id == tenant_id and d.covers(at)
            ]


class InMemoryDirectory(Directory):
    """Users plus tenant memberships with role lists"""

    def __init__(self):
        self._users: Dict[str, DirectoryUser] = {}
        # tenant_id -> user_id -> (roles, is_active)
        self._memberships: Dict[str, Dict[str, Tuple[Set[str], bool]]] = defaultdict(dict)

    def add_user(self, user_id: str, name: str = "", email: str = "") -> DirectoryUser:
        user = DirectoryUser(id=user_id, name=name, email=email)
        self._users[user_id] = user
        return user

    def add_membership(self, tenant_id: str, user_id: str, roles, is_active: bool = True) -> None:
        self._memberships[tenant_id][user_id] = (set(roles), is_active)

    def set_membership_active(self, tenant_id: str, user_id: str, is_active: bool) -> None:
        roles, _ = self._memberships[tenant_id][user_id]
        self._memberships[tenant_id][user_id] = (roles, is_active)

    def get_user(self, user_id: str) -> Optional[DirectoryUser]:
        user = self._users.get(user_id)
        return user.model_copy() if user else None

    def list_members_with_role(self, tenant_id: str, role: str) -> List[DirectoryUser]:
        members = []
        for user_id, (roles, is_active) in self._memberships.get(tenant_id, {}).items():
            if is_active and role in roles and user_id in self._users:
                members.append(self._users[user_id].model_copy())
        return members


class InMemoryDocumentStore(DocumentStore):
    """Documents registered as summaries; approval status writes are recorded"""

    def __init__(self):
        self._documents: Dict[Tuple[DocumentType, str], DocumentSummary] = {}
        self.status_updates: List[Tuple[DocumentType, str, WorkflowStatus]] = []

    def add_document(self, summary: DocumentSummary) -> DocumentSummary:
        self._documents[(summary.document_type, summary.document_id)] = summary
        return summary

    def _require(self, document_type: DocumentType, document_id: str) -> DocumentSummary:
        try:
            return self._documents[(document_type, document_id)]
        except KeyError:
            raise LookupError(f"{document_type.value} {document_id} not found") from None

    def get_amount(self, document_type: DocumentType, document_id: str) -> Decimal:
        return self._require(document_type, document_id).amount or Decimal("0")

    def get_purchase_type(self, document_type: DocumentType, document_id: str) -> Optional[PurchaseType]:
        return self._require(document_type, document_id).purchase_type

    def get_summary(self, document_type: DocumentType, document_id: str) -> Optional[DocumentSummary]:
        summary = self._documents.get((document_type, document_id))
        return summary.model_copy() if summary else None

    def set_approval_status(self, document_type: DocumentType, document_id: str, status: WorkflowStatus) -> None:
        summary = self._documents.get((document_type, document_id))
        if summary is not None:
            summary.status = status.value
        self.status_updates.append((document_type, document_id, status))
        logger.info(f"{document_type.value} {document_id} marked {status.value}")
