"""
Repository interfaces for the approval engine.

The engine never reaches for a global data handle; every store it reads or
writes is one of these interfaces, injected at construction time. The
conditional write methods on WorkflowRepository are what keep concurrent
decision submissions from advancing a level twice.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from ..schemas import (
    ApprovalInstance,
    ApprovalRule,
    ApproverVote,
    Delegation,
    DirectoryUser,
    DocumentSummary,
    DocumentType,
    LevelDecision,
    PurchaseType,
    Workflow,
    WorkflowStatus,
)


class RuleRepository(ABC):
    """Read/write access to tenant approval rules"""

    @abstractmethod
    def list_active_rules(self, tenant_id: str, document_type: DocumentType) -> List[ApprovalRule]:
        """Active rules for a tenant and document type, levels ordered ascending"""

    @abstractmethod
    def list_rules(self, tenant_id: str) -> List[ApprovalRule]:
        """Every rule of a tenant, active or not, highest priority first"""

    @abstractmethod
    def get_rule(self, rule_id: str) -> Optional[ApprovalRule]:
        ...

    @abstractmethod
    def save_rule(self, rule: ApprovalRule) -> ApprovalRule:
        """Insert the rule or replace it (levels included) if the id exists"""

    @abstractmethod
    def delete_rule(self, rule_id: str) -> bool:
        ...


class WorkflowRepository(ABC):
    """Persistence for workflows and their approval instances"""

    @abstractmethod
    def create_workflow(self, workflow: Workflow, first_instance: ApprovalInstance) -> Workflow:
        """
        Persist a new workflow together with its first instance.

        Raises:
            WorkflowAlreadyActiveError: the document already has a workflow
                in progress for the tenant
        """

    @abstractmethod
    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        """Workflow with its instances ordered by level"""

    @abstractmethod
    def get_active_workflow(
        self,
        document_type: DocumentType,
        document_id: str,
        tenant_id: Optional[str] = None,
    ) -> Optional[Workflow]:
        ...

    @abstractmethod
    def list_in_progress(self, tenant_id: str) -> List[Workflow]:
        ...

    @abstractmethod
    def get_instance(self, instance_id: str) -> Optional[ApprovalInstance]:
        ...

    @abstractmethod
    def decide_level(self, decision: LevelDecision) -> bool:
        """
        Record a level decision and advance or close the workflow, as one unit.

        Nothing is written unless the workflow is still IN_PROGRESS at
        ``decision.level_order``, the instance is still PENDING and, when
        ``expected_version`` is set, unchanged since it was read.

        Returns:
            True if this call decided the level, False if it lost to a
            concurrent decision, vote or cancellation
        """

    @abstractmethod
    def record_vote(self, instance_id: str, vote: ApproverVote, expected_version: int) -> bool:
        """
        Append a vote if the instance is still PENDING and unchanged since
        *expected_version* was read.
        """

    @abstractmethod
    def cancel_workflow(self, workflow_id: str, completed_at: datetime) -> bool:
        """Cancel an IN_PROGRESS workflow and mark its PENDING instances SKIPPED"""


class DelegationRepository(ABC):
    """Persistence for approval delegations"""

    @abstractmethod
    def create_if_no_overlap(self, delegation: Delegation) -> Optional[Delegation]:
        """
        Insert *delegation* unless an active delegation of the same delegator
        and tenant intersects its date range.

        Returns:
            None when inserted, otherwise the conflicting delegation
        """

    @abstractmethod
    def get(self, delegation_id: str) -> Optional[Delegation]:
        ...

    @abstractmethod
    def deactivate(self, delegation_id: str) -> Optional[Delegation]:
        ...

    @abstractmethod
    def list_for_user(self, user_id: str, tenant_id: str) -> List[Delegation]:
        """Delegations where the user is delegator or delegate, newest start first"""

    @abstractmethod
    def list_active_for_delegate(self, delegate_id: str, tenant_id: str, at: datetime) -> List[Delegation]:
        ...


class Directory(ABC):
    """User and membership lookups"""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[DirectoryUser]:
        ...

    @abstractmethod
    def list_members_with_role(self, tenant_id: str, role: str) -> List[DirectoryUser]:
        """Active tenant members holding *role*"""

    def list_members_with_roles(self, tenant_id: str, roles: Iterable[str]) -> List[DirectoryUser]:
        """Active tenant members holding any of *roles*, each listed once"""
        seen = set()
        members = []
        for role in roles:
            for user in self.list_members_with_role(tenant_id, role):
                if user.id not in seen:
                    seen.add(user.id)
                    members.append(user)
        return members


class DocumentStore(ABC):
    """The generic contract the engine needs from whatever is being approved"""

    @abstractmethod
    def get_amount(self, document_type: DocumentType, document_id: str) -> Decimal:
        ...

    @abstractmethod
    def get_purchase_type(self, document_type: DocumentType, document_id: str) -> Optional[PurchaseType]:
        ...

    @abstractmethod
    def get_summary(self, document_type: DocumentType, document_id: str) -> Optional[DocumentSummary]:
        ...

    @abstractmethod
    def set_approval_status(self, document_type: DocumentType, document_id: str, status: WorkflowStatus) -> None:
        ...
