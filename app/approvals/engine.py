"""
Approval Engine

Single entry point wiring rule matching, orchestration, decisions and
delegations over one set of repositories.
"""

from datetime import datetime
from typing import Callable, ContextManager, List, Optional

from sqlalchemy.orm import Session

from app.core.logging_config import get_logger
from app.core.notifications import NotificationService
from app.core.settings import Settings, get_settings

from .decision_processor import DecisionProcessor
from .delegation import DelegationManager
from .notifications import NotificationDispatcher
from .orchestrator import WorkflowOrchestrator
from .repositories.base import (
    DelegationRepository,
    Directory,
    DocumentStore,
    RuleRepository,
    WorkflowRepository,
)
from .repositories.memory import (
    InMemoryDelegationRepository,
    InMemoryRuleRepository,
    InMemoryWorkflowRepository,
)
from .rule_admin import RuleAdministration
from .rule_matcher import Amount
from .schemas import (
    ApprovalEngineConfig,
    DecisionAction,
    DecisionResult,
    Delegation,
    DirectoryUser,
    DocumentType,
    PendingApproval,
    PurchaseType,
    Workflow,
    utcnow,
)
from .state_machine import ApprovalStateMachine

logger = get_logger(__name__)


class ApprovalEngine:
    """Facade over the approval components"""

    def __init__(
        self,
        rules: RuleRepository,
        workflows: WorkflowRepository,
        delegations: DelegationRepository,
        directory: Directory,
        documents: DocumentStore,
        notification_service: Optional[NotificationService] = None,
        config: Optional[ApprovalEngineConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or ApprovalEngineConfig()
        self.state_machine = ApprovalStateMachine()
        self.dispatcher = NotificationDispatcher(notification_service, self.config)

        self.orchestrator = WorkflowOrchestrator(
            rules,
            workflows,
            directory,
            documents,
            self.dispatcher,
            config=self.config,
            state_machine=self.state_machine,
            clock=clock,
        )
        self.decisions = DecisionProcessor(
            workflows,
            self.orchestrator,
            directory,
            delegations=delegations,
            config=self.config,
            state_machine=self.state_machine,
            clock=clock,
        )
        self.delegations = DelegationManager(delegations, directory, self.dispatcher, self.config, clock)
        self.rules = RuleAdministration(rules, clock)

    # Workflows

    def start_workflow(
        self,
        tenant_id: str,
        document_type: DocumentType,
        document_id: str,
        amount: Amount,
        purchase_type: Optional[PurchaseType],
        requires_spec_approval: bool,
        initiator_id: str,
    ) -> Optional[Workflow]:
        return self.orchestrator.start_workflow(
            tenant_id, document_type, document_id, amount, purchase_type, requires_spec_approval, initiator_id
        )

    def submit_document(
        self,
        tenant_id: str,
        document_type: DocumentType,
        document_id: str,
        requires_spec_approval: bool,
        initiator_id: str,
    ) -> Optional[Workflow]:
        return self.orchestrator.submit_document(
            tenant_id, document_type, document_id, requires_spec_approval, initiator_id
        )

    def process_decision(
        self,
        workflow_id: str,
        approver_id: str,
        decision: DecisionAction,
        comment: Optional[str] = None,
    ) -> DecisionResult:
        return self.decisions.process_decision(workflow_id, approver_id, decision, comment)

    def approve(self, workflow_id: str, approver_id: str, comment: Optional[str] = None) -> DecisionResult:
        return self.process_decision(workflow_id, approver_id, DecisionAction.APPROVED, comment)

    def reject(self, workflow_id: str, approver_id: str, comment: Optional[str] = None) -> DecisionResult:
        return self.process_decision(workflow_id, approver_id, DecisionAction.REJECTED, comment)

    def cancel_workflow(self, workflow_id: str) -> bool:
        return self.decisions.cancel_workflow(workflow_id)

    def get_workflow_status(self, workflow_id: str) -> Optional[Workflow]:
        return self.decisions.get_workflow_status(workflow_id)

    def get_active_workflow(
        self,
        document_type: DocumentType,
        document_id: str,
        tenant_id: Optional[str] = None,
    ) -> Optional[Workflow]:
        return self.decisions.get_active_workflow(document_type, document_id, tenant_id)

    def get_pending_approvals(self, user_id: str, tenant_id: str) -> List[PendingApproval]:
        return self.decisions.get_pending_approvals(user_id, tenant_id)

    # Delegations

    def create_delegation(
        self,
        delegator_id: str,
        delegate_id: str,
        tenant_id: str,
        start_date: datetime,
        end_date: datetime,
        reason: Optional[str] = None,
    ) -> Delegation:
        return self.delegations.create_delegation(delegator_id, delegate_id, tenant_id, start_date, end_date, reason)

    def cancel_delegation(self, delegation_id: str, requested_by: Optional[str] = None) -> Delegation:
        return self.delegations.cancel_delegation(delegation_id, requested_by)

    def get_user_delegations(self, user_id: str, tenant_id: str) -> List[Delegation]:
        return self.delegations.get_user_delegations(user_id, tenant_id)

    def list_available_delegates(self, tenant_id: str, requester_id: str) -> List[DirectoryUser]:
        return self.delegations.list_available_delegates(tenant_id, requester_id)

    def shutdown(self) -> None:
        """Drain queued notifications and stop the notification executor"""
        self.dispatcher.flush()
        self.dispatcher.shutdown()


def create_approval_engine(
    directory: Directory,
    documents: DocumentStore,
    session_scope: Optional[Callable[[], ContextManager[Session]]] = None,
    notification_service: Optional[NotificationService] = None,
    settings: Optional[Settings] = None,
    config: Optional[ApprovalEngineConfig] = None,
    clock: Callable[[], datetime] = utcnow,
) -> ApprovalEngine:
    """
    Build an engine from application settings.

    Args:
        directory: User and membership lookups
        documents: Store for the documents being approved
        session_scope: Transactional session factory; SQL repositories are
            used when given, in-memory repositories otherwise
        notification_service: Outbox for approval notices (None disables them)
        settings: Settings to derive the engine config from
        config: Explicit config, takes precedence over settings
    """
    if config is None:
        config = ApprovalEngineConfig.from_settings(settings or get_settings())

    if session_scope is not None:
        from .repositories.sql import SqlDelegationRepository, SqlRuleRepository, SqlWorkflowRepository

        rules: RuleRepository = SqlRuleRepository(session_scope)
        workflows: WorkflowRepository = SqlWorkflowRepository(session_scope)
        delegations: DelegationRepository = SqlDelegationRepository(session_scope)
        backend = "sql"
    else:
        rules = InMemoryRuleRepository()
        workflows = InMemoryWorkflowRepository()
        delegations = InMemoryDelegationRepository()
        backend = "memory"

    logger.info(
        "approval_engine_created",
        backend=backend,
        enforce_all_mode=config.enforce_all_mode,
        honor_delegations=config.honor_delegations,
        notifications_enabled=config.notifications_enabled and notification_service is not None,
    )
    return ApprovalEngine(
        rules,
        workflows,
        delegations,
        directory,
        documents,
        notification_service=notification_service,
        config=config,
        clock=clock,
    )
