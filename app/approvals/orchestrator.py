"""
Workflow Orchestrator

Creates workflows from a matched rule, materialises one approval instance
per level as the chain progresses, and closes workflows once the last level
is approved or any level is rejected.
"""

from datetime import datetime
from typing import Callable, List, Optional, Tuple

from app.core.logging_config import get_logger

from .exceptions import WorkflowAlreadyActiveError
from .notifications import NotificationDispatcher
from .repositories.base import Directory, DocumentStore, RuleRepository, WorkflowRepository
from .resolvers import ApproverResolver
from .rule_matcher import Amount, RuleMatcher
from .schemas import (
    ApprovalEngineConfig,
    ApprovalInstance,
    ApprovalLevel,
    ApprovalLevelType,
    ApprovalRule,
    DecisionAction,
    DocumentSummary,
    DocumentType,
    InstanceDecision,
    LevelDecision,
    PurchaseType,
    Workflow,
    WorkflowStatus,
    utcnow,
)
from .state_machine import ApprovalStateMachine, final_status_for

logger = get_logger(__name__)


def plan_levels(rule: ApprovalRule, requires_spec_approval: bool) -> List[ApprovalLevel]:
    """The rule's levels in order, without SPECIFICATIONS levels unless requested"""
    levels = sorted(rule.levels, key=lambda level: level.level_order)
    if not requires_spec_approval:
        levels = [level for level in levels if level.level_type != ApprovalLevelType.SPECIFICATIONS]
    return [level.model_copy(deep=True) for level in levels]


class WorkflowOrchestrator:
    """
    Drives the workflow lifecycle.

    Every instance is created together with the workflow change that makes
    it current (start or advance), so ``current_level`` always points at the
    newest instance.
    """

    def __init__(
        self,
        rules: RuleRepository,
        workflows: WorkflowRepository,
        directory: Directory,
        documents: DocumentStore,
        dispatcher: NotificationDispatcher,
        config: Optional[ApprovalEngineConfig] = None,
        matcher: Optional[RuleMatcher] = None,
        resolver: Optional[ApproverResolver] = None,
        state_machine: Optional[ApprovalStateMachine] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.rules = rules
        self.workflows = workflows
        self.directory = directory
        self.documents = documents
        self.dispatcher = dispatcher
        self.config = config or ApprovalEngineConfig()
        self.matcher = matcher or RuleMatcher(rules)
        self.resolver = resolver or ApproverResolver(directory)
        self.state_machine = state_machine or ApprovalStateMachine()
        self.clock = clock

    # ==================== Start ====================

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
        """
        Start the approval workflow for a document.

        Returns:
            The new workflow, the document's workflow already in progress, or
            None when no rule applies or the rule has no levels to run
        """
        log = logger.bind(tenant_id=tenant_id, document_type=document_type.value, document_id=document_id)

        active = self.workflows.get_active_workflow(document_type, document_id, tenant_id)
        if active is not None:
            log.info("workflow_already_in_progress", workflow_id=active.id)
            return active

        rule = self.matcher.find_applicable_rule(tenant_id, document_type, amount, purchase_type)
        if rule is None:
            log.warning("workflow_not_started", reason="no_applicable_rule")
            return None

        levels = plan_levels(rule, requires_spec_approval)
        if not levels:
            log.warning("workflow_not_started", reason="no_levels_to_process", rule_id=rule.id)
            return None

        first_level = levels[0]
        workflow = Workflow(
            tenant_id=tenant_id,
            approval_rule_id=rule.id,
            document_type=document_type,
            document_id=document_id,
            status=WorkflowStatus.IN_PROGRESS,
            current_level=first_level.level_order,
            initiated_by=initiator_id,
            requires_spec_approval=requires_spec_approval,
            level_plan=levels,
            created_at=self.clock(),
        )
        instance = self.build_instance(tenant_id, workflow.id, first_level)

        try:
            workflow = self.workflows.create_workflow(workflow, instance)
        except WorkflowAlreadyActiveError:
            existing = self.workflows.get_active_workflow(document_type, document_id, tenant_id)
            log.info("workflow_start_lost_race", workflow_id=existing.id if existing else None)
            return existing

        log.info(
            "workflow_started",
            workflow_id=workflow.id,
            rule_id=rule.id,
            level_order=first_level.level_order,
            levels=[level.level_order for level in levels],
        )
        self.announce_instance(workflow, instance)
        return workflow

    def submit_document(
        self,
        tenant_id: str,
        document_type: DocumentType,
        document_id: str,
        requires_spec_approval: bool,
        initiator_id: str,
    ) -> Optional[Workflow]:
        """Start a workflow using the amount and purchase type held by the document store"""
        amount = self.documents.get_amount(document_type, document_id)
        purchase_type = self.documents.get_purchase_type(document_type, document_id)
        return self.start_workflow(
            tenant_id,
            document_type,
            document_id,
            amount,
            purchase_type,
            requires_spec_approval,
            initiator_id,
        )

    # ==================== Instances ====================

    def build_instance(self, tenant_id: str, workflow_id: str, level: ApprovalLevel) -> ApprovalInstance:
        """Create (unsaved) the instance for *level* with its approver snapshot"""
        return ApprovalInstance(
            workflow_id=workflow_id,
            level_order=level.level_order,
            level_name=level.name,
            level_type=level.level_type,
            approval_mode=level.mode,
            potential_approvers=self.resolver.resolve(tenant_id, level),
            decision=InstanceDecision.PENDING,
            created_at=self.clock(),
        )

    def announce_instance(self, workflow: Workflow, instance: ApprovalInstance) -> None:
        """Tell every potential approver the level is waiting on them"""
        if not self.dispatcher.enabled or not instance.potential_approvers:
            return
        document = self.document_summary(workflow)
        self.dispatcher.approval_needed(
            instance.potential_approvers, document, instance.level_name, workflow.tenant_id
        )

    # ==================== Level outcomes ====================

    def plan_follow_up(
        self,
        workflow: Workflow,
        instance: ApprovalInstance,
        action: DecisionAction,
    ) -> Tuple[Optional[ApprovalInstance], Optional[WorkflowStatus]]:
        """
        Work out what deciding *instance* with *action* does to the workflow.

        Returns:
            ``(next_instance, None)`` when an approval moves the chain on, with
            the next level's approvers already resolved, or
            ``(None, final_status)`` when the decision ends the workflow
        """
        if action == DecisionAction.APPROVED:
            next_level = workflow.next_level(instance.level_order)
            if next_level is not None:
                return self.build_instance(workflow.tenant_id, workflow.id, next_level), None

        status = final_status_for(action)
        self.state_machine.transition_workflow(workflow.status, status)
        return None, status

    def level_decided(self, workflow: Workflow, decided: LevelDecision) -> None:
        """Run the side effects of a level decision that has been committed"""
        if decided.next_instance is not None:
            logger.info(
                "workflow_advanced",
                workflow_id=workflow.id,
                from_level=decided.level_order,
                to_level=decided.next_instance.level_order,
            )
            self.announce_instance(workflow, decided.next_instance)
            return

        self._finish_workflow(workflow, decided.final_status, decided.comment)

    def _finish_workflow(self, workflow: Workflow, status: WorkflowStatus, comment: Optional[str]) -> None:
        """Write the final status through to the document and tell the initiator"""
        try:
            self.documents.set_approval_status(workflow.document_type, workflow.document_id, status)
        except Exception:
            logger.error(
                "document_status_write_failed",
                workflow_id=workflow.id,
                document_id=workflow.document_id,
                status=status.value,
                exc_info=True,
            )
            raise

        logger.info(
            "workflow_completed",
            workflow_id=workflow.id,
            tenant_id=workflow.tenant_id,
            status=status.value,
        )

        if self.dispatcher.enabled:
            self.dispatcher.workflow_completed(
                self._lookup_initiator(workflow),
                self.document_summary(workflow),
                status,
                workflow.tenant_id,
                comment,
            )

    # ==================== Helpers ====================

    def document_summary(self, workflow: Workflow) -> Optional[DocumentSummary]:
        """Document summary for notices; lookup failures never reach the caller"""
        try:
            return self.documents.get_summary(workflow.document_type, workflow.document_id)
        except Exception:
            logger.error("document_summary_unavailable", workflow_id=workflow.id, exc_info=True)
            return None

    def _lookup_initiator(self, workflow: Workflow):
        try:
            return self.directory.get_user(workflow.initiated_by)
        except Exception:
            logger.error("initiator_lookup_failed", workflow_id=workflow.id, exc_info=True)
            return None
