"""
Decision Processor

Accepts approve/reject decisions from approvers, records them against the
current level and hands the workflow back to the orchestrator to advance or
close it. Also owns cancellation and the read-side queries used by inboxes.
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, Union

from app.core.logging_config import approval_context, get_logger

from .orchestrator import WorkflowOrchestrator
from .repositories.base import DelegationRepository, Directory, WorkflowRepository
from .schemas import (
    ApprovalEngineConfig,
    ApprovalInstance,
    ApprovalMode,
    ApproverVote,
    DecisionAction,
    DecisionOutcome,
    DecisionResult,
    DocumentType,
    InstanceDecision,
    LevelDecision,
    PendingApproval,
    Workflow,
    WorkflowStatus,
    utcnow,
)
from .state_machine import ApprovalStateMachine

logger = get_logger(__name__)


class DecisionProcessor:
    """Records level decisions and drives the resulting workflow transitions"""

    def __init__(
        self,
        workflows: WorkflowRepository,
        orchestrator: WorkflowOrchestrator,
        directory: Directory,
        delegations: Optional[DelegationRepository] = None,
        config: Optional[ApprovalEngineConfig] = None,
        state_machine: Optional[ApprovalStateMachine] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.workflows = workflows
        self.orchestrator = orchestrator
        self.directory = directory
        self.delegations = delegations
        self.config = config or ApprovalEngineConfig()
        self.state_machine = state_machine or ApprovalStateMachine()
        self.clock = clock

    # ==================== Decisions ====================

    def process_decision(
        self,
        workflow_id: str,
        approver_id: str,
        decision: Union[DecisionAction, str],
        comment: Optional[str] = None,
    ) -> DecisionResult:
        """
        Apply one approver's decision to the workflow's current level.

        Args:
            workflow_id: Workflow being decided
            approver_id: User submitting the decision
            decision: APPROVED or REJECTED
            comment: Optional free-text justification

        Returns:
            DecisionResult; ``success=False`` carries the reason the call was
            refused and leaves the workflow untouched
        """
        action = DecisionAction(decision)
        with approval_context(workflow_id=workflow_id, approver_id=approver_id):
            return self._process(workflow_id, approver_id, action, comment)

    def _process(
        self,
        workflow_id: str,
        approver_id: str,
        action: DecisionAction,
        comment: Optional[str],
    ) -> DecisionResult:
        log = logger.bind(decision=action.value)

        workflow = self.workflows.get_workflow(workflow_id)
        if workflow is None:
            log.warning("decision_refused", reason=DecisionOutcome.NOT_FOUND.value)
            return DecisionResult.rejected_call(DecisionOutcome.NOT_FOUND)

        instance = None if workflow.is_terminal else workflow.current_instance()
        if instance is None:
            log.info("decision_refused", reason=DecisionOutcome.ALREADY_DECIDED.value, status=workflow.status.value)
            return DecisionResult.rejected_call(DecisionOutcome.ALREADY_DECIDED)

        authorized, on_behalf_of = self._authorize(workflow, instance, approver_id)
        if not authorized:
            log.warning("decision_refused", reason=DecisionOutcome.UNAUTHORIZED.value, level_order=instance.level_order)
            return DecisionResult.rejected_call(DecisionOutcome.UNAUTHORIZED)

        if (
            action == DecisionAction.REJECTED
            and self.config.require_rejection_comment
            and not (comment and comment.strip())
        ):
            log.info("decision_refused", reason=DecisionOutcome.COMMENT_REQUIRED.value)
            return DecisionResult.rejected_call(DecisionOutcome.COMMENT_REQUIRED)

        self.state_machine.transition(instance.decision, action)
        decider_name = self._decider_name(instance, approver_id)

        if self.config.enforce_all_mode and instance.approval_mode == ApprovalMode.ALL:
            return self._decide_unanimous_level(
                workflow, instance, action, approver_id, decider_name, comment, on_behalf_of
            )

        next_instance, final_status = self.orchestrator.plan_follow_up(workflow, instance, action)
        decided = LevelDecision(
            workflow_id=workflow.id,
            instance_id=instance.id,
            level_order=instance.level_order,
            decision=InstanceDecision(action.value),
            decided_by_id=approver_id,
            decided_by_name=decider_name,
            on_behalf_of=on_behalf_of,
            comment=comment,
            decided_at=self.clock(),
            next_instance=next_instance,
            final_status=final_status,
        )
        if not self.workflows.decide_level(decided):
            log.info("decision_lost_race", instance_id=instance.id, level_order=instance.level_order)
            return DecisionResult.rejected_call(DecisionOutcome.ALREADY_DECIDED)

        log.info(
            "decision_recorded",
            instance_id=instance.id,
            level_order=instance.level_order,
            on_behalf_of=on_behalf_of,
        )
        return self._level_decided(workflow, decided)

    def _decide_unanimous_level(
        self,
        workflow: Workflow,
        instance: ApprovalInstance,
        action: DecisionAction,
        approver_id: str,
        decider_name: Optional[str],
        comment: Optional[str],
        on_behalf_of: Optional[str],
    ) -> DecisionResult:
        """
        Vote on an ALL level. Each potential approver votes once; a rejection
        or the last outstanding approval closes the level together with its
        workflow change.
        """
        represented = on_behalf_of or approver_id
        required = {approver.user_id for approver in instance.potential_approvers}
        log = logger.bind(instance_id=instance.id, represented=represented, decision=action.value)
        follow_up = None

        for attempt in range(self.config.vote_retries):
            if attempt:
                instance = self.workflows.get_instance(instance.id)
                if instance is None or instance.decision != InstanceDecision.PENDING:
                    return DecisionResult.rejected_call(DecisionOutcome.ALREADY_DECIDED)

            if instance.has_voted(represented):
                log.info("vote_refused", reason="already_voted")
                return DecisionResult.rejected_call(DecisionOutcome.ALREADY_DECIDED)

            vote = ApproverVote(
                user_id=approver_id,
                name=decider_name,
                decision=action,
                comment=comment,
                decided_at=self.clock(),
                on_behalf_of=on_behalf_of,
            )

            outstanding = required - (instance.approving_voters() | {represented})
            if action == DecisionAction.APPROVED and outstanding:
                if self.workflows.record_vote(instance.id, vote, instance.version):
                    log.info("vote_recorded", outstanding=len(outstanding))
                    return DecisionResult(success=True, workflow_complete=False, reason=DecisionOutcome.VOTE_RECORDED)
                log.debug("vote_version_conflict", attempt=attempt + 1)
                continue

            if follow_up is None:
                follow_up = self.orchestrator.plan_follow_up(workflow, instance, action)
            next_instance, final_status = follow_up
            decided = LevelDecision(
                workflow_id=workflow.id,
                instance_id=instance.id,
                level_order=instance.level_order,
                decision=InstanceDecision(action.value),
                decided_by_id=approver_id,
                decided_by_name=decider_name,
                on_behalf_of=on_behalf_of,
                comment=comment,
                decided_at=vote.decided_at,
                closing_vote=vote,
                expected_version=instance.version,
                next_instance=next_instance,
                final_status=final_status,
            )
            if self.workflows.decide_level(decided):
                log.info("level_closed", level_order=instance.level_order)
                return self._level_decided(workflow, decided)
            log.debug("vote_version_conflict", attempt=attempt + 1)

        log.warning("vote_not_recorded", reason="contention", attempts=self.config.vote_retries)
        return DecisionResult.rejected_call(DecisionOutcome.ALREADY_DECIDED)

    def _level_decided(self, workflow: Workflow, decided: LevelDecision) -> DecisionResult:
        self.orchestrator.level_decided(workflow, decided)
        return DecisionResult(
            success=True,
            workflow_complete=decided.closes_workflow,
            final_status=decided.final_status,
            reason=DecisionOutcome.RECORDED,
        )

    def _authorize(
        self,
        workflow: Workflow,
        instance: ApprovalInstance,
        approver_id: str,
    ) -> Tuple[bool, Optional[str]]:
        """Returns (authorized, the potential approver being represented)"""
        if instance.is_potential_approver(approver_id):
            return True, None
        if not self.config.honor_delegations or self.delegations is None:
            return False, None

        for delegation in self.delegations.list_active_for_delegate(approver_id, workflow.tenant_id, self.clock()):
            if instance.is_potential_approver(delegation.delegator_id):
                return True, delegation.delegator_id
        return False, None

    def _decider_name(self, instance: ApprovalInstance, approver_id: str) -> Optional[str]:
        approver = instance.find_approver(approver_id)
        if approver is not None and approver.name:
            return approver.name
        user = self.directory.get_user(approver_id)
        return user.name if user is not None else None

    # ==================== Cancellation ====================

    def cancel_workflow(self, workflow_id: str) -> bool:
        """
        Cancel an in-progress workflow. Pending levels become SKIPPED; decided
        levels keep their decisions.

        Returns:
            False when the workflow does not exist or is already final
        """
        with approval_context(workflow_id=workflow_id):
            workflow = self.workflows.get_workflow(workflow_id)
            if workflow is None:
                logger.warning("workflow_cancel_refused", reason="not_found")
                return False
            if not self.state_machine.can_transition_workflow(workflow.status, WorkflowStatus.CANCELLED):
                logger.info("workflow_cancel_refused", status=workflow.status.value)
                return False

            cancelled = self.workflows.cancel_workflow(workflow_id, self.clock())
            if cancelled:
                logger.info("workflow_cancelled", tenant_id=workflow.tenant_id)
            return cancelled

    # ==================== Queries ====================

    def get_workflow_status(self, workflow_id: str) -> Optional[Workflow]:
        return self.workflows.get_workflow(workflow_id)

    def get_active_workflow(
        self,
        document_type: DocumentType,
        document_id: str,
        tenant_id: Optional[str] = None,
    ) -> Optional[Workflow]:
        return self.workflows.get_active_workflow(document_type, document_id, tenant_id)

    def get_pending_approvals(self, user_id: str, tenant_id: str) -> List[PendingApproval]:
        """
        Pending levels the user can decide right now, oldest workflow first.

        With delegation-aware authorization, levels waiting on users who
        delegated to *user_id* are included and tagged with ``on_behalf_of``.
        """
        represented: Dict[str, Optional[str]] = {user_id: None}
        if self.config.honor_delegations and self.delegations is not None:
            for delegation in self.delegations.list_active_for_delegate(user_id, tenant_id, self.clock()):
                represented.setdefault(delegation.delegator_id, delegation.delegator_id)

        pending: List[PendingApproval] = []
        for workflow in self.workflows.list_in_progress(tenant_id):
            instance = workflow.current_instance()
            if instance is None:
                continue
            for candidate, on_behalf_of in represented.items():
                if not instance.is_potential_approver(candidate):
                    continue
                if (
                    self.config.enforce_all_mode
                    and instance.approval_mode == ApprovalMode.ALL
                    and instance.has_voted(candidate)
                ):
                    continue
                pending.append(
                    PendingApproval(
                        workflow=workflow,
                        approval=instance,
                        document=self.orchestrator.documents.get_summary(
                            workflow.document_type, workflow.document_id
                        ),
                        on_behalf_of=on_behalf_of,
                    )
                )
                break
        return pending
