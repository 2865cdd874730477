"""
Approval State Machine

State machine implementation for level decisions and workflow status, with
validation of the transitions the engine is allowed to make.
"""

from typing import Dict, List
import logging

from .exceptions import StateTransitionError
from .schemas import DecisionAction, InstanceDecision, WorkflowStatus

logger = logging.getLogger(__name__)


class ApprovalStateMachine:
    """
    State machine for approval instances and the workflows that own them.

    Instance transitions are keyed by the submitted decision; SKIPPED is only
    reachable through cancellation. Workflow transitions are keyed by the
    target status.
    """

    def __init__(self):
        """Initialize the state machine with valid transitions"""
        self._instance_transitions: Dict[InstanceDecision, Dict[DecisionAction, InstanceDecision]] = {
            InstanceDecision.PENDING: {
                DecisionAction.APPROVED: InstanceDecision.APPROVED,
                DecisionAction.REJECTED: InstanceDecision.REJECTED,
            },
            # Final states - no transitions allowed
            InstanceDecision.APPROVED: {},
            InstanceDecision.REJECTED: {},
            InstanceDecision.SKIPPED: {},
        }

        self._workflow_transitions: Dict[WorkflowStatus, List[WorkflowStatus]] = {
            WorkflowStatus.IN_PROGRESS: [
                WorkflowStatus.APPROVED,
                WorkflowStatus.REJECTED,
                WorkflowStatus.CANCELLED,
            ],
            WorkflowStatus.APPROVED: [],
            WorkflowStatus.REJECTED: [],
            WorkflowStatus.CANCELLED: [],
        }

    def transition(self, current: InstanceDecision, action: DecisionAction) -> InstanceDecision:
        """
        Execute an instance decision transition.

        Args:
            current: Current instance decision
            action: Submitted decision

        Returns:
            New instance decision

        Raises:
            StateTransitionError: If transition is invalid
        """
        allowed = self._instance_transitions.get(current)
        if allowed is None:
            raise StateTransitionError(f"Invalid current state: {current}")

        if action not in allowed:
            raise StateTransitionError(
                f"Cannot transition from {current.value} with action {action}. "
                f"Allowed actions: {[a.value for a in allowed]}",
                {"state": current.value, "action": getattr(action, "value", str(action))},
            )

        new_state = allowed[action]
        logger.debug(f"Instance transition: {current.value} --({action.value})--> {new_state.value}")
        return new_state

    def transition_workflow(self, current: WorkflowStatus, target: WorkflowStatus) -> WorkflowStatus:
        """
        Validate a workflow status change.

        Raises:
            StateTransitionError: If the workflow is already terminal or the
                target is not reachable
        """
        allowed = self._workflow_transitions.get(current, [])
        if target not in allowed:
            raise StateTransitionError(
                f"Cannot move workflow from {current.value} to {target.value}",
                {"status": current.value, "target": target.value},
            )
        logger.debug(f"Workflow transition: {current.value} --> {target.value}")
        return target

    def can_transition_workflow(self, current: WorkflowStatus, target: WorkflowStatus) -> bool:
        return target in self._workflow_transitions.get(current, [])


def final_status_for(action: DecisionAction) -> WorkflowStatus:
    """Workflow status produced when *action* ends the workflow"""
    if action == DecisionAction.REJECTED:
        return WorkflowStatus.REJECTED
    return WorkflowStatus.APPROVED
