"""
Tests for the approval state machine
"""

import pytest

from app.approvals.exceptions import StateTransitionError
from app.approvals.schemas import DecisionAction, InstanceDecision, WorkflowStatus
from app.approvals.state_machine import ApprovalStateMachine, final_status_for


class TestApprovalStateMachine:
    """Instance and workflow transitions"""

    @pytest.fixture
    def state_machine(self):
        return ApprovalStateMachine()

    def test_valid_instance_transitions(self, state_machine):
        assert state_machine.transition(InstanceDecision.PENDING, DecisionAction.APPROVED) == InstanceDecision.APPROVED
        assert state_machine.transition(InstanceDecision.PENDING, DecisionAction.REJECTED) == InstanceDecision.REJECTED

    def test_decided_instances_cannot_change(self, state_machine):
        for state in (InstanceDecision.APPROVED, InstanceDecision.REJECTED, InstanceDecision.SKIPPED):
            for action in DecisionAction:
                with pytest.raises(StateTransitionError):
                    state_machine.transition(state, action)

    def test_error_carries_details(self, state_machine):
        with pytest.raises(StateTransitionError) as exc_info:
            state_machine.transition(InstanceDecision.APPROVED, DecisionAction.REJECTED)

        payload = exc_info.value.to_dict()
        assert payload["error"] == "invalid_state_transition"
        assert payload["state"] == "APPROVED"
        assert payload["action"] == "REJECTED"

    def test_workflow_transitions(self, state_machine):
        for target in (WorkflowStatus.APPROVED, WorkflowStatus.REJECTED, WorkflowStatus.CANCELLED):
            assert state_machine.transition_workflow(WorkflowStatus.IN_PROGRESS, target) == target
            assert state_machine.can_transition_workflow(WorkflowStatus.IN_PROGRESS, target)

    def test_terminal_workflows_are_final(self, state_machine):
        for status in (WorkflowStatus.APPROVED, WorkflowStatus.REJECTED, WorkflowStatus.CANCELLED):
            assert not state_machine.can_transition_workflow(status, WorkflowStatus.CANCELLED)
            with pytest.raises(StateTransitionError):
                state_machine.transition_workflow(status, WorkflowStatus.APPROVED)

    def test_final_status_for(self):
        assert final_status_for(DecisionAction.APPROVED) == WorkflowStatus.APPROVED
        assert final_status_for(DecisionAction.REJECTED) == WorkflowStatus.REJECTED
