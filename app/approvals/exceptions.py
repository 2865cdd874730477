"""
Approval engine exceptions.

Expected business outcomes (no applicable rule, unauthorized decider, level
already decided) are returned as values; these exceptions cover the
conditions callers must handle explicitly.
"""

from typing import Any, Dict, Optional


class ApprovalError(Exception):
    """Base exception for approval engine errors."""

    code = "approval_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            **self.details,
        }


class StateTransitionError(ApprovalError):
    """Raised for invalid state transitions"""

    code = "invalid_state_transition"


class RuleValidationError(ApprovalError):
    """Raised when a rule definition cannot be saved."""

    code = "invalid_rule"


class RuleNotFoundError(ApprovalError):
    """Raised when an administered rule does not exist."""

    code = "rule_not_found"

    def __init__(self, rule_id: str):
        super().__init__(f"Approval rule {rule_id} not found", {"rule_id": rule_id})
        self.rule_id = rule_id


class WorkflowAlreadyActiveError(ApprovalError):
    """
    Raised by a workflow repository when a document already has a workflow
    in progress.
    """

    code = "workflow_already_active"

    def __init__(self, document_type: str, document_id: str, workflow_id: Optional[str] = None):
        super().__init__(
            f"{document_type} {document_id} already has a workflow in progress",
            {"document_type": document_type, "document_id": document_id, "workflow_id": workflow_id},
        )
        self.document_type = document_type
        self.document_id = document_id
        self.workflow_id = workflow_id


class DelegationError(ApprovalError):
    """Base exception for delegation errors."""

    code = "delegation_error"


class DelegationConflictError(DelegationError):
    """
    Raised when a new delegation overlaps an active one for the same
    delegator and tenant.
    """

    code = "delegation_conflict"

    def __init__(self, delegator_id: str, tenant_id: str, existing_id: str):
        super().__init__(
            "An active delegation already exists for this period",
            {"delegator_id": delegator_id, "tenant_id": tenant_id, "existing_delegation_id": existing_id},
        )
        self.existing_id = existing_id


class DelegationValidationError(DelegationError):
    """Raised for malformed delegation requests."""

    code = "invalid_delegation"


class DelegationNotFoundError(DelegationError):
    """Raised when a delegation does not exist."""

    code = "delegation_not_found"

    def __init__(self, delegation_id: str):
        super().__init__(f"Delegation {delegation_id} not found", {"delegation_id": delegation_id})
        self.delegation_id = delegation_id


class DelegationPermissionError(DelegationError):
    """Raised when someone other than the delegator tries to cancel a delegation."""

    code = "delegation_forbidden"
