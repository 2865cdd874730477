"""
Procurement approval engine.

Routes purchase requests and purchase orders through tenant-configured,
multi-level approval chains.
"""

from .decision_processor import DecisionProcessor
from .delegation import DelegationManager
from .engine import ApprovalEngine, create_approval_engine
from .exceptions import (
    ApprovalError,
    DelegationConflictError,
    DelegationError,
    DelegationNotFoundError,
    DelegationPermissionError,
    DelegationValidationError,
    RuleNotFoundError,
    RuleValidationError,
    StateTransitionError,
    WorkflowAlreadyActiveError,
)
from .orchestrator import WorkflowOrchestrator
from .rule_admin import RuleAdministration
from .rule_matcher import RuleMatcher
from .schemas import (
    ApprovalEngineConfig,
    ApprovalInstance,
    ApprovalLevel,
    ApprovalLevelType,
    ApprovalMode,
    ApprovalRule,
    ApproverSpec,
    DecisionAction,
    DecisionOutcome,
    DecisionResult,
    Delegation,
    DocumentType,
    InstanceDecision,
    LevelDefinition,
    PendingApproval,
    PotentialApprover,
    PurchaseType,
    RuleDefinition,
    Workflow,
    WorkflowStatus,
)

__all__ = [
    "ApprovalEngine",
    "create_approval_engine",
    "DecisionProcessor",
    "DelegationManager",
    "RuleAdministration",
    "RuleMatcher",
    "WorkflowOrchestrator",
    "ApprovalError",
    "DelegationConflictError",
    "DelegationError",
    "DelegationNotFoundError",
    "DelegationPermissionError",
    "DelegationValidationError",
    "RuleNotFoundError",
    "RuleValidationError",
    "StateTransitionError",
    "WorkflowAlreadyActiveError",
    "ApprovalEngineConfig",
    "ApprovalInstance",
    "ApprovalLevel",
    "ApprovalLevelType",
    "ApprovalMode",
    "ApprovalRule",
    "ApproverSpec",
    "DecisionAction",
    "DecisionOutcome",
    "DecisionResult",
    "Delegation",
    "DocumentType",
    "InstanceDecision",
    "LevelDefinition",
    "PendingApproval",
    "PotentialApprover",
    "PurchaseType",
    "RuleDefinition",
    "Workflow",
    "WorkflowStatus",
]
