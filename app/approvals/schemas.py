"""
Approval Workflow Schemas

Pydantic models for approval rules, running workflows, decisions and
delegations. These are the values the engine passes between its components
and returns to callers.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def new_id() -> str:
    """Generate an opaque identifier for engine-created records"""
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DocumentType(str, Enum):
    """Document types that can be routed through an approval chain"""
    PURCHASE_REQUEST = "PURCHASE_REQUEST"
    PURCHASE_ORDER = "PURCHASE_ORDER"


class PurchaseType(str, Enum):
    """Purchase channel used to narrow rule selection"""
    DIRECT = "DIRECT"
    WITH_QUOTE = "WITH_QUOTE"
    FRAMEWORK_AGREEMENT = "FRAMEWORK_AGREEMENT"


class ApprovalMode(str, Enum):
    """How many potential approvers must decide a level"""
    ANY = "ANY"
    ALL = "ALL"


class ApprovalLevelType(str, Enum):
    """Level category; SPECIFICATIONS levels only run on request"""
    GENERAL = "GENERAL"
    SPECIFICATIONS = "SPECIFICATIONS"


class WorkflowStatus(str, Enum):
    """Lifecycle states of a workflow"""
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class InstanceDecision(str, Enum):
    """Decision states of a single level instance"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SKIPPED = "SKIPPED"


class DecisionAction(str, Enum):
    """Decisions an approver can submit"""
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class DecisionOutcome(str, Enum):
    """Why a decision call ended the way it did"""
    RECORDED = "RECORDED"
    VOTE_RECORDED = "VOTE_RECORDED"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_DECIDED = "ALREADY_DECIDED"
    UNAUTHORIZED = "UNAUTHORIZED"
    COMMENT_REQUIRED = "COMMENT_REQUIRED"


# ===========================
# Rule definitions
# ===========================

class ApproverSpec(BaseModel):
    """A level approver: either one specific user or every holder of a role"""
    model_config = ConfigDict(from_attributes=True, str_strip_whitespace=True)

    user_id: Optional[str] = None
    role: Optional[str] = None

    @model_validator(mode="after")
    def validate_target(self):
        if bool(self.user_id) == bool(self.role):
            raise ValueError("An approver must name exactly one of user_id or role")
        return self


class ApprovalLevel(BaseModel):
    """One ordered stage of a rule's approval chain"""
    model_config = ConfigDict(from_attributes=True)

    level_order: int = Field(..., ge=1)
    name: str = Field(..., min_length=1, max_length=255)
    mode: ApprovalMode = ApprovalMode.ANY
    level_type: ApprovalLevelType = ApprovalLevelType.GENERAL
    approvers: List[ApproverSpec] = Field(default_factory=list)


class ApprovalRule(BaseModel):
    """Tenant policy selecting an approval chain by amount and purchase type"""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str = Field(..., min_length=1, max_length=255)
    document_type: DocumentType = DocumentType.PURCHASE_REQUEST
    purchase_type: Optional[PurchaseType] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    priority: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    levels: List[ApprovalLevel] = Field(default_factory=list)

    @field_validator("levels")
    @classmethod
    def validate_level_orders(cls, v: List[ApprovalLevel]) -> List[ApprovalLevel]:
        """Levels must be numbered 1..n without gaps"""
        ordered = sorted(v, key=lambda level: level.level_order)
        expected = list(range(1, len(ordered) + 1))
        if [level.level_order for level in ordered] != expected:
            raise ValueError("Level orders must be contiguous and start at 1")
        return ordered

    @model_validator(mode="after")
    def validate_amount_range(self):
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.min_amount > self.max_amount
        ):
            raise ValueError("min_amount cannot be greater than max_amount")
        return self

    def covers(self, amount: Decimal, purchase_type: Optional[PurchaseType]) -> bool:
        """Check whether this rule applies to the given amount and purchase type"""
        if self.purchase_type is not None and self.purchase_type != purchase_type:
            return False
        if self.min_amount is not None and amount < self.min_amount:
            return False
        if self.max_amount is not None and amount > self.max_amount:
            return False
        return True


class LevelDefinition(BaseModel):
    """Administrator input for one level; orders are assigned on save"""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=255)
    mode: ApprovalMode = ApprovalMode.ANY
    level_type: ApprovalLevelType = ApprovalLevelType.GENERAL
    approvers: List[ApproverSpec] = Field(default_factory=list)


class RuleDefinition(BaseModel):
    """Administrator input for creating or replacing a rule"""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=255)
    document_type: DocumentType = DocumentType.PURCHASE_REQUEST
    purchase_type: Optional[PurchaseType] = None
    min_amount: Optional[Decimal] = Field(None, ge=0)
    max_amount: Optional[Decimal] = Field(None, ge=0)
    priority: int = 0
    is_active: bool = True
    levels: List[LevelDefinition] = Field(default_factory=list)


# ===========================
# Running workflows
# ===========================

class PotentialApprover(BaseModel):
    """Frozen identity of a user allowed to decide an instance"""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    user_id: str
    name: str = ""
    email: str = ""
    role: Optional[str] = None


class ApproverVote(BaseModel):
    """One approver's vote on a unanimity (ALL) level"""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    user_id: str
    name: Optional[str] = None
    decision: DecisionAction
    comment: Optional[str] = None
    decided_at: datetime = Field(default_factory=utcnow)
    on_behalf_of: Optional[str] = None


class ApprovalInstance(BaseModel):
    """The decision record of one level within a workflow"""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    workflow_id: str
    level_order: int = Field(..., ge=1)
    level_name: str
    level_type: ApprovalLevelType = ApprovalLevelType.GENERAL
    approval_mode: ApprovalMode = ApprovalMode.ANY
    potential_approvers: List[PotentialApprover] = Field(default_factory=list)
    decision: InstanceDecision = InstanceDecision.PENDING
    decided_by_id: Optional[str] = None
    decided_by_name: Optional[str] = None
    on_behalf_of: Optional[str] = None
    comment: Optional[str] = None
    decided_at: Optional[datetime] = None
    votes: List[ApproverVote] = Field(default_factory=list)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    def find_approver(self, user_id: str) -> Optional[PotentialApprover]:
        for approver in self.potential_approvers:
            if approver.user_id == user_id:
                return approver
        return None

    def is_potential_approver(self, user_id: str) -> bool:
        return self.find_approver(user_id) is not None

    def has_voted(self, user_id: str) -> bool:
        """Whether the user (or someone on their behalf) already voted"""
        return any(
            vote.user_id == user_id or vote.on_behalf_of == user_id
            for vote in self.votes
        )

    def approving_voters(self) -> set:
        """Potential approvers whose approval has been recorded"""
        voters = set()
        for vote in self.votes:
            if vote.decision == DecisionAction.APPROVED:
                voters.add(vote.on_behalf_of or vote.user_id)
        return voters


class Workflow(BaseModel):
    """A rule applied to one specific document"""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    approval_rule_id: str
    document_type: DocumentType
    document_id: str
    status: WorkflowStatus = WorkflowStatus.IN_PROGRESS
    current_level: int = Field(..., ge=1)
    initiated_by: str
    requires_spec_approval: bool = False
    level_plan: List[ApprovalLevel] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    final_decision: Optional[InstanceDecision] = None
    final_comment: Optional[str] = None
    approvals: List[ApprovalInstance] = Field(default_factory=list)

    def current_instance(self) -> Optional[ApprovalInstance]:
        """The PENDING instance at the current level, if any"""
        for instance in self.approvals:
            if (
                instance.level_order == self.current_level
                and instance.decision == InstanceDecision.PENDING
            ):
                return instance
        return None

    def next_level(self, after_order: int) -> Optional[ApprovalLevel]:
        """First planned level with an order strictly greater than *after_order*"""
        for level in sorted(self.level_plan, key=lambda lvl: lvl.level_order):
            if level.level_order > after_order:
                return level
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status != WorkflowStatus.IN_PROGRESS


class LevelDecision(BaseModel):
    """
    A level decision together with the workflow change it causes.

    Repositories apply it as one unit: the instance decision, the closing
    vote if any, and either the next instance or the final workflow status.
    """
    workflow_id: str
    instance_id: str
    level_order: int = Field(..., ge=1)
    decision: InstanceDecision
    decided_by_id: str
    decided_by_name: Optional[str] = None
    on_behalf_of: Optional[str] = None
    comment: Optional[str] = None
    decided_at: datetime = Field(default_factory=utcnow)
    closing_vote: Optional[ApproverVote] = None
    expected_version: Optional[int] = None
    next_instance: Optional[ApprovalInstance] = None
    final_status: Optional[WorkflowStatus] = None

    @model_validator(mode="after")
    def validate_follow_up(self):
        if (self.next_instance is None) == (self.final_status is None):
            raise ValueError("Exactly one of next_instance or final_status must be set")
        if self.decision == InstanceDecision.REJECTED and self.final_status != WorkflowStatus.REJECTED:
            raise ValueError("A rejected level closes the workflow as REJECTED")
        return self

    @property
    def closes_workflow(self) -> bool:
        return self.final_status is not None


class Delegation(BaseModel):
    """Time-bounded grant for one user to stand in for another"""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    delegator_id: str
    delegator_name: str = ""
    delegate_id: str
    delegate_name: str = ""
    tenant_id: str
    start_date: datetime
    end_date: datetime
    reason: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("start_date", "end_date")
    @classmethod
    def validate_timezone(cls, v: datetime) -> datetime:
        return as_utc(v)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start_date <= as_utc(end) and self.end_date >= as_utc(start)

    def covers(self, moment: datetime) -> bool:
        return self.is_active and self.start_date <= as_utc(moment) <= self.end_date


# ===========================
# Collaborator values
# ===========================

class DirectoryUser(BaseModel):
    """User identity as returned by the directory service"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str = ""
    email: str = ""


class DocumentSummary(BaseModel):
    """What the engine knows about the document under approval"""
    model_config = ConfigDict(from_attributes=True)

    document_type: DocumentType
    document_id: str
    title: Optional[str] = None
    amount: Optional[Decimal] = None
    purchase_type: Optional[PurchaseType] = None
    requester_name: Optional[str] = None
    requester_email: Optional[str] = None
    status: Optional[str] = None


# ===========================
# Results
# ===========================

class DecisionResult(BaseModel):
    """Outcome of a single decision submission"""
    success: bool
    workflow_complete: bool = False
    final_status: Optional[WorkflowStatus] = None
    reason: Optional[DecisionOutcome] = None

    @classmethod
    def rejected_call(cls, reason: DecisionOutcome) -> "DecisionResult":
        return cls(success=False, workflow_complete=False, reason=reason)


class PendingApproval(BaseModel):
    """One entry of an approver's inbox"""
    workflow: Workflow
    approval: ApprovalInstance
    document: Optional[DocumentSummary] = None
    on_behalf_of: Optional[str] = None


# ===========================
# Configuration Models
# ===========================

class ApprovalEngineConfig(BaseModel):
    """Behaviour switches for the approval engine"""
    enforce_all_mode: bool = Field(default=False)
    honor_delegations: bool = Field(default=False)
    require_rejection_comment: bool = Field(default=False)
    notifications_enabled: bool = Field(default=True)
    notifications_async: bool = Field(default=True)
    notification_workers: int = Field(default=4, ge=1, le=64)
    vote_retries: int = Field(default=5, ge=1, le=50)
    delegate_roles: List[str] = Field(default_factory=lambda: [
        "CLIENT_APPROVER",
        "CLIENT_ADMIN",
        "SUPER_ADMIN",
        "PURCHASE_APPROVER",
        "PURCHASE_ADMIN",
    ])

    @classmethod
    def from_settings(cls, settings) -> "ApprovalEngineConfig":
        return cls(
            enforce_all_mode=settings.approvals_enforce_all_mode,
            honor_delegations=settings.approvals_honor_delegations,
            require_rejection_comment=settings.approvals_require_rejection_comment,
            notifications_enabled=settings.approvals_notifications_enabled,
            notifications_async=settings.approvals_notifications_async,
            notification_workers=settings.approvals_notification_workers,
            vote_retries=settings.approvals_vote_retries,
            delegate_roles=settings.get_delegate_roles(),
        )
