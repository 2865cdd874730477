"""
Database models for the approval engine.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

_IN_PROGRESS = text("status = 'IN_PROGRESS'")


class ApprovalRule(Base):
    """
    Tenant-defined policy selecting an approval chain.
    Written by tenant administrators only; the engine reads it.
    """
    __tablename__ = "approval_rules"

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    document_type = Column(String(40), nullable=False)
    purchase_type = Column(String(40), nullable=True)
    min_amount = Column(Numeric(18, 2), nullable=True)
    max_amount = Column(Numeric(18, 2), nullable=True)
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    levels = relationship(
        "ApprovalLevel",
        back_populates="rule",
        cascade="all, delete-orphan",
        order_by="ApprovalLevel.level_order",
    )

    __table_args__ = (
        CheckConstraint(
            "min_amount IS NULL OR max_amount IS NULL OR min_amount <= max_amount",
            name="valid_amount_range",
        ),
        Index("idx_approval_rules_tenant_priority", "tenant_id", "priority"),
    )


class ApprovalLevel(Base):
    __tablename__ = "approval_levels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(String(64), ForeignKey("approval_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    level_order = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    approval_mode = Column(String(10), nullable=False, default="ANY")
    level_type = Column(String(20), nullable=False, default="GENERAL")

    rule = relationship("ApprovalRule", back_populates="levels")
    approvers = relationship(
        "ApprovalLevelApprover",
        back_populates="level",
        cascade="all, delete-orphan",
        order_by="ApprovalLevelApprover.id",
    )

    __table_args__ = (
        CheckConstraint("level_order >= 1", name="positive_level_order"),
        CheckConstraint("approval_mode IN ('ANY', 'ALL')", name="valid_approval_mode"),
        CheckConstraint("level_type IN ('GENERAL', 'SPECIFICATIONS')", name="valid_level_type"),
        Index("idx_approval_level_order_unique", "rule_id", "level_order", unique=True),
    )


class ApprovalLevelApprover(Base):
    __tablename__ = "approval_level_approvers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    level_id = Column(Integer, ForeignKey("approval_levels.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(255), nullable=True)
    role = Column(String(100), nullable=True)

    level = relationship("ApprovalLevel", back_populates="approvers")

    __table_args__ = (
        CheckConstraint(
            "(user_id IS NOT NULL AND role IS NULL) OR (user_id IS NULL AND role IS NOT NULL)",
            name="user_or_role",
        ),
    )


class ApprovalWorkflow(Base):
    """
    A rule applied to one document. *level_plan* freezes the filtered level
    list at start so later rule edits never reach an in-flight workflow.
    """
    __tablename__ = "approval_workflows"

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    approval_rule_id = Column(String(64), nullable=False, index=True)
    document_type = Column(String(40), nullable=False)
    document_id = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="IN_PROGRESS", index=True)
    current_level = Column(Integer, nullable=False)
    initiated_by = Column(String(255), nullable=False)
    requires_spec_approval = Column(Boolean, nullable=False, default=False)
    level_plan = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    final_decision = Column(String(20), nullable=True)
    final_comment = Column(Text, nullable=True)

    approvals = relationship(
        "ApprovalInstance",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="ApprovalInstance.level_order",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('IN_PROGRESS', 'APPROVED', 'REJECTED', 'CANCELLED')",
            name="valid_workflow_status",
        ),
        Index(
            "uq_active_workflow_per_document",
            "tenant_id",
            "document_type",
            "document_id",
            unique=True,
            postgresql_where=_IN_PROGRESS,
            sqlite_where=_IN_PROGRESS,
        ),
        Index("idx_approval_workflows_document", "document_type", "document_id"),
    )


class ApprovalInstance(Base):
    """One level's decision record; *potential_approvers* is a frozen snapshot."""
    __tablename__ = "approval_instances"

    id = Column(String(64), primary_key=True)
    workflow_id = Column(String(64), ForeignKey("approval_workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    level_order = Column(Integer, nullable=False)
    level_name = Column(String(255), nullable=False)
    level_type = Column(String(20), nullable=False, default="GENERAL")
    approval_mode = Column(String(10), nullable=False, default="ANY")
    potential_approvers = Column(JSON, nullable=False, default=list)
    decision = Column(String(20), nullable=False, default="PENDING", index=True)
    decided_by_id = Column(String(255), nullable=True)
    decided_by_name = Column(String(255), nullable=True)
    on_behalf_of = Column(String(255), nullable=True)
    comment = Column(Text, nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    votes = Column(JSON, nullable=False, default=list)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    workflow = relationship("ApprovalWorkflow", back_populates="approvals")

    __table_args__ = (
        CheckConstraint(
            "decision IN ('PENDING', 'APPROVED', 'REJECTED', 'SKIPPED')",
            name="valid_instance_decision",
        ),
        Index("idx_approval_instance_level", "workflow_id", "level_order", unique=True),
    )


class ApprovalDelegation(Base):
    __tablename__ = "approval_delegations"

    id = Column(String(64), primary_key=True)
    delegator_id = Column(String(255), nullable=False)
    delegator_name = Column(String(255), nullable=False, default="")
    delegate_id = Column(String(255), nullable=False, index=True)
    delegate_name = Column(String(255), nullable=False, default="")
    tenant_id = Column(String(255), nullable=False, index=True)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    reason = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("end_date > start_date", name="valid_delegation_period"),
        CheckConstraint("delegator_id <> delegate_id", name="no_self_delegation"),
        Index("idx_delegations_delegator_tenant", "delegator_id", "tenant_id"),
    )
