"""Builders shared by the approval engine tests"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from app.approvals.schemas import (
    ApprovalLevel,
    ApprovalLevelType,
    ApprovalMode,
    ApprovalRule,
    ApproverSpec,
    DocumentType,
    PurchaseType,
)

TENANT = "acme"
OTHER_TENANT = "globex"


def make_level(
    order: int,
    name: str,
    users: Optional[List[str]] = None,
    roles: Optional[List[str]] = None,
    mode: ApprovalMode = ApprovalMode.ANY,
    level_type: ApprovalLevelType = ApprovalLevelType.GENERAL,
) -> ApprovalLevel:
    approvers = [ApproverSpec(user_id=user) for user in users or []]
    approvers += [ApproverSpec(role=role) for role in roles or []]
    return ApprovalLevel(level_order=order, name=name, mode=mode, level_type=level_type, approvers=approvers)


def make_rule(
    name: str,
    levels: List[ApprovalLevel],
    tenant_id: str = TENANT,
    min_amount=None,
    max_amount=None,
    priority: int = 0,
    purchase_type: Optional[PurchaseType] = None,
    document_type: DocumentType = DocumentType.PURCHASE_REQUEST,
    created_at: Optional[datetime] = None,
    is_active: bool = True,
) -> ApprovalRule:
    fields = dict(
        tenant_id=tenant_id,
        name=name,
        document_type=document_type,
        purchase_type=purchase_type,
        min_amount=Decimal(str(min_amount)) if min_amount is not None else None,
        max_amount=Decimal(str(max_amount)) if max_amount is not None else None,
        priority=priority,
        is_active=is_active,
        levels=levels,
    )
    if created_at is not None:
        fields["created_at"] = created_at
    return ApprovalRule(**fields)


def start_pr1(engine, requires_spec_approval: bool = False, amount="500"):
    return engine.start_workflow(
        TENANT,
        DocumentType.PURCHASE_REQUEST,
        "pr-1",
        Decimal(amount),
        PurchaseType.DIRECT,
        requires_spec_approval,
        "erin",
    )
