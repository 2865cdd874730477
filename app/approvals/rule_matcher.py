"""
Rule selection.

Picks the single approval rule that governs a document. Rules are walked by
priority, highest first; equal priorities fall back to the older rule, then
the rule id, so the outcome never depends on storage order.
"""

from decimal import Decimal, InvalidOperation
from typing import List, Optional, Union

from app.core.logging_config import get_logger

from .repositories.base import RuleRepository
from .schemas import ApprovalRule, DocumentType, PurchaseType

logger = get_logger(__name__)

Amount = Union[Decimal, int, float, str]


def to_amount(amount: Amount) -> Decimal:
    """Normalise an amount to a non-negative Decimal"""
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount: {amount!r}") from None
    if not value.is_finite() or value < 0:
        raise ValueError(f"Amount must be a non-negative number, got {amount!r}")
    return value


def order_rules(rules: List[ApprovalRule]) -> List[ApprovalRule]:
    """Priority descending, then creation time ascending, then id"""
    return sorted(rules, key=lambda rule: (-rule.priority, rule.created_at, rule.id))


class RuleMatcher:
    """Selects the applicable rule for a tenant, amount and purchase type"""

    def __init__(self, rules: RuleRepository):
        self.rules = rules

    def find_applicable_rule(
        self,
        tenant_id: str,
        document_type: DocumentType,
        amount: Amount,
        purchase_type: Optional[PurchaseType],
    ) -> Optional[ApprovalRule]:
        """
        Find the first active rule covering the amount and purchase type.

        Args:
            tenant_id: Tenant whose rules are considered
            document_type: Type of document being approved
            amount: Document amount (non-negative)
            purchase_type: Purchase channel of the document

        Returns:
            The matching rule, or None when no rule applies
        """
        value = to_amount(amount)
        candidates = order_rules(self.rules.list_active_rules(tenant_id, document_type))

        for index, rule in enumerate(candidates):
            if not rule.covers(value, purchase_type):
                continue

            tied = [
                other.id for other in candidates[index + 1:]
                if other.priority == rule.priority and other.covers(value, purchase_type)
            ]
            if tied:
                logger.warning(
                    "approval_rule_priority_tie",
                    tenant_id=tenant_id,
                    selected_rule_id=rule.id,
                    tied_rule_ids=tied,
                    priority=rule.priority,
                )
            logger.info(
                "approval_rule_matched",
                tenant_id=tenant_id,
                document_type=document_type.value,
                rule_id=rule.id,
                rule_name=rule.name,
            )
            return rule

        logger.warning(
            "approval_rule_not_found",
            tenant_id=tenant_id,
            document_type=document_type.value,
            amount=str(value),
            purchase_type=purchase_type.value if purchase_type else None,
        )
        return None
