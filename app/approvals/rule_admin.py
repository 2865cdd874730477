"""
Rule administration.

CRUD for tenant approval rules. Level orders are always assigned from the
position of the level in the submitted definition, so a saved rule's chain
is numbered 1..n. Running workflows keep their own copy of the levels and
are unaffected by edits here.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from app.core.logging_config import get_logger

from .exceptions import RuleNotFoundError, RuleValidationError
from .repositories.base import RuleRepository
from .schemas import ApprovalLevel, ApprovalRule, RuleDefinition, utcnow

logger = get_logger(__name__)

DefinitionInput = Union[RuleDefinition, Dict[str, Any]]


class RuleAdministration:
    """Create, edit and remove approval rules"""

    def __init__(self, rules: RuleRepository, clock: Callable[[], datetime] = utcnow):
        self.rules = rules
        self.clock = clock

    def _parse(self, definition: DefinitionInput) -> RuleDefinition:
        if isinstance(definition, RuleDefinition):
            return definition
        try:
            return RuleDefinition.model_validate(definition)
        except ValidationError as e:
            raise RuleValidationError("Invalid rule definition", {"errors": e.errors(include_url=False)}) from e

    def _build(
        self,
        tenant_id: str,
        definition: DefinitionInput,
        rule_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> ApprovalRule:
        definition = self._parse(definition)

        if not definition.levels:
            raise RuleValidationError("At least one approval level is required", {"name": definition.name})
        for index, level in enumerate(definition.levels):
            if not level.approvers:
                raise RuleValidationError(
                    f"Level '{level.name}' needs at least one approver",
                    {"level_order": index + 1},
                )

        levels = [
            ApprovalLevel(
                level_order=index + 1,
                name=level.name,
                mode=level.mode,
                level_type=level.level_type,
                approvers=[approver.model_copy() for approver in level.approvers],
            )
            for index, level in enumerate(definition.levels)
        ]

        fields = dict(
            tenant_id=tenant_id,
            name=definition.name,
            document_type=definition.document_type,
            purchase_type=definition.purchase_type,
            min_amount=definition.min_amount,
            max_amount=definition.max_amount,
            priority=definition.priority,
            is_active=definition.is_active,
            created_at=created_at or self.clock(),
            levels=levels,
        )
        if rule_id is not None:
            fields["id"] = rule_id

        try:
            return ApprovalRule(**fields)
        except ValidationError as e:
            raise RuleValidationError("Invalid rule definition", {"errors": e.errors(include_url=False)}) from e

    def _require(self, rule_id: str) -> ApprovalRule:
        rule = self.rules.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def create_rule(self, tenant_id: str, definition: DefinitionInput) -> ApprovalRule:
        rule = self.rules.save_rule(self._build(tenant_id, definition))
        logger.info("approval_rule_created", rule_id=rule.id, tenant_id=tenant_id, levels=len(rule.levels))
        return rule

    def update_rule(self, rule_id: str, definition: DefinitionInput) -> ApprovalRule:
        """Replace a rule's settings and levels; tenant and creation time are kept"""
        existing = self._require(rule_id)
        rule = self._build(existing.tenant_id, definition, rule_id=existing.id, created_at=existing.created_at)
        rule = self.rules.save_rule(rule)
        logger.info("approval_rule_updated", rule_id=rule_id, tenant_id=rule.tenant_id)
        return rule

    def set_rule_active(self, rule_id: str, is_active: bool) -> ApprovalRule:
        rule = self._require(rule_id)
        rule.is_active = is_active
        rule = self.rules.save_rule(rule)
        logger.info("approval_rule_toggled", rule_id=rule_id, is_active=is_active)
        return rule

    def delete_rule(self, rule_id: str) -> None:
        if not self.rules.delete_rule(rule_id):
            raise RuleNotFoundError(rule_id)
        logger.info("approval_rule_deleted", rule_id=rule_id)

    def list_rules(self, tenant_id: str) -> List[ApprovalRule]:
        return self.rules.list_rules(tenant_id)

    def get_rule(self, rule_id: str) -> Optional[ApprovalRule]:
        return self.rules.get_rule(rule_id)
