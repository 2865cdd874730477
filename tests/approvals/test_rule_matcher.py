"""
Tests for approval rule selection
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.approvals.repositories.memory import InMemoryRuleRepository
from app.approvals.rule_matcher import RuleMatcher, order_rules, to_amount
from app.approvals.schemas import DocumentType, PurchaseType

from .helpers import OTHER_TENANT, TENANT, make_level, make_rule

PR = DocumentType.PURCHASE_REQUEST


def _levels():
    return [make_level(1, "Manager", roles=["MANAGER"])]


class TestToAmount:

    def test_accepts_numbers_and_strings(self):
        assert to_amount(10) == Decimal("10")
        assert to_amount("12.50") == Decimal("12.50")
        assert to_amount(Decimal("0")) == Decimal("0")

    @pytest.mark.parametrize("value", [-1, "-0.01", "abc", "NaN", "Infinity"])
    def test_rejects_invalid_amounts(self, value):
        with pytest.raises(ValueError):
            to_amount(value)


class TestRuleMatcher:
    """Priority ordering, ranges and purchase type filters"""

    @pytest.fixture
    def rules(self):
        return [
            make_rule("Small", _levels(), min_amount=0, max_amount=1000, priority=1),
            make_rule("Large", _levels(), min_amount=1000.01, priority=1),
            make_rule("Quotes", _levels(), purchase_type=PurchaseType.WITH_QUOTE, priority=5),
            make_rule("Retired", _levels(), priority=100, is_active=False),
            make_rule("Other tenant", _levels(), tenant_id=OTHER_TENANT, priority=100),
            make_rule("Orders", _levels(), document_type=DocumentType.PURCHASE_ORDER, priority=100),
        ]

    @pytest.fixture
    def matcher(self, rules):
        return RuleMatcher(InMemoryRuleRepository(rules))

    def test_highest_priority_covering_rule_wins(self, matcher):
        rule = matcher.find_applicable_rule(TENANT, PR, Decimal("50"), PurchaseType.WITH_QUOTE)
        assert rule.name == "Quotes"

    def test_purchase_type_filter_skips_mismatched_rules(self, matcher):
        rule = matcher.find_applicable_rule(TENANT, PR, Decimal("50"), PurchaseType.DIRECT)
        assert rule.name == "Small"

    def test_bounds_are_inclusive(self, matcher):
        assert matcher.find_applicable_rule(TENANT, PR, Decimal("1000"), None).name == "Small"
        assert matcher.find_applicable_rule(TENANT, PR, Decimal("1000.01"), None).name == "Large"
        assert matcher.find_applicable_rule(TENANT, PR, Decimal("0"), None).name == "Small"

    def test_null_bounds_are_unbounded(self, matcher):
        assert matcher.find_applicable_rule(TENANT, PR, Decimal("999999999"), None).name == "Large"

    def test_inactive_and_foreign_rules_are_ignored(self, matcher):
        rule = matcher.find_applicable_rule(TENANT, PR, Decimal("10"), None)
        assert rule.name not in {"Retired", "Other tenant", "Orders"}

    def test_document_type_is_respected(self, matcher):
        rule = matcher.find_applicable_rule(TENANT, DocumentType.PURCHASE_ORDER, Decimal("10"), None)
        assert rule.name == "Orders"

    def test_no_match_returns_none(self):
        matcher = RuleMatcher(InMemoryRuleRepository([
            make_rule("Mid", _levels(), min_amount=100, max_amount=200),
        ]))
        assert matcher.find_applicable_rule(TENANT, PR, Decimal("50"), None) is None
        assert matcher.find_applicable_rule(OTHER_TENANT, PR, Decimal("150"), None) is None

    def test_negative_amount_raises(self, matcher):
        with pytest.raises(ValueError):
            matcher.find_applicable_rule(TENANT, PR, Decimal("-5"), None)


class TestPriorityTies:
    """Equal priorities resolve to the older rule, then the lower id"""

    def test_older_rule_wins_tie(self):
        t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        newer = make_rule("Newer", _levels(), priority=3, created_at=t0 + timedelta(days=1))
        older = make_rule("Older", _levels(), priority=3, created_at=t0)
        matcher = RuleMatcher(InMemoryRuleRepository([newer, older]))

        assert matcher.find_applicable_rule(TENANT, PR, Decimal("1"), None).name == "Older"

    def test_id_breaks_remaining_tie(self):
        t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        first = make_rule("B", _levels(), priority=3, created_at=t0)
        second = make_rule("A", _levels(), priority=3, created_at=t0)
        expected = min(first, second, key=lambda rule: rule.id)

        ordered = order_rules([first, second])
        assert ordered[0].id == expected.id

        matcher = RuleMatcher(InMemoryRuleRepository([second, first]))
        assert matcher.find_applicable_rule(TENANT, PR, Decimal("1"), None).id == expected.id

    def test_order_rules_by_priority_descending(self):
        low = make_rule("Low", _levels(), priority=1)
        high = make_rule("High", _levels(), priority=9)
        assert [rule.name for rule in order_rules([low, high])] == ["High", "Low"]
