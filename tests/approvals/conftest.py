"""
Shared fixtures for the approval engine tests.

The default world: tenant ``acme`` with a two-level purchase request rule
(manager, then finance) plus an optional specifications level, and a few
users with memberships.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock

import pytest

from app.approvals.engine import ApprovalEngine
from app.approvals.repositories.memory import (
    InMemoryDelegationRepository,
    InMemoryDirectory,
    InMemoryDocumentStore,
    InMemoryRuleRepository,
    InMemoryWorkflowRepository,
)
from app.approvals.schemas import (
    ApprovalEngineConfig,
    ApprovalLevelType,
    DocumentSummary,
    DocumentType,
    PurchaseType,
)
from app.core.notifications import NotificationService

from .helpers import OTHER_TENANT, TENANT, make_level, make_rule


@pytest.fixture
def directory():
    """Directory with an initiator, two managers, a finance approver and a spec reviewer"""
    d = InMemoryDirectory()
    d.add_user("erin", "Erin Initiator", "erin@acme.test")
    d.add_user("alice", "Alice Manager", "alice@acme.test")
    d.add_user("bob", "Bob Manager", "bob@acme.test")
    d.add_user("carol", "Carol Finance", "carol@acme.test")
    d.add_user("dave", "Dave Specs", "dave@acme.test")
    d.add_user("mallory", "Mallory Outsider", "mallory@acme.test")
    d.add_membership(TENANT, "erin", ["REQUESTER"])
    d.add_membership(TENANT, "alice", ["MANAGER", "CLIENT_APPROVER"])
    d.add_membership(TENANT, "bob", ["MANAGER"])
    d.add_membership(TENANT, "carol", ["FINANCE", "PURCHASE_ADMIN"])
    d.add_membership(TENANT, "dave", ["SPEC_REVIEWER"])
    d.add_membership(OTHER_TENANT, "mallory", ["MANAGER"])
    return d


@pytest.fixture
def documents():
    store = InMemoryDocumentStore()
    store.add_document(
        DocumentSummary(
            document_type=DocumentType.PURCHASE_REQUEST,
            document_id="pr-1",
            title="PR-0001 Laptops",
            amount=Decimal("500"),
            purchase_type=PurchaseType.DIRECT,
            requester_name="Erin Initiator",
        )
    )
    store.add_document(
        DocumentSummary(
            document_type=DocumentType.PURCHASE_REQUEST,
            document_id="pr-2",
            title="PR-0002 Monitors",
            amount=Decimal("2500"),
            purchase_type=PurchaseType.WITH_QUOTE,
            requester_name="Erin Initiator",
        )
    )
    return store


@pytest.fixture
def standard_rule():
    """Manager (role) then finance (user), with a specifications level in between"""
    return make_rule(
        "Standard purchases",
        [
            make_level(1, "Manager", roles=["MANAGER"]),
            make_level(2, "Specifications", roles=["SPEC_REVIEWER"], level_type=ApprovalLevelType.SPECIFICATIONS),
            make_level(3, "Finance", users=["carol"]),
        ],
        min_amount=0,
        max_amount=10000,
    )


@pytest.fixture
def rule_repo(standard_rule):
    return InMemoryRuleRepository([standard_rule])


@pytest.fixture
def workflow_repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def delegation_repo():
    return InMemoryDelegationRepository()


@pytest.fixture
def notification_service():
    return NotificationService()


@pytest.fixture
def config():
    return ApprovalEngineConfig(notifications_async=False)


@pytest.fixture
def engine(rule_repo, workflow_repo, delegation_repo, directory, documents, notification_service, config):
    return ApprovalEngine(
        rule_repo,
        workflow_repo,
        delegation_repo,
        directory,
        documents,
        notification_service=notification_service,
        config=config,
    )


@pytest.fixture
def build_engine(rule_repo, workflow_repo, delegation_repo, directory, documents, notification_service):
    """Engine factory for tests that need non-default config"""

    def _build(**overrides):
        options = {"notifications_async": False}
        options.update(overrides)
        return ApprovalEngine(
            rule_repo,
            workflow_repo,
            delegation_repo,
            directory,
            documents,
            notification_service=notification_service,
            config=ApprovalEngineConfig(**options),
        )

    return _build


@pytest.fixture
def failing_notification_service():
    service = Mock(spec=NotificationService)
    service.notify_approval_needed.side_effect = RuntimeError("smtp down")
    service.notify_workflow_completed.side_effect = RuntimeError("smtp down")
    service.notify_delegation_received.side_effect = RuntimeError("smtp down")
    return service


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


@pytest.fixture
def active_window(now):
    return now - timedelta(days=1), now + timedelta(days=1)
