"""
Approval engine repositories: interfaces plus in-memory and SQLAlchemy
implementations.
"""

from .base import (
    DelegationRepository,
    Directory,
    DocumentStore,
    RuleRepository,
    WorkflowRepository,
)
from .memory import (
    InMemoryDelegationRepository,
    InMemoryDirectory,
    InMemoryDocumentStore,
    InMemoryRuleRepository,
    InMemoryWorkflowRepository,
)

__all__ = [
    "DelegationRepository",
    "Directory",
    "DocumentStore",
    "RuleRepository",
    "WorkflowRepository",
    "InMemoryDelegationRepository",
    "InMemoryDirectory",
    "InMemoryDocumentStore",
    "InMemoryRuleRepository",
    "InMemoryWorkflowRepository",
]
