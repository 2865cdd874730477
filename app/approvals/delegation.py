"""
Delegation Manager

Lets an approver hand their approval duties to a colleague for a bounded
period. A delegator can hold only one active delegation per tenant for any
given moment.
"""

from datetime import datetime
from typing import Callable, List, Optional

from app.core.logging_config import get_logger

from .exceptions import (
    DelegationConflictError,
    DelegationNotFoundError,
    DelegationPermissionError,
    DelegationValidationError,
)
from .notifications import NotificationDispatcher
from .repositories.base import DelegationRepository, Directory
from .schemas import ApprovalEngineConfig, Delegation, DirectoryUser, as_utc, utcnow

logger = get_logger(__name__)


class DelegationManager:
    """Create, cancel and look up approval delegations"""

    def __init__(
        self,
        delegations: DelegationRepository,
        directory: Directory,
        dispatcher: NotificationDispatcher,
        config: Optional[ApprovalEngineConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.delegations = delegations
        self.directory = directory
        self.dispatcher = dispatcher
        self.config = config or ApprovalEngineConfig()
        self.clock = clock

    def create_delegation(
        self,
        delegator_id: str,
        delegate_id: str,
        tenant_id: str,
        start_date: datetime,
        end_date: datetime,
        reason: Optional[str] = None,
    ) -> Delegation:
        """
        Create a delegation from *delegator_id* to *delegate_id*.

        Raises:
            DelegationValidationError: end not after start, or self-delegation
            DelegationConflictError: the delegator already has an active
                delegation overlapping the requested range
        """
        start_date, end_date = as_utc(start_date), as_utc(end_date)
        if end_date <= start_date:
            raise DelegationValidationError(
                "End date must be after start date",
                {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            )
        if delegator_id == delegate_id:
            raise DelegationValidationError("Cannot delegate to yourself", {"user_id": delegator_id})

        delegator = self.directory.get_user(delegator_id)
        delegate = self.directory.get_user(delegate_id)

        delegation = Delegation(
            delegator_id=delegator_id,
            delegator_name=delegator.name if delegator else "",
            delegate_id=delegate_id,
            delegate_name=delegate.name if delegate else "",
            tenant_id=tenant_id,
            start_date=start_date,
            end_date=end_date,
            reason=reason,
            is_active=True,
            created_at=self.clock(),
        )

        conflict = self.delegations.create_if_no_overlap(delegation)
        if conflict is not None:
            logger.info(
                "delegation_conflict",
                delegator_id=delegator_id,
                tenant_id=tenant_id,
                existing_delegation_id=conflict.id,
            )
            raise DelegationConflictError(delegator_id, tenant_id, conflict.id)

        logger.info(
            "delegation_created",
            delegation_id=delegation.id,
            delegator_id=delegator_id,
            delegate_id=delegate_id,
            tenant_id=tenant_id,
        )
        self.dispatcher.delegation_received(delegate, delegation)
        return delegation

    def cancel_delegation(self, delegation_id: str, requested_by: Optional[str] = None) -> Delegation:
        """
        Deactivate a delegation. The record is kept for history.

        Raises:
            DelegationNotFoundError: no delegation with that id
            DelegationPermissionError: *requested_by* is not the delegator
        """
        existing = self.delegations.get(delegation_id)
        if existing is None:
            raise DelegationNotFoundError(delegation_id)
        if requested_by is not None and requested_by != existing.delegator_id:
            raise DelegationPermissionError(
                "Only the delegator can cancel a delegation",
                {"delegation_id": delegation_id, "requested_by": requested_by},
            )

        cancelled = self.delegations.deactivate(delegation_id)
        if cancelled is None:
            raise DelegationNotFoundError(delegation_id)
        logger.info("delegation_cancelled", delegation_id=delegation_id, delegator_id=existing.delegator_id)
        return cancelled

    def get_user_delegations(self, user_id: str, tenant_id: str) -> List[Delegation]:
        return self.delegations.list_for_user(user_id, tenant_id)

    def get_active_delegations_to(
        self,
        delegate_id: str,
        tenant_id: str,
        at: Optional[datetime] = None,
    ) -> List[Delegation]:
        return self.delegations.list_active_for_delegate(delegate_id, tenant_id, as_utc(at or self.clock()))

    def list_available_delegates(self, tenant_id: str, requester_id: str) -> List[DirectoryUser]:
        """Active tenant members with a delegate-eligible role, minus the requester"""
        members = self.directory.list_members_with_roles(tenant_id, self.config.delegate_roles)
        return [member for member in members if member.id != requester_id]
