"""
Approver resolution.

Turns a level's approver specs into the concrete list of users allowed to
decide it. Runs once, when the level's instance is created; the result is
stored on the instance and never recomputed.
"""

from typing import List

from app.core.logging_config import get_logger

from .repositories.base import Directory
from .schemas import ApprovalLevel, PotentialApprover

logger = get_logger(__name__)


class ApproverResolver:
    """Resolves user and role approver specs against the directory"""

    def __init__(self, directory: Directory):
        self.directory = directory

    def resolve(self, tenant_id: str, level: ApprovalLevel) -> List[PotentialApprover]:
        """
        Resolve every approver spec of *level* for *tenant_id*.

        A user spec yields that user; a role spec yields every active tenant
        member holding the role. The union keeps first-seen order and lists
        each user once.
        """
        resolved: List[PotentialApprover] = []
        seen = set()

        def add(approver: PotentialApprover) -> None:
            if approver.user_id in seen:
                return
            seen.add(approver.user_id)
            resolved.append(approver)

        for spec in level.approvers:
            if spec.user_id:
                user = self.directory.get_user(spec.user_id)
                if user is None:
                    logger.warning(
                        "approver_user_not_found",
                        tenant_id=tenant_id,
                        level_order=level.level_order,
                        user_id=spec.user_id,
                    )
                    continue
                add(PotentialApprover(user_id=user.id, name=user.name, email=user.email))
            elif spec.role:
                members = self.directory.list_members_with_role(tenant_id, spec.role)
                for member in members:
                    add(PotentialApprover(user_id=member.id, name=member.name, email=member.email, role=spec.role))

        if not resolved:
            logger.warning(
                "approval_level_without_approvers",
                tenant_id=tenant_id,
                level_order=level.level_order,
                level_name=level.name,
            )
        return resolved
