"""
Best-effort notification dispatch for approval events.

State transitions never wait on, or fail because of, a notification: each
event is handed to an executor (or run inline when asynchronous dispatch is
switched off) and any exception is logged and dropped.
"""

from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional

from app.core.logging_config import get_logger
from app.core.notifications import NotificationService

from .schemas import (
    ApprovalEngineConfig,
    Delegation,
    DirectoryUser,
    DocumentSummary,
    PotentialApprover,
    WorkflowStatus,
)

logger = get_logger(__name__)


class NotificationDispatcher:
    """Fire-and-forget wrapper around a NotificationService"""

    def __init__(
        self,
        service: Optional[NotificationService],
        config: Optional[ApprovalEngineConfig] = None,
        executor: Optional[Executor] = None,
    ):
        self.service = service
        self.config = config or ApprovalEngineConfig()
        self._executor = executor
        self._owns_executor = False
        if self._executor is None and self.config.notifications_async:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.notification_workers,
                thread_name_prefix="approval-notify",
            )
            self._owns_executor = True
        self._pending: List[Future] = []

    @property
    def enabled(self) -> bool:
        return self.service is not None and self.config.notifications_enabled

    def _submit(self, event: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        if not self.enabled:
            return
        if self._executor is None:
            self._run(event, fn, *args, **kwargs)
            return
        try:
            future = self._executor.submit(self._run, event, fn, *args, **kwargs)
        except RuntimeError:
            # Executor already shut down
            logger.warning("notification_dropped", notification_event=event)
            return
        self._pending = [f for f in self._pending if not f.done()]
        self._pending.append(future)

    @staticmethod
    def _run(event: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        try:
            fn(*args, **kwargs)
        except Exception:
            logger.error("notification_failed", notification_event=event, exc_info=True)

    def approval_needed(
        self,
        approvers: List[PotentialApprover],
        document: Optional[DocumentSummary],
        level_name: str,
        tenant_id: str,
    ) -> None:
        if not self.enabled:
            return
        for approver in approvers:
            self._submit(
                "approval_needed",
                self.service.notify_approval_needed,
                approver,
                document,
                level_name,
                tenant_id,
            )

    def workflow_completed(
        self,
        initiator: Optional[DirectoryUser],
        document: Optional[DocumentSummary],
        status: WorkflowStatus,
        tenant_id: str,
        comment: Optional[str] = None,
    ) -> None:
        if not self.enabled:
            return
        if initiator is None:
            logger.warning("completion_notice_skipped", reason="initiator_unknown", tenant_id=tenant_id)
            return
        self._submit(
            "workflow_completed",
            self.service.notify_workflow_completed,
            initiator,
            document,
            status,
            tenant_id,
            comment,
        )

    def delegation_received(self, delegate: Optional[DirectoryUser], delegation: Delegation) -> None:
        if not self.enabled:
            return
        if delegate is None or not delegate.email:
            return
        self._submit(
            "delegation_received",
            self.service.notify_delegation_received,
            delegate,
            delegation.delegator_name or "User",
            delegation.start_date,
            delegation.end_date,
            delegation.reason,
            delegation.tenant_id,
        )

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for queued notifications; used by tests and on shutdown"""
        for future in list(self._pending):
            future.result(timeout=timeout)
        self._pending = []

    def shutdown(self) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
