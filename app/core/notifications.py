"""
Notification Service Module

Provides notification functionality for the application. Notifications are
kept in an in-process outbox; delivery channels (email, push) read from it.
"""

import logging
import threading
from typing import Dict, Any, Optional, List
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Service for handling notifications across the application.
    """

    def __init__(self):
        """Initialize the notification service."""
        self.notifications: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        logger.info("NotificationService initialized")

    def send_notification(
        self,
        recipient: str,
        subject: str,
        message: str,
        notification_type: str = "info",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send a notification to a recipient.

        Args:
            recipient: The recipient identifier (email, user_id, etc.)
            subject: The notification subject
            message: The notification message
            notification_type: Type of notification (info, warning, error, success)
            metadata: Additional metadata for the notification

        Returns:
            bool: True if notification was sent successfully
        """
        with self._lock:
            notification = {
                "id": len(self.notifications) + 1,
                "recipient": recipient,
                "subject": subject,
                "message": message,
                "type": notification_type,
                "metadata": metadata or {},
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "read": False,
            }
            self.notifications.append(notification)

        logger.info(f"Notification sent to {recipient}: {subject}")
        return True

    def notify_approval_needed(
        self,
        recipient: Any,
        document: Any,
        level_name: str,
        tenant_id: str,
    ) -> bool:
        """Tell a potential approver a document is waiting at *level_name*."""
        title = _document_title(document)
        requester = getattr(document, "requester_name", None) or "a colleague"
        return self.send_notification(
            recipient=recipient.email or recipient.user_id,
            subject=f"Approval needed: {title}",
            message=f"{title} from {requester} is waiting for your decision at level '{level_name}'.",
            notification_type="action_required",
            metadata={
                "user_id": recipient.user_id,
                "tenant_id": tenant_id,
                "document_type": _enum_value(getattr(document, "document_type", None)),
                "document_id": getattr(document, "document_id", None),
                "level_name": level_name,
            },
        )

    def notify_workflow_completed(
        self,
        recipient: Any,
        document: Any,
        status: Any,
        tenant_id: str,
        comment: Optional[str] = None,
    ) -> bool:
        """Tell the initiator their document was approved or rejected."""
        title = _document_title(document)
        status_label = _enum_value(status)
        message = f"{title} was {status_label.lower()}."
        if comment:
            message = f"{message} Comment: {comment}"
        return self.send_notification(
            recipient=recipient.email or recipient.id,
            subject=f"{title}: {status_label}",
            message=message,
            notification_type="success" if status_label == "APPROVED" else "warning",
            metadata={
                "user_id": recipient.id,
                "tenant_id": tenant_id,
                "document_type": _enum_value(getattr(document, "document_type", None)),
                "document_id": getattr(document, "document_id", None),
                "status": status_label,
            },
        )

    def notify_delegation_received(
        self,
        recipient: Any,
        delegator_name: str,
        start_date: datetime,
        end_date: datetime,
        reason: Optional[str],
        tenant_id: str,
    ) -> bool:
        """Tell a delegate they may stand in for *delegator_name*."""
        message = (
            f"{delegator_name} delegated approvals to you from "
            f"{start_date.date().isoformat()} to {end_date.date().isoformat()}."
        )
        if reason:
            message = f"{message} Reason: {reason}"
        return self.send_notification(
            recipient=recipient.email or recipient.id,
            subject="Approval delegation received",
            message=message,
            notification_type="info",
            metadata={"user_id": recipient.id, "tenant_id": tenant_id, "delegator_name": delegator_name},
        )

    def get_notifications(
        self, recipient: str, unread_only: bool = False, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Get notifications for a recipient.

        Args:
            recipient: The recipient identifier
            unread_only: If True, return only unread notifications
            limit: Maximum number of notifications to return

        Returns:
            List of notifications
        """
        notifications = [n for n in self.notifications if n["recipient"] == recipient]

        if unread_only:
            notifications = [n for n in notifications if not n["read"]]

        if limit:
            notifications = notifications[:limit]

        return notifications

    def mark_as_read(self, notification_id: int) -> bool:
        """
        Mark a notification as read.

        Args:
            notification_id: The notification ID

        Returns:
            bool: True if notification was marked as read
        """
        for notification in self.notifications:
            if notification["id"] == notification_id:
                notification["read"] = True
                logger.debug(f"Notification {notification_id} marked as read")
                return True

        return False


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _document_title(document: Any) -> str:
    if document is None:
        return "Document"
    title = getattr(document, "title", None)
    if title:
        return title
    return f"{_enum_value(document.document_type)} {document.document_id}"
