from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Mapping, Optional

from smart_schedule.models import Notification

logger = logging.getLogger(__name__)


class DeliveryChannel(ABC):
    """A way of getting a notification to the user (push, email, ...)."""

    # status a notification ends in once this channel accepted it
    delivered_status = "sent"

    @abstractmethod
    def deliver(self, notification: Notification) -> None:
        raise NotImplementedError


class InAppChannel(DeliveryChannel):
    """In-app notifications are read from storage, so handing over is delivery."""

    delivered_status = "delivered"

    def deliver(self, notification: Notification) -> None:
        logger.debug(f"In-app notification {notification.id} ready for user {notification.user_id}")


class LoggingChannel(DeliveryChannel):
    """Stand-in for the external push/email/SMS senders."""

    def __init__(self, method: str):
        self.method = method

    def deliver(self, notification: Notification) -> None:
        logger.info(
            "[%s] to user %s: %s - %s",
            self.method,
            notification.user_id,
            notification.title,
            notification.message,
        )


def default_channels() -> Dict[str, DeliveryChannel]:
    return {
        "in_app": InAppChannel(),
        "push": LoggingChannel("push"),
        "email": LoggingChannel("email"),
        "sms": LoggingChannel("sms"),
    }


class NotificationProcessor:
    def __init__(self, repo, channels: Optional[Mapping[str, DeliveryChannel]] = None):
        self.repo = repo
        self.channels = dict(channels) if channels is not None else default_channels()

    async def process_pending(self, now: Optional[datetime] = None, limit: int = 100) -> Dict[str, int]:
        """Dispatch every due, pending notification; one failure never blocks the rest."""
        now = now or datetime.now()
        due = await self.repo.list_due_notifications(now, limit)
        counts = {"processed": 0, "sent": 0, "delivered": 0, "failed": 0}

        for notification in due:
            counts["processed"] += 1
            channel = self.channels.get(notification.delivery_method)
            try:
                if channel is None:
                    raise LookupError(f"no delivery channel for '{notification.delivery_method}'")
                channel.deliver(notification)
                notification.status = channel.delivered_status
                notification.sent_at = now
            except Exception as e:
                logger.error(f"Notification {notification.id} delivery failed: {e}")
                notification.status = "failed"
                notification.error_details = str(e)
            counts[notification.status] += 1
            await self.repo.save_notification(notification)

        if due:
            logger.info(f"Processed {counts['processed']} notifications ({counts['failed']} failed)")
        return counts
