"""
Notification collaborators

Delivery is fire-and-forget: callers log and swallow send failures.
"""

import logging
from typing import Protocol, runtime_checkable

from .models import Notification, NotificationEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class Notifier(Protocol):
    async def send(self, event: Notification) -> None: ...


class LoggingNotifier:
    """Writes notifications to the log and keeps them for inspection"""

    def __init__(self):
        self.sent: list[Notification] = []

    async def send(self, event: Notification) -> None:
        self.sent.append(event)
        if isinstance(event, NotificationEvent):
            logger.info(
                f"Notification to {event.recipient} [{event.priority}]: {event.subject}"
            )
        else:
            outcome = "succeeded" if event.success else "failed"
            logger.info(
                f"Remediation {event.action_type} on {event.target} {outcome} "
                f"for incident {event.incident_id}"
            )
