from __future__ import annotations

import logging
import threading
from typing import Protocol

from .models import Notification, NotificationKind

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    """Outbound channel for human-facing notifications.  Delivery is fire-and-forget."""

    def notify(self, notification: Notification) -> None: ...


class LoggingNotificationChannel:
    """Default channel: writes each notification to the ``phaseloop.notifications`` logger."""

    _LEVELS = {
        NotificationKind.PHASE_COMPLETED: logging.INFO,
        NotificationKind.APPROVAL_REQUESTED: logging.WARNING,
        NotificationKind.COLLABORATION_REQUESTED: logging.WARNING,
        NotificationKind.BLOCKED: logging.WARNING,
        NotificationKind.TIMEOUT: logging.WARNING,
        NotificationKind.FAILED: logging.ERROR,
    }

    def notify(self, notification: Notification) -> None:
        status = notification.result.status.value if notification.result is not None else "-"
        logger.log(
            self._LEVELS[notification.kind],
            "[%s] %s %s.%s iteration=%d result=%s reason=%s",
            notification.kind.value,
            notification.instance_id,
            notification.level,
            notification.phase,
            notification.iteration,
            status,
            notification.reason or "-",
        )


class RecordingNotificationChannel:
    """Keeps every notification in memory; handy for embedding and for tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        with self._lock:
            self._items.append(notification)

    @property
    def notifications(self) -> list[Notification]:
        with self._lock:
            return list(self._items)

    def of_kind(self, kind: NotificationKind) -> list[Notification]:
        return [item for item in self.notifications if item.kind == kind]

    def for_instance(self, instance_id: str) -> list[Notification]:
        return [item for item in self.notifications if item.instance_id == instance_id]
