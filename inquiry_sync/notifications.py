"""
User-facing notification events.

The core emits (message, kind) events; rendering is left to whoever
subscribes. A bounded history is kept so pull-based consumers (the HTTP
surface) can list and dismiss them.
"""

import logging
import uuid
from collections import deque
from typing import Callable, Optional

from inquiry_sync.config import settings
from inquiry_sync.metrics import record_notification
from inquiry_sync.schemas import Notification, NotificationKind
from inquiry_sync.utils import utc_now_iso

logger = logging.getLogger(__name__)

NotificationListener = Callable[[Notification], None]


class NotificationCenter:
    def __init__(self, history_limit: Optional[int] = None):
        self._history: deque = deque(maxlen=history_limit or settings.NOTIFICATION_HISTORY_LIMIT)
        self._listeners: list[NotificationListener] = []

    @property
    def recent(self) -> list[Notification]:
        return list(self._history)

    def subscribe(self, listener: NotificationListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, message: str, kind: NotificationKind) -> Notification:
        notification = Notification(
            id=uuid.uuid4().hex[:12],
            message=message,
            kind=kind,
            created_at=utc_now_iso(),
        )
        self._history.append(notification)
        record_notification(kind.value)
        logger.info("Notification emitted", extra={"kind": kind.value, "notification": message})

        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                # listener errors never reach the emitting operation
                logger.warning("Notification listener failed", exc_info=True)
        return notification

    def success(self, message: str) -> Notification:
        return self.emit(message, NotificationKind.SUCCESS)

    def error(self, message: str) -> Notification:
        return self.emit(message, NotificationKind.ERROR)

    def info(self, message: str) -> Notification:
        return self.emit(message, NotificationKind.INFO)

    def dismiss(self, notification_id: str) -> bool:
        for notification in self._history:
            if notification.id == notification_id:
                self._history.remove(notification)
                return True
        return False
