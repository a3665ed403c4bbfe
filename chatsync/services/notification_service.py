"""
Notification service for transient user-facing notices
"""
import logging
import uuid
from typing import Callable, Dict, List, Optional

from chatsync.schemas.notice import Notice, NoticeLevel
from chatsync.services.event_bus import NOTICE_TOPIC, EventBus
from chatsync.utils.time_utils import now_ms

logger = logging.getLogger(__name__)


class NotificationCenter:
    """Service for raising and dismissing notices"""

    def __init__(self, bus: Optional[EventBus] = None, *, clock: Callable[[], int] = now_ms):
        self.bus = bus
        self._clock = clock
        self._active: Dict[str, Notice] = {}

    def notify(self, level: NoticeLevel, title: str, message: Optional[str] = None) -> Notice:
        notice = Notice(
            id=uuid.uuid4().hex,
            level=level,
            title=title,
            message=message,
            created_at=self._clock(),
        )
        self._active[notice.id] = notice
        if level == NoticeLevel.ERROR:
            logger.warning(f"{title}: {message}")
        if self.bus is not None:
            self.bus.publish(NOTICE_TOPIC, notice)
        return notice

    def success(self, title: str, message: Optional[str] = None) -> Notice:
        return self.notify(NoticeLevel.SUCCESS, title, message)

    def error(self, title: str, message: Optional[str] = None) -> Notice:
        return self.notify(NoticeLevel.ERROR, title, message)

    def warning(self, title: str, message: Optional[str] = None) -> Notice:
        return self.notify(NoticeLevel.WARNING, title, message)

    def info(self, title: str, message: Optional[str] = None) -> Notice:
        return self.notify(NoticeLevel.INFO, title, message)

    def dismiss(self, notice_id: str) -> bool:
        return self._active.pop(notice_id, None) is not None

    def active(self) -> List[Notice]:
        """Undismissed notices, newest first."""
        ordered = sorted(self._active.values(), key=lambda n: n.created_at)
        return ordered[::-1]

    def clear(self) -> None:
        self._active.clear()
