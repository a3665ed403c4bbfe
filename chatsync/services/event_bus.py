"""
Process-wide publish/subscribe channel and subscription handles
"""
import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

CHAT_HEAD_TOPIC = "chat.head"
NOTICE_TOPIC = "notice"


class Subscription:
    """
    Handle for a live subscription. ``close()`` is idempotent and must be
    called by the owner on teardown; deliveries after close are dropped.
    """

    def __init__(self, on_close: Optional[Callable[[], None]] = None):
        self._on_close = on_close
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        on_close, self._on_close = self._on_close, None
        if on_close is not None:
            on_close()


class Observable:
    """Minimal change-callback registry for live views."""

    def __init__(self):
        self._observers: List[Callable[[Any], None]] = []

    def observe(self, callback: Callable[[Any], None]) -> Subscription:
        self._observers.append(callback)

        def _remove():
            try:
                self._observers.remove(callback)
            except ValueError:
                pass

        return Subscription(_remove)

    def _emit(self) -> None:
        for callback in list(self._observers):
            try:
                callback(self)
            except Exception as e:
                logger.error(f"Observer of {type(self).__name__} failed: {e}")


class EventBus:
    """Registers topic subscriptions and broadcasts payloads to all listeners."""

    def __init__(self):
        self._subscriptions: Dict[str, List[Callable[[Any], None]]] = {}

    def subscribe(self, topic: str, callback: Callable[[Any], None]) -> Subscription:
        self._subscriptions.setdefault(topic, []).append(callback)

        def _remove():
            subs = self._subscriptions.get(topic)
            if not subs:
                return
            try:
                subs.remove(callback)
            except ValueError:
                return
            if not subs:
                self._subscriptions.pop(topic, None)

        return Subscription(_remove)

    def publish(self, topic: str, payload: Any) -> None:
        for callback in list(self._subscriptions.get(topic, [])):
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Listener for '{topic}' failed: {e}")

    def listener_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, []))
