"""
User-facing notification events.

The engine publishes ``Notification`` records to a ``NotificationBus``;
UI code subscribes to turn them into toasts.  Publishing is fire and
forget: a subscriber that raises is logged and skipped, and the engine
works the same with no subscriber attached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List

from gap_journey.config import ERROR_DURATION, SUCCESS_DURATION

logger = logging.getLogger(__name__)

NOTIFICATION_KINDS = ("info", "success", "warning", "error")


@dataclass(frozen=True)
class Notification:
    kind: str
    title: str
    message: str
    duration_ms: int = SUCCESS_DURATION

    def __post_init__(self):
        if self.kind not in NOTIFICATION_KINDS:
            raise ValueError(f"unknown notification kind: {self.kind!r}")


Subscriber = Callable[[Notification], None]


class NotificationBus:
    """Synchronous publish/subscribe channel for ``Notification`` events."""

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, notification: Notification) -> int:
        """Deliver to every subscriber and return how many accepted it."""
        delivered = 0
        for callback in list(self._subscribers):
            try:
                callback(notification)
            except Exception:
                logger.exception("Notification subscriber failed for %r", notification.title)
                continue
            delivered += 1
        return delivered

    def info(self, title: str, message: str, duration_ms: int = SUCCESS_DURATION) -> int:
        return self.emit(Notification("info", title, message, duration_ms))

    def success(self, title: str, message: str, duration_ms: int = SUCCESS_DURATION) -> int:
        return self.emit(Notification("success", title, message, duration_ms))

    def warning(self, title: str, message: str, duration_ms: int = SUCCESS_DURATION) -> int:
        return self.emit(Notification("warning", title, message, duration_ms))

    def error(self, title: str, message: str, duration_ms: int = ERROR_DURATION) -> int:
        return self.emit(Notification("error", title, message, duration_ms))


class NotificationRecorder:
    """Subscriber that keeps every notification it receives, in order."""

    def __init__(self) -> None:
        self.received: List[Notification] = []

    def __call__(self, notification: Notification) -> None:
        self.received.append(notification)

    def titles(self) -> List[str]:
        return [n.title for n in self.received]

    def of_kind(self, kind: str) -> List[Notification]:
        return [n for n in self.received if n.kind == kind]
