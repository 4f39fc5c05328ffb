"""
Notification Center

User-facing messages for the dashboard session: workflow firings,
rule changes and failures. Keeps the newest 50.
"""

import threading
import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Callable, List, Dict, Any


class NotificationType(Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"
    WARNING = "warning"


@dataclass
class Notification:
    type: NotificationType
    title: str
    message: str
    tx_hash: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)
    read: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


def format_execution_message(result) -> str:
    return f'"{result.name}" triggered: {result.action} (+{result.reward:.2f} rewards)'


class NotificationCenter:

    def __init__(self, max_items: int = 50, listener: Optional[Callable[[Notification], None]] = None):
        self.max_items = max_items
        self.listener = listener
        self._items: List[Notification] = []
        self._lock = threading.Lock()

    def add(self, type: NotificationType, title: str, message: str, tx_hash: Optional[str] = None) -> Notification:
        notification = Notification(type=type, title=title, message=message, tx_hash=tx_hash)
        with self._lock:
            self._items = [notification] + self._items[: self.max_items - 1]
        if self.listener:
            self.listener(notification)
        return notification

    def list(self) -> List[Notification]:
        with self._lock:
            return list(self._items)

    def mark_as_read(self, notification_id: str) -> bool:
        with self._lock:
            for n in self._items:
                if n.id == notification_id:
                    n.read = True
                    return True
        return False

    def mark_all_as_read(self):
        with self._lock:
            for n in self._items:
                n.read = True

    def clear_all(self):
        with self._lock:
            self._items = []

    def unread_count(self) -> int:
        with self._lock:
            return len([n for n in self._items if not n.read])


def console_listener(notification: Notification):
    """Print notifications, for headless runs."""
    icon = {
        NotificationType.SUCCESS: "✅",
        NotificationType.ERROR: "❌",
        NotificationType.INFO: "ℹ️",
        NotificationType.WARNING: "⚠️",
    }.get(notification.type, "•")
    print(f"  {icon} {notification.title}: {notification.message}")
