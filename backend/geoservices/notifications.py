import logging
from collections import deque
from datetime import datetime, timezone
from typing import Deque, List, Optional, Protocol

from .models import Notification
from .utils.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    def success(self, message: str) -> None:
        ...

    def warning(self, message: str) -> None:
        ...

    def error(self, message: str) -> None:
        ...


_LOG_LEVELS = {
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.WARNING,
}


class NotificationFeed:
    """Transient user-facing messages, newest last, bounded to `backlog` items."""

    def __init__(self, backlog: int = 50):
        self._items: Deque[Notification] = deque(maxlen=max(1, backlog))

    def _push(self, level: str, message: str) -> None:
        logger.log(_LOG_LEVELS[level], message, extra={'notification': level})
        self._items.append(
            Notification(
                level=level,
                message=message,
                timestamp=datetime.now(timezone.utc).isoformat(),
            )
        )

    def success(self, message: str) -> None:
        self._push("success", message)

    def warning(self, message: str) -> None:
        self._push("warning", message)

    def error(self, message: str) -> None:
        self._push("error", message)

    def recent(self, limit: Optional[int] = None) -> List[Notification]:
        items = list(self._items)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def clear(self) -> None:
        self._items.clear()
