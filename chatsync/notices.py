"""Transient user-facing notices.

Components push a short notice whenever a user-visible operation succeeds
or fails; the presentation layer drains them and shows toasts. The board is
bounded so an unattended client cannot grow it without limit.
"""
import logging
import time
from collections import deque
from enum import Enum
from typing import Deque, List

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class NoticeLevel(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


class Notice(BaseModel):
    level: NoticeLevel
    text: str
    ts: float = Field(default_factory=time.time)


class NoticeBoard:
    """Bounded FIFO of pending notices."""

    def __init__(self, max_notices: int = 20) -> None:
        self._notices: Deque[Notice] = deque(maxlen=max_notices)

    def push(self, level: NoticeLevel, text: str) -> Notice:
        notice = Notice(level=level, text=text)
        self._notices.append(notice)
        logger.debug("[Notices] %s: %s", level.value, text)
        return notice

    def success(self, text: str) -> Notice:
        return self.push(NoticeLevel.SUCCESS, text)

    def error(self, text: str) -> Notice:
        return self.push(NoticeLevel.ERROR, text)

    def info(self, text: str) -> Notice:
        return self.push(NoticeLevel.INFO, text)

    def pending(self) -> List[Notice]:
        return list(self._notices)

    def drain(self) -> List[Notice]:
        """Return every pending notice and clear the board."""
        notices = list(self._notices)
        self._notices.clear()
        return notices

    def clear(self) -> None:
        self._notices.clear()

    def __len__(self) -> int:
        return len(self._notices)
