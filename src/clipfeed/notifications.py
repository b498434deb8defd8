from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Protocol


logger = logging.getLogger(__name__)


NoticeKind = Literal["insert_failed", "delete_failed", "toggle_failed", "load_failed"]


@dataclass(frozen=True)
class Notice:
    """A one-shot, user-visible message about a rolled back change."""

    kind: NoticeKind
    message: str
    error: Exception | None = None


class NotificationSink(Protocol):
    def notify(self, notice: Notice) -> None: ...


class LoggingNotificationSink:
    def notify(self, notice: Notice) -> None:
        logger.warning("notice kind=%s message=%s", notice.kind, notice.message)


class CollectingNotificationSink:
    def __init__(self) -> None:
        self.notices: list[Notice] = []

    def notify(self, notice: Notice) -> None:
        self.notices.append(notice)

    def kinds(self) -> list[str]:
        return [n.kind for n in self.notices]
