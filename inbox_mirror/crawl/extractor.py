"""Shapes produced by the page extractor, and the capability the pipeline consumes."""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Optional, Protocol, Sequence


class ExtractionError(RuntimeError):
    """Navigation timed out, a selector vanished, or the page made no sense."""


@dataclass(frozen=True)
class RawMessage:
    content: str
    sent_at: datetime
    is_me: bool
    message_type: Optional[str] = None  # "customer", "pro" or "system"


@dataclass(frozen=True)
class RawSnapshot:
    """One point-in-time extraction of a conversation's inbox entry."""

    external_key: str
    title: Optional[str] = None
    user_name: Optional[str] = None
    service_type: Optional[str] = None
    location: Optional[str] = None
    price: Optional[str] = None
    last_message: Optional[str] = None
    last_message_time: Optional[datetime] = None
    unread_count: Optional[int] = None

    def normalized(self) -> "RawSnapshot":
        """Return this snapshot with surrounding whitespace stripped from the external key."""
        key = (self.external_key or "").strip()
        if key == self.external_key:
            return self
        return replace(self, external_key=key)

    def with_preview_from(self, messages: Sequence[RawMessage]) -> "RawSnapshot":
        """Fill a missing last-message preview from the newest extracted message."""
        if self.last_message or not messages:
            return self
        latest = messages[-1]
        return replace(
            self,
            last_message=latest.content,
            last_message_time=self.last_message_time or latest.sent_at,
        )


class Extractor(Protocol):
    """Opaque page extraction capability.

    Implementations are slow and fallible and should raise
    ``ExtractionError`` for source-side problems. Messages are returned in
    page order, oldest first.
    """

    def snapshot(self, external_key: str) -> RawSnapshot:
        ...

    def snapshot_messages(self, external_key: str) -> List[RawMessage]:
        ...

    def list_snapshots(self) -> List[RawSnapshot]:
        ...
