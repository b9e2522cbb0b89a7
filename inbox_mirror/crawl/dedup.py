"""Commit only the messages a re-scrape has not already stored."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence

from sqlalchemy.engine import Connection

from ..data.inbox_store import ChatNotFoundError, InboxStore, Message, message_key
from .extractor import RawMessage


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DedupResult:
    chat_key: str
    inserted: int
    skipped: int
    message_count: int


class MessageDeduplicator:
    """Exact-triple dedup over (content, sent_at, is_me).

    The source exposes no stable message id, so two distinct messages with
    identical text, timestamp and direction collapse into one.
    """

    def __init__(self, store: InboxStore) -> None:
        self._store = store

    def commit(self, chat_key: str, raw_messages: Sequence[RawMessage]) -> DedupResult:
        """Insert the unseen messages and refresh ``message_count`` in one transaction."""

        def _op(conn: Connection) -> DedupResult:
            if self._store.find_chat(conn, chat_key) is None:
                raise ChatNotFoundError(chat_key)

            seen = self._store.message_keys(conn, chat_key)
            fresh: List[Message] = []
            for raw in raw_messages:
                key = message_key(raw.content, raw.sent_at, raw.is_me)
                if key in seen:
                    continue
                seen.add(key)
                fresh.append(
                    Message(
                        chat_key=chat_key,
                        content=raw.content,
                        sent_at=raw.sent_at,
                        is_me=raw.is_me,
                        message_type=raw.message_type,
                    )
                )

            inserted = self._store.insert_messages(conn, fresh)
            total = self._store.refresh_message_count(conn, chat_key)
            return DedupResult(
                chat_key=chat_key,
                inserted=inserted,
                skipped=len(raw_messages) - inserted,
                message_count=total,
            )

        result = self._store.transaction("commit_messages", _op)
        LOGGER.info(
            "Committed %s new messages for chat %s (%s already stored, total %s)",
            result.inserted,
            chat_key,
            result.skipped,
            result.message_count,
        )
        return result
