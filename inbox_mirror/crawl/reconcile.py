"""Merge one extracted snapshot into the local chat table."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from sqlalchemy.engine import Connection

from ..data.inbox_store import Chat, ChatStatus, InboxStore
from .extractor import RawSnapshot


LOGGER = logging.getLogger(__name__)

METADATA_FIELDS = ("title", "user_name", "service_type", "location", "price")


class MergeOutcome(str, Enum):
    UPDATED = "updated"  # matched on external key
    BACKFILLED = "backfilled"  # hinted record had no external key yet
    FORKED = "forked"  # hinted record carries a different external key
    CREATED = "created"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: MergeOutcome
    chat: Chat
    unread_detected: bool
    previous: Optional[Chat] = None


def _present(value: Optional[str]) -> bool:
    return value is not None and str(value).strip() != ""


def merge_snapshot(existing: Optional[Chat], snapshot: RawSnapshot) -> Tuple[Dict[str, object], bool]:
    """Compute the column values a snapshot contributes, and whether it carries unread content.

    Metadata is overwritten field by field only when the snapshot has a
    value. The unread count follows the source's latest value whenever the
    source reports one, including when it went down.
    """
    values: Dict[str, object] = {}
    for field in METADATA_FIELDS:
        incoming = getattr(snapshot, field)
        if _present(incoming):
            values[field] = incoming

    previous_message = existing.last_message if existing else None
    content_changed = _present(snapshot.last_message) and snapshot.last_message != previous_message
    if _present(snapshot.last_message):
        values["last_message"] = snapshot.last_message
    if snapshot.last_message_time is not None:
        values["last_message_time"] = snapshot.last_message_time

    previous_unread = existing.unread_count if existing else None
    count_increased = (
        snapshot.unread_count is not None and snapshot.unread_count > (previous_unread or 0)
    )
    if snapshot.unread_count is not None:
        values["unread_count"] = snapshot.unread_count

    unread_detected = bool(content_changed or count_increased)
    if unread_detected:
        values["has_new_message"] = True

    current_status = existing.status if existing else ChatStatus.NEW
    if unread_detected and current_status == ChatStatus.NEW:
        # Only the initial state advances; operator-chosen states are left alone.
        values["status"] = ChatStatus.ACTIVE

    return values, unread_detected


class ReconciliationEngine:
    """Resolve identity and merge a snapshot, committing before returning."""

    def __init__(self, store: InboxStore) -> None:
        self._store = store

    def reconcile(
        self,
        snapshot: RawSnapshot,
        internal_key_hint: Optional[str] = None,
    ) -> ReconcileResult:
        external_key = (snapshot.external_key or "").strip()
        if not external_key:
            raise ValueError("snapshot has no external key; refusing to reconcile")

        def _op(conn: Connection) -> ReconcileResult:
            existing = self._store.find_chat_by_external_key(conn, external_key)
            if existing is not None:
                return self._merge_into(conn, existing, snapshot, MergeOutcome.UPDATED)

            hinted = self._store.find_chat(conn, internal_key_hint) if internal_key_hint else None
            if hinted is not None and not _present(hinted.external_key):
                return self._merge_into(
                    conn, hinted, snapshot, MergeOutcome.BACKFILLED, external_key=external_key
                )

            if hinted is not None:
                LOGGER.warning(
                    "Identity conflict: chat %s is bound to external key %s but the source now "
                    "reports %s; forking a new chat and leaving %s untouched",
                    hinted.chat_key,
                    hinted.external_key,
                    external_key,
                    hinted.chat_key,
                )
                return self._create(conn, snapshot, external_key, MergeOutcome.FORKED, previous=hinted)

            return self._create(conn, snapshot, external_key, MergeOutcome.CREATED)

        result = self._store.transaction("reconcile", _op)
        LOGGER.info(
            "Reconciled external key %s -> chat %s (%s, unread=%s)",
            external_key,
            result.chat.chat_key,
            result.outcome.value,
            result.unread_detected,
        )
        return result

    def _merge_into(
        self,
        conn: Connection,
        chat: Chat,
        snapshot: RawSnapshot,
        outcome: MergeOutcome,
        *,
        external_key: Optional[str] = None,
    ) -> ReconcileResult:
        values, unread = merge_snapshot(chat, snapshot)
        if external_key is not None:
            values["external_key"] = external_key
        updated = self._store.update_chat(conn, chat.chat_key, values)
        return ReconcileResult(outcome=outcome, chat=updated, unread_detected=unread, previous=chat)

    def _create(
        self,
        conn: Connection,
        snapshot: RawSnapshot,
        external_key: str,
        outcome: MergeOutcome,
        *,
        previous: Optional[Chat] = None,
    ) -> ReconcileResult:
        values, unread = merge_snapshot(None, snapshot)
        values["external_key"] = external_key
        values.setdefault("status", ChatStatus.NEW)
        created = self._store.insert_chat(conn, values)
        return ReconcileResult(outcome=outcome, chat=created, unread_detected=unread, previous=previous)
