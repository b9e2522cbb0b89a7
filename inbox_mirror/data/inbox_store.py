"""Persistence helpers for mirrored chats and their messages."""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

MessageKey = Tuple[str, datetime, bool]


class ChatStatus(str, Enum):
    """Operator-facing lifecycle of a mirrored conversation."""

    NEW = "new"
    ACTIVE = "active"
    QUOTED = "quoted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    RESOLVED = "resolved"
    CLOSED = "closed"

    @classmethod
    def parse(cls, raw: str) -> "ChatStatus":
        try:
            return cls(str(raw).strip().lower())
        except ValueError as exc:
            allowed = ", ".join(status.value for status in cls)
            raise ValueError(f"Unknown chat status '{raw}' (expected one of: {allowed})") from exc


class ChatNotFoundError(LookupError):
    """Raised when a chat key does not resolve to a stored record."""

    def __init__(self, chat_key: str) -> None:
        super().__init__(f"chat {chat_key!r} not found")
        self.chat_key = chat_key


@dataclass(frozen=True)
class Chat:
    """Local record of one external conversation."""

    chat_key: str
    external_key: Optional[str]
    title: Optional[str]
    user_name: Optional[str]
    service_type: Optional[str]
    location: Optional[str]
    price: Optional[str]
    last_message: Optional[str]
    last_message_time: Optional[datetime]
    status: ChatStatus
    has_new_message: bool
    unread_count: Optional[int]
    message_count: int
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, object]:
        return {
            "chat_key": self.chat_key,
            "external_key": self.external_key,
            "title": self.title,
            "user_name": self.user_name,
            "service_type": self.service_type,
            "location": self.location,
            "price": self.price,
            "last_message": self.last_message,
            "last_message_time": _isoformat(self.last_message_time),
            "status": self.status.value,
            "has_new_message": self.has_new_message,
            "unread_count": self.unread_count,
            "message_count": self.message_count,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


@dataclass(frozen=True)
class Message:
    """Append-only message row; identity is (content, sent_at, is_me) per chat."""

    chat_key: str
    content: str
    sent_at: datetime
    is_me: bool
    message_type: Optional[str] = None
    id: Optional[int] = None

    @property
    def key(self) -> MessageKey:
        return message_key(self.content, self.sent_at, self.is_me)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "content": self.content,
            "sent_at": _isoformat(self.sent_at),
            "is_me": self.is_me,
            "message_type": self.message_type,
        }


def normalize_timestamp(value: datetime) -> datetime:
    """Return ``value`` as a naive UTC datetime (the stored representation)."""

    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def message_key(content: str, sent_at: datetime, is_me: bool) -> MessageKey:
    return (content, normalize_timestamp(sent_at), bool(is_me))


def new_chat_key() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class InboxStore:
    """Typed wrapper around the SQLite database holding chats and messages."""

    CHAT_TABLE = "chat"
    MESSAGE_TABLE = "message"
    _RETRYABLE_SQLITE_ERRORS = ("disk i/o error", "database is locked")

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._metadata = MetaData()
        self._chat_table = Table(
            self.CHAT_TABLE,
            self._metadata,
            Column("chat_key", String, primary_key=True),
            Column("external_key", String, nullable=True, unique=True),
            Column("title", String, nullable=True),
            Column("user_name", String, nullable=True),
            Column("service_type", String, nullable=True),
            Column("location", String, nullable=True),
            Column("price", String, nullable=True),
            Column("last_message", Text, nullable=True),
            Column("last_message_time", DateTime(timezone=False), nullable=True),
            Column("status", String, nullable=False, default=ChatStatus.NEW.value),
            Column("has_new_message", Boolean, nullable=False, default=False),
            Column("unread_count", Integer, nullable=True),
            Column("message_count", Integer, nullable=False, default=0),
            Column("created_at", DateTime(timezone=False), nullable=False),
            Column("updated_at", DateTime(timezone=False), nullable=False),
        )
        self._message_table = Table(
            self.MESSAGE_TABLE,
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("chat_key", String, nullable=False),
            Column("content", Text, nullable=False),
            Column("sent_at", DateTime(timezone=False), nullable=False),
            Column("is_me", Boolean, nullable=False),
            Column("message_type", String, nullable=True),
            Index("ix_message_chat_key", "chat_key"),
        )
        self._metadata.create_all(self._engine, checkfirst=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _execute_with_retry(
        self,
        op_name: str,
        fn: Callable[[Engine], T],
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
    ) -> T:
        last_exc: Optional[OperationalError] = None
        for attempt in range(1, max_attempts + 1):
            try:
                return fn(self._engine)
            except OperationalError as exc:
                if getattr(exc, "orig", None) is not None:
                    message = str(exc.orig).lower()
                else:
                    message = str(exc).lower()

                if not any(token in message for token in self._RETRYABLE_SQLITE_ERRORS):
                    raise

                last_exc = exc
                LOGGER.error(
                    "Retryable SQLite error during %s (attempt %s/%s): %s",
                    op_name,
                    attempt,
                    max_attempts,
                    message or exc,
                )
                self._engine.dispose()

                if attempt == max_attempts:
                    break

                sleep_for = base_delay_seconds * (2 ** (attempt - 1))
                time.sleep(sleep_for)

        assert last_exc is not None
        LOGGER.error(
            "Exhausted retries for %s after %s attempts; re-raising.",
            op_name,
            max_attempts,
        )
        raise last_exc

    def transaction(self, op_name: str, fn: Callable[[Connection], T]) -> T:
        """Run ``fn`` inside a single committed transaction, retrying lock errors.

        The whole callable is replayed on a retryable error, so it must not
        have side effects outside the connection it receives.
        """

        def _op(engine: Engine) -> T:
            with engine.begin() as conn:
                return fn(conn)

        return self._execute_with_retry(op_name, _op)

    @staticmethod
    def _row_to_chat(row) -> Chat:
        data = row._mapping
        return Chat(
            chat_key=data["chat_key"],
            external_key=data["external_key"],
            title=data["title"],
            user_name=data["user_name"],
            service_type=data["service_type"],
            location=data["location"],
            price=data["price"],
            last_message=data["last_message"],
            last_message_time=data["last_message_time"],
            status=ChatStatus(data["status"]),
            has_new_message=bool(data["has_new_message"]),
            unread_count=data["unread_count"],
            message_count=data["message_count"] or 0,
            created_at=data["created_at"],
            updated_at=data["updated_at"],
        )

    @staticmethod
    def _row_to_message(row) -> Message:
        data = row._mapping
        return Message(
            id=data["id"],
            chat_key=data["chat_key"],
            content=data["content"],
            sent_at=data["sent_at"],
            is_me=bool(data["is_me"]),
            message_type=data["message_type"],
        )

    # ------------------------------------------------------------------
    # Connection-scoped operations (compose these inside ``transaction``)
    # ------------------------------------------------------------------
    def find_chat(self, conn: Connection, chat_key: str) -> Optional[Chat]:
        row = conn.execute(
            select(self._chat_table).where(self._chat_table.c.chat_key == chat_key)
        ).fetchone()
        return self._row_to_chat(row) if row else None

    def find_chat_by_external_key(self, conn: Connection, external_key: str) -> Optional[Chat]:
        row = conn.execute(
            select(self._chat_table).where(self._chat_table.c.external_key == external_key)
        ).fetchone()
        return self._row_to_chat(row) if row else None

    def insert_chat(self, conn: Connection, values: Dict[str, object]) -> Chat:
        now = _utcnow()
        row = {
            "chat_key": new_chat_key(),
            "status": ChatStatus.NEW.value,
            "has_new_message": False,
            "unread_count": None,
            "message_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        row.update(values)
        if isinstance(row["status"], ChatStatus):
            row["status"] = row["status"].value
        conn.execute(self._chat_table.insert().values(row))
        chat = self.find_chat(conn, row["chat_key"])
        assert chat is not None
        return chat

    def update_chat(self, conn: Connection, chat_key: str, values: Dict[str, object]) -> Chat:
        prepared = dict(values)
        if isinstance(prepared.get("status"), ChatStatus):
            prepared["status"] = prepared["status"].value
        prepared["updated_at"] = _utcnow()
        result = conn.execute(
            self._chat_table.update()
            .where(self._chat_table.c.chat_key == chat_key)
            .values(prepared)
        )
        if result.rowcount == 0:
            raise ChatNotFoundError(chat_key)
        chat = self.find_chat(conn, chat_key)
        assert chat is not None
        return chat

    def message_keys(self, conn: Connection, chat_key: str) -> Set[MessageKey]:
        rows = conn.execute(
            select(
                self._message_table.c.content,
                self._message_table.c.sent_at,
                self._message_table.c.is_me,
            ).where(self._message_table.c.chat_key == chat_key)
        )
        return {message_key(row.content, row.sent_at, row.is_me) for row in rows}

    def insert_messages(self, conn: Connection, messages: Sequence[Message]) -> int:
        if not messages:
            return 0
        rows = [
            {
                "chat_key": message.chat_key,
                "content": message.content,
                "sent_at": normalize_timestamp(message.sent_at),
                "is_me": bool(message.is_me),
                "message_type": message.message_type,
            }
            for message in messages
        ]
        conn.execute(self._message_table.insert(), rows)
        return len(rows)

    def refresh_message_count(self, conn: Connection, chat_key: str) -> int:
        total = conn.execute(
            select(func.count())
            .select_from(self._message_table)
            .where(self._message_table.c.chat_key == chat_key)
        ).scalar() or 0
        conn.execute(
            self._chat_table.update()
            .where(self._chat_table.c.chat_key == chat_key)
            .values(message_count=total, updated_at=_utcnow())
        )
        return int(total)

    # ------------------------------------------------------------------
    # Chat operations
    # ------------------------------------------------------------------
    def get_chat(self, chat_key: str) -> Optional[Chat]:
        return self.transaction("get_chat", lambda conn: self.find_chat(conn, chat_key))

    def get_chat_by_external_key(self, external_key: str) -> Optional[Chat]:
        return self.transaction(
            "get_chat_by_external_key",
            lambda conn: self.find_chat_by_external_key(conn, external_key),
        )

    def list_chats(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        status: Optional[ChatStatus] = None,
        exclude_statuses: Iterable[ChatStatus] = (),
    ) -> Tuple[List[Chat], int]:
        """Return one page of chats, newest activity first, plus the filtered total."""
        page = max(page, 1)
        limit = max(limit, 1)
        excluded = [value.value for value in exclude_statuses]

        def _op(engine: Engine) -> Tuple[List[Chat], int]:
            conditions = []
            if status is not None:
                conditions.append(self._chat_table.c.status == status.value)
            if excluded:
                conditions.append(self._chat_table.c.status.not_in(excluded))

            count_stmt = select(func.count()).select_from(self._chat_table)
            page_stmt = select(self._chat_table)
            for condition in conditions:
                count_stmt = count_stmt.where(condition)
                page_stmt = page_stmt.where(condition)

            with engine.connect() as conn:
                total = conn.execute(count_stmt).scalar() or 0
                rows = conn.execute(
                    page_stmt.order_by(
                        self._chat_table.c.last_message_time.desc(),
                        self._chat_table.c.created_at.desc(),
                    )
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
                return [self._row_to_chat(row) for row in rows], int(total)

        return self._execute_with_retry("list_chats", _op)

    def set_status(self, chat_key: str, status: ChatStatus) -> Chat:
        """Operator override; any status may be set at any time."""
        return self.transaction(
            "set_status",
            lambda conn: self.update_chat(conn, chat_key, {"status": status}),
        )

    def clear_notification(self, chat_key: str) -> Chat:
        return self.transaction(
            "clear_notification",
            lambda conn: self.update_chat(
                conn, chat_key, {"has_new_message": False, "unread_count": 0}
            ),
        )

    # ------------------------------------------------------------------
    # Message operations
    # ------------------------------------------------------------------
    def fetch_messages(self, chat_key: str) -> List[Message]:
        def _op(engine: Engine) -> List[Message]:
            with engine.connect() as conn:
                rows = conn.execute(
                    select(self._message_table)
                    .where(self._message_table.c.chat_key == chat_key)
                    .order_by(self._message_table.c.sent_at.asc(), self._message_table.c.id.asc())
                )
                return [self._row_to_message(row) for row in rows]

        return self._execute_with_retry("fetch_messages", _op)

    def count_messages(self, chat_key: str) -> int:
        def _op(engine: Engine) -> int:
            with engine.connect() as conn:
                return int(
                    conn.execute(
                        select(func.count())
                        .select_from(self._message_table)
                        .where(self._message_table.c.chat_key == chat_key)
                    ).scalar()
                    or 0
                )

        return self._execute_with_retry("count_messages", _op)

    def recount_all_messages(self) -> int:
        """Recompute ``message_count`` for every chat; returns how many changed."""

        def _op(conn: Connection) -> int:
            counts = {
                row.chat_key: row.total
                for row in conn.execute(
                    select(
                        self._message_table.c.chat_key,
                        func.count().label("total"),
                    ).group_by(self._message_table.c.chat_key)
                )
            }
            changed = 0
            for row in conn.execute(
                select(self._chat_table.c.chat_key, self._chat_table.c.message_count)
            ).fetchall():
                expected = counts.get(row.chat_key, 0)
                if row.message_count != expected:
                    conn.execute(
                        self._chat_table.update()
                        .where(self._chat_table.c.chat_key == row.chat_key)
                        .values(message_count=expected)
                    )
                    changed += 1
            return changed

        return self.transaction("recount_all_messages", _op)


def get_inbox_store(engine: Engine) -> InboxStore:
    """Helper for one-line store construction."""

    return InboxStore(engine)
