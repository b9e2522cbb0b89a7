"""Recompute every chat's message_count from the stored message rows."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path

from sqlalchemy import create_engine

from inbox_mirror.config import get_inbox_db_path
from inbox_mirror.data.inbox_store import get_inbox_store
from inbox_mirror.logging_utils import setup_crawl_logging

LOGGER = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Repair chat message counts after manual edits")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="SQLite file to repair (default: INBOX_DB_PATH or data/inbox.db).",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Console log level (DEBUG, INFO, WARNING).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress console output; the log file is still written.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    console_log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    setup_crawl_logging(console_level=console_log_level, quiet=args.quiet)

    db_path = (args.db or get_inbox_db_path()).expanduser().resolve()
    if not db_path.exists():
        LOGGER.error("Inbox database not found at %s", db_path)
        raise SystemExit(1)

    store = get_inbox_store(create_engine(f"sqlite:///{db_path}"))
    changed = store.recount_all_messages()
    LOGGER.info("Recounted messages in %s; %s chats corrected", db_path, changed)


if __name__ == "__main__":
    main()
