"""Background crawl jobs: session check, extraction, reconciliation, message dedup."""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional

from ..data.inbox_store import InboxStore
from .dedup import DedupResult, MessageDeduplicator
from .extractor import Extractor
from .job_tracker import CrawlJobTracker, JobStatus
from .reconcile import ReconcileResult, ReconciliationEngine
from .session import SessionManager


LOGGER = logging.getLogger(__name__)

# Reserved for the inbox-wide sync; the crawl route refuses it as a chat key.
INBOX_JOB_KEY = "__inbox__"


class KeyedLocks:
    """Lazily created per-key mutexes. Entries live for the process lifetime."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self.get(key):
            yield


@dataclass(frozen=True)
class CrawlOutcome:
    target_key: str
    success: bool
    reconcile: Optional[ReconcileResult] = None
    dedup: Optional[DedupResult] = None
    synced: int = 0
    error: Optional[str] = None


class CrawlPipeline:
    """Runs crawl jobs detached from the request that asked for them.

    Callers get the tracker's status back immediately and observe completion
    by polling. Every failure is caught at the job boundary and recorded as
    ``failed``; nothing escapes to the hosting process.
    """

    def __init__(
        self,
        *,
        store: InboxStore,
        tracker: CrawlJobTracker,
        session: SessionManager,
        extractor: Extractor,
        reconciler: Optional[ReconciliationEngine] = None,
        deduplicator: Optional[MessageDeduplicator] = None,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._session = session
        self._extractor = extractor
        self._reconciler = reconciler or ReconciliationEngine(store)
        self._deduplicator = deduplicator or MessageDeduplicator(store)
        self._locks = KeyedLocks()
        self._threads_lock = threading.Lock()
        self._threads: Dict[str, threading.Thread] = {}

    @property
    def tracker(self) -> CrawlJobTracker:
        return self._tracker

    @property
    def session(self) -> SessionManager:
        return self._session

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def request_crawl(self, target_key: str) -> JobStatus:
        """Start a background crawl of one chat and return the pre-staleness status."""
        status = self._tracker.start(target_key)
        self._spawn(target_key, lambda: self._run_tracked(target_key, self._crawl_target, target_key))
        return status

    def run_crawl(self, target_key: str) -> CrawlOutcome:
        """Synchronous variant of ``request_crawl`` (scripts, tests)."""
        self._tracker.start(target_key)
        return self._run_tracked(target_key, self._crawl_target, target_key)

    def request_inbox_sync(self) -> JobStatus:
        status = self._tracker.start(INBOX_JOB_KEY)
        self._spawn(INBOX_JOB_KEY, lambda: self._run_tracked(INBOX_JOB_KEY, self._sync_inbox))
        return status

    def sync_inbox(self) -> CrawlOutcome:
        self._tracker.start(INBOX_JOB_KEY)
        return self._run_tracked(INBOX_JOB_KEY, self._sync_inbox)

    def join(self, job_key: str, timeout: Optional[float] = None) -> bool:
        """Wait for the most recent background job on ``job_key``; True once it has exited."""
        with self._threads_lock:
            thread = self._threads.get(job_key)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # ------------------------------------------------------------------
    # Job bodies
    # ------------------------------------------------------------------
    def _spawn(self, job_key: str, body: Callable[[], object]) -> None:
        thread = threading.Thread(target=body, name=f"crawl-{job_key}", daemon=True)
        with self._threads_lock:
            self._threads[job_key] = thread
        thread.start()

    def _run_tracked(self, job_key: str, fn: Callable[..., CrawlOutcome], *args) -> CrawlOutcome:
        LOGGER.info("Crawl started for %s", job_key)
        try:
            outcome = fn(*args)
        except Exception as exc:
            LOGGER.exception("Crawl failed for %s", job_key)
            self._tracker.complete(job_key, False)
            return CrawlOutcome(target_key=job_key, success=False, error=f"{type(exc).__name__}: {exc}")

        self._tracker.complete(job_key, outcome.success)
        if outcome.success:
            LOGGER.info("Crawl finished for %s", job_key)
        else:
            LOGGER.error("Crawl failed for %s: %s", job_key, outcome.error)
        return outcome

    def _crawl_target(self, target_key: str) -> CrawlOutcome:
        local = self._store.get_chat(target_key)
        if local is not None:
            # Records created before their external key was known are crawled
            # under their own key and backfilled by reconciliation.
            external_key = local.external_key or target_key
            hint: Optional[str] = local.chat_key
        else:
            external_key = target_key
            hint = None

        if not self._session.ensure_valid():
            return CrawlOutcome(target_key=target_key, success=False, error="login failed")

        snapshot = self._extractor.snapshot(external_key)
        messages = self._extractor.snapshot_messages(external_key)
        snapshot = snapshot.normalized().with_preview_from(messages)

        with self._locks.hold(snapshot.external_key):
            reconciled = self._reconciler.reconcile(snapshot, internal_key_hint=hint)
            committed = self._deduplicator.commit(reconciled.chat.chat_key, messages)

        return CrawlOutcome(
            target_key=target_key,
            success=True,
            reconcile=reconciled,
            dedup=committed,
        )

    def _sync_inbox(self) -> CrawlOutcome:
        if not self._session.ensure_valid():
            return CrawlOutcome(target_key=INBOX_JOB_KEY, success=False, error="login failed")

        snapshots = self._extractor.list_snapshots()
        synced = 0
        for snapshot in snapshots:
            snapshot = snapshot.normalized()
            if not snapshot.external_key:
                LOGGER.warning("Inbox sync skipped an entry without external key (%s)", snapshot.title)
                continue
            with self._locks.hold(snapshot.external_key):
                self._reconciler.reconcile(snapshot)
            synced += 1

        LOGGER.info("Inbox sync reconciled %s of %s entries", synced, len(snapshots))
        return CrawlOutcome(target_key=INBOX_JOB_KEY, success=True, synced=synced)
