"""Crawl subsystem (shared browser session, job tracking, reconciliation)."""

from __future__ import annotations

from .browser import BrowserSession
from .dedup import DedupResult, MessageDeduplicator
from .extractor import ExtractionError, Extractor, RawMessage, RawSnapshot
from .job_tracker import CrawlJobTracker, JobPhase, JobStatus
from .pipeline import INBOX_JOB_KEY, CrawlOutcome, CrawlPipeline
from .reconcile import MergeOutcome, ReconcileResult, ReconciliationEngine
from .session import (
    LoginState,
    SeleniumSessionProbe,
    SessionManager,
    SessionUnavailableError,
)

__all__ = [
    "BrowserSession",
    "CrawlJobTracker",
    "CrawlOutcome",
    "CrawlPipeline",
    "DedupResult",
    "ExtractionError",
    "Extractor",
    "INBOX_JOB_KEY",
    "JobPhase",
    "JobStatus",
    "LoginState",
    "MergeOutcome",
    "MessageDeduplicator",
    "RawMessage",
    "RawSnapshot",
    "ReconcileResult",
    "ReconciliationEngine",
    "SeleniumSessionProbe",
    "SessionManager",
    "SessionUnavailableError",
]
