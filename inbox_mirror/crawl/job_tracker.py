"""In-memory registry of crawl job phases, keyed by target."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class JobPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class JobState:
    """Stored entry; overwritten on every transition, never deleted."""

    target_key: str
    phase: JobPhase
    transitioned_at: float


@dataclass(frozen=True)
class JobStatus:
    """What a poller sees.

    ``phase`` is the effective phase after staleness inference;
    ``stored_phase`` is exactly what the tracker holds.
    """

    target_key: str
    phase: JobPhase
    stored_phase: JobPhase
    transitioned_at: Optional[float]
    elapsed_seconds: Optional[float]
    stale: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "target_key": self.target_key,
            "phase": self.phase.value,
            "stored_phase": self.stored_phase.value,
            "transitioned_at": self.transitioned_at,
            "elapsed_seconds": self.elapsed_seconds,
            "stale": self.stale,
        }


class CrawlJobTracker:
    """Process-wide job registry.

    Nothing is persisted: a restart forgets every job, and an unknown key
    reads as ``idle`` ("nothing ran yet"), never as an error. Reads never
    write; a ``running`` entry older than ``stale_after_seconds`` is reported
    as ``done`` on every read until a real transition replaces it.
    """

    def __init__(
        self,
        *,
        stale_after_seconds: float = 30.0,
        abandon_after_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[str, JobState] = {}
        self._stale_after = stale_after_seconds
        self._abandon_after = abandon_after_seconds
        self._clock = clock

    @property
    def stale_after_seconds(self) -> float:
        return self._stale_after

    @property
    def abandon_after_seconds(self) -> float:
        return self._abandon_after

    def start(self, target_key: str) -> JobStatus:
        """Mark ``target_key`` running. Overlapping starts are allowed; last writer wins."""
        return self._transition(target_key, JobPhase.RUNNING)

    def complete(self, target_key: str, success: bool) -> JobStatus:
        return self._transition(target_key, JobPhase.DONE if success else JobPhase.FAILED)

    def read(self, target_key: str) -> JobStatus:
        with self._lock:
            state = self._jobs.get(target_key)
        return self._view(target_key, state)

    def stored_phase(self, target_key: str) -> JobPhase:
        with self._lock:
            state = self._jobs.get(target_key)
        return state.phase if state else JobPhase.IDLE

    def is_abandoned(self, status: JobStatus) -> bool:
        """Caller-side give-up rule: still stored as running past the longer threshold."""
        return (
            status.stored_phase == JobPhase.RUNNING
            and status.elapsed_seconds is not None
            and status.elapsed_seconds > self._abandon_after
        )

    def snapshot(self) -> List[JobStatus]:
        with self._lock:
            states = list(self._jobs.values())
        return [self._view(state.target_key, state) for state in states]

    def _transition(self, target_key: str, phase: JobPhase) -> JobStatus:
        state = JobState(target_key=target_key, phase=phase, transitioned_at=self._clock())
        with self._lock:
            self._jobs[target_key] = state
        logger.info("Crawl job %s -> %s", target_key, phase.value)
        return JobStatus(
            target_key=target_key,
            phase=phase,
            stored_phase=phase,
            transitioned_at=state.transitioned_at,
            elapsed_seconds=0.0,
        )

    def _view(self, target_key: str, state: Optional[JobState]) -> JobStatus:
        if state is None:
            return JobStatus(
                target_key=target_key,
                phase=JobPhase.IDLE,
                stored_phase=JobPhase.IDLE,
                transitioned_at=None,
                elapsed_seconds=None,
            )

        elapsed = max(self._clock() - state.transitioned_at, 0.0)
        phase = state.phase
        stale = False
        if phase == JobPhase.RUNNING and elapsed > self._stale_after:
            logger.debug(
                "Crawl job %s running for %.1fs; reporting as done", target_key, elapsed
            )
            phase = JobPhase.DONE
            stale = True

        return JobStatus(
            target_key=target_key,
            phase=phase,
            stored_phase=state.phase,
            transitioned_at=state.transitioned_at,
            elapsed_seconds=elapsed,
            stale=stale,
        )
