"""Per-repository monitoring state and build history.

``StateStore`` owns every ``RepositoryState``. All mutation goes through its
methods under one lock, and readers only ever receive deep copies, so a status
poll can never observe a half-applied update.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class BuildStatus(str, Enum):
    BUILDING = "building"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class BuildRecord:
    """One attempted image build and publish."""

    id: int
    date: datetime
    image: str
    status: BuildStatus = BuildStatus.BUILDING
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status is not BuildStatus.BUILDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": _iso(self.date),
            "status": self.status.value,
            "image": self.image,
            "error": self.error,
        }


@dataclass
class RepositoryState:
    """Mutable record kept for each tracked repository."""

    last_check: Optional[datetime] = None
    last_change: Optional[datetime] = None
    last_commit: Optional[str] = None
    last_build: Optional[datetime] = None
    build_history: List[BuildRecord] = field(default_factory=list)
    last_error: Optional[str] = None

    def in_flight(self) -> Optional[BuildRecord]:
        for record in self.build_history:
            if record.status is BuildStatus.BUILDING:
                return record
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastCheck": _iso(self.last_check),
            "lastChange": _iso(self.last_change),
            "lastCommit": self.last_commit,
            "lastBuild": _iso(self.last_build),
            "buildHistory": [record.to_dict() for record in self.build_history],
            "lastError": self.last_error,
        }


class BuildInFlightError(Exception):
    """A build record in ``building`` state already exists for the repository."""

    def __init__(self, repo_id: str, record: BuildRecord):
        super().__init__(f"Build already in progress for {repo_id}: {record.image}")
        self.repo_id = repo_id
        self.record = record


class StateStore:
    """Owner of all RepositoryState instances.

    States are created lazily the first time a repository is touched.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._lock = threading.RLock()
        self._states: Dict[str, RepositoryState] = {}
        self._last_check: Optional[datetime] = None

    def now(self) -> datetime:
        return self._clock()

    def _ensure(self, repo_id: str) -> RepositoryState:
        state = self._states.get(repo_id)
        if state is None:
            state = RepositoryState()
            self._states[repo_id] = state
        return state

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, repo_id: str) -> Optional[RepositoryState]:
        """Deep copy of one repository's state, or None if never touched."""
        with self._lock:
            state = self._states.get(repo_id)
            return copy.deepcopy(state) if state is not None else None

    def snapshot(self) -> Dict[str, RepositoryState]:
        with self._lock:
            return copy.deepcopy(self._states)

    @property
    def last_check(self) -> Optional[datetime]:
        with self._lock:
            return self._last_check

    def has_build_in_flight(self, repo_id: str) -> bool:
        with self._lock:
            state = self._states.get(repo_id)
            return state is not None and state.in_flight() is not None

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def mark_pass(self) -> datetime:
        with self._lock:
            self._last_check = self._clock()
            return self._last_check

    def begin_check(self, repo_id: str) -> None:
        """Stamp lastCheck and clear lastError at the start of an attempt."""
        with self._lock:
            state = self._ensure(repo_id)
            state.last_check = self._clock()
            state.last_error = None

    def record_error(self, repo_id: str, message: str) -> None:
        with self._lock:
            state = self._ensure(repo_id)
            state.last_error = message
            state.last_check = self._clock()

    def observe_commit(self, repo_id: str, sha: str, committed: datetime) -> bool:
        """Record the reconciled branch tip and report whether it is new work.

        A tip counts as new when nothing has been observed yet, or when its
        sha differs from the last observed tip and its commit time is strictly
        later than ``last_change``. ``last_change`` is stamped with the current
        wall-clock time, not the commit time.
        """
        with self._lock:
            state = self._ensure(repo_id)
            changed = state.last_change is None or (
                sha != state.last_commit and committed > state.last_change
            )
            if changed:
                now = self._clock()
                if state.last_change is None or now > state.last_change:
                    state.last_change = now
                state.last_commit = sha
            return changed

    # ------------------------------------------------------------------
    # Builds
    # ------------------------------------------------------------------

    def begin_build(self, repo_id: str, image: str, at: Optional[datetime] = None) -> BuildRecord:
        """Prepend a new ``building`` record and stamp lastBuild.

        ``at`` is the creation time (default: now); it also becomes the record id
        in epoch milliseconds.

        Raises:
            BuildInFlightError: If the repository already has a build running
        """
        with self._lock:
            state = self._ensure(repo_id)
            running = state.in_flight()
            if running is not None:
                raise BuildInFlightError(repo_id, copy.deepcopy(running))
            now = at or self._clock()
            record = BuildRecord(id=int(now.timestamp() * 1000), date=now, image=image)
            state.build_history.insert(0, record)
            state.last_build = now
            return copy.deepcopy(record)

    def finish_build(
        self,
        repo_id: str,
        record_id: int,
        status: BuildStatus,
        error: Optional[str] = None,
    ) -> BuildRecord:
        """Move a ``building`` record to its terminal status (exactly once)."""
        if status is BuildStatus.BUILDING:
            raise ValueError("finish_build needs a terminal status")
        with self._lock:
            state = self._ensure(repo_id)
            for record in state.build_history:
                if record.id == record_id and record.status is BuildStatus.BUILDING:
                    record.status = status
                    record.error = error
                    return copy.deepcopy(record)
            raise KeyError(f"No building record {record_id} for {repo_id}")
