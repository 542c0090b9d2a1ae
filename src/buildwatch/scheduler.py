"""Periodic monitoring loop.

``MonitorScheduler`` is either stopped or running. While running, a daemon
worker thread runs one pass immediately and then one pass per poll interval.
A pass checks enabled repositories one after another; a slow repository
delays the ones after it in the same pass.

``stop`` only prevents future passes. A pass that is already running,
including any build it started, is allowed to finish.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Optional

from .builder import BuildError, BuildOrchestrator
from .config_schema import BuildwatchConfig, RepositoryConfig
from .git_reconcile import GitReconciler
from .lock import RepositoryLocks
from .observability import log_error, log_info, timeit
from .state import StateStore


class SchedulerError(Exception):
    """Invalid start/stop transition."""
    pass


class MonitorScheduler:
    def __init__(
        self,
        config: Callable[[], BuildwatchConfig],
        store: StateStore,
        locks: RepositoryLocks,
        reconciler: GitReconciler,
        orchestrator: BuildOrchestrator,
    ):
        self._config = config
        self.store = store
        self.locks = locks
        self.reconciler = reconciler
        self.orchestrator = orchestrator

        self._lock = threading.Lock()
        self._running = False
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start monitoring.

        Raises:
            SchedulerError: If already running or no repositories are configured
        """
        with self._lock:
            if self._running:
                raise SchedulerError("Monitoring is already running")
            if not self._config().repositories:
                raise SchedulerError("No repositories configured")

            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._worker_loop,
                args=(stop_event,),
                name="buildwatch-monitor",
                daemon=True,
            )
            self._stop_event = stop_event
            self._thread = thread
            self._running = True
            thread.start()
        log_info("Monitoring started")

    def stop(self) -> None:
        """Stop scheduling passes.

        Raises:
            SchedulerError: If not running
        """
        with self._lock:
            if not self._running:
                raise SchedulerError("Monitoring is not running")
            if self._stop_event is not None:
                self._stop_event.set()
            self._stop_event = None
            self._running = False
        log_info("Monitoring stopped")

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the current worker thread (if any) to exit."""
        with self._lock:
            thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def _worker_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.run_pass()
            except Exception as exc:  # pragma: no cover - run_pass already isolates repositories
                log_error(f"Monitoring pass failed: {exc}")
            interval = self._config().poll_interval_minutes * 60.0
            if stop_event.wait(interval):
                break

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def run_pass(self) -> None:
        """Check every enabled repository once, in configuration order."""
        self.store.mark_pass()
        repositories = self._config().enabled_repositories()
        log_info(f"Checking {len(repositories)} repositories")
        for repo in repositories:
            try:
                self.check_repository(repo)
            except Exception as exc:
                log_error(f"Unexpected error checking {repo.id}: {exc}")
                self.store.record_error(repo.id, f"Unexpected error checking {repo.display_name}: {exc}")

    def check_repository(self, repo: RepositoryConfig) -> bool:
        """Reconcile one repository and build it if a new commit appeared.

        Returns:
            True if a new commit was detected
        """
        with self.locks.hold(repo.id):
            self.store.begin_check(repo.id)
            try:
                with timeit("repository.check", repo=repo.id):
                    result = self.reconciler.reconcile(repo)
            except Exception as exc:
                message = f"Error checking repository {repo.display_name}: {exc}"
                log_error(message)
                self.store.record_error(repo.id, message)
                return False

            changed = self.store.observe_commit(repo.id, result.sha, result.committed)
            if not changed:
                log_info(f"No new commits for {repo.display_name}")
                return False

            log_info(f"New commit on {repo.display_name}: {result.sha[:12]} {result.summary}")
            try:
                self.orchestrator.run_build(repo)
            except BuildError:
                # Already logged and recorded in the build history.
                pass
            return True

    def status(self) -> Dict[str, Any]:
        """Read-only snapshot for status reporting."""
        last_check = self.store.last_check
        return {
            "monitoring": self.running,
            "lastCheck": last_check.isoformat() if last_check else None,
            "repositories": {
                repo_id: state.to_dict() for repo_id, state in self.store.snapshot().items()
            },
        }
