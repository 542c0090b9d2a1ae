from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional


class RepositoryLocks:
    """Per-repository re-entrant locks keyed by repository id.

    Reconciliation and build for one repository share a checkout, so both run
    while holding that repository's lock. Locks are re-entrant so a thread that
    already reconciles a repository can go on to build it.

    ``timeout`` follows the usual convention: None waits forever, 0 never
    waits, a positive number waits at most that many seconds.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def _lock_for(self, repo_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(repo_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[repo_id] = lock
            return lock

    def acquire(self, repo_id: str, timeout: Optional[float] = None) -> bool:
        lock = self._lock_for(repo_id)
        if timeout is None:
            return lock.acquire()
        if timeout <= 0:
            return lock.acquire(blocking=False)
        return lock.acquire(timeout=timeout)

    def release(self, repo_id: str) -> None:
        self._lock_for(repo_id).release()

    @contextmanager
    def hold(self, repo_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold a repository's lock for the duration of the block.

        Raises:
            TimeoutError: If the lock is not acquired within ``timeout``
        """
        if not self.acquire(repo_id, timeout):
            raise TimeoutError(f"Repository {repo_id} is busy")
        try:
            yield
        finally:
            self.release(repo_id)
