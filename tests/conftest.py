from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest
from git import Repo


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    os.environ.setdefault("PYTHONPATH", str(src))


@pytest.fixture(autouse=True)
def isolated_logging(monkeypatch):
    """Keep log files out of $HOME and reset the logger between tests."""
    saved_env = dict(os.environ)
    monkeypatch.setenv("BUILDWATCH_LOG_DISABLE_FILE", "1")

    from buildwatch import observability as obs

    logger = logging.getLogger(obs.LOGGER_NAME)
    logger.handlers.clear()
    obs._logger_initialized = False
    yield
    logger.handlers.clear()
    obs._logger_initialized = False
    os.environ.clear()
    os.environ.update(saved_env)


class Upstream:
    """A bare "remote" repository plus a working clone used to push to it."""

    def __init__(self, root: Path, branch: str = "main"):
        self.path = root / "remote.git"
        self.path.mkdir(parents=True)
        bare = Repo.init(self.path, bare=True)
        bare.git.symbolic_ref("HEAD", f"refs/heads/{branch}")

        self.workdir = root / "upstream"
        self.repo = Repo.init(self.workdir)
        self.repo.git.checkout("-b", branch)
        self.repo.create_remote("origin", self.path.as_posix())
        self.branch = branch

    @property
    def url(self) -> str:
        return self.path.as_posix()

    def commit(self, name: str = "README.md", content: str = "data\n", *, branch: Optional[str] = None) -> str:
        branch = branch or self.branch
        if self.repo.head.is_valid() and self.repo.active_branch.name != branch:
            if branch in [h.name for h in self.repo.heads]:
                self.repo.git.checkout(branch)
            else:
                self.repo.git.checkout("-b", branch)
        target = self.workdir / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        self.repo.index.add([name])
        commit = self.repo.index.commit(f"update {name}")
        self.repo.remotes.origin.push(f"{branch}:{branch}")
        return commit.hexsha

    def tip(self, branch: Optional[str] = None) -> str:
        return Repo(self.path).commit(branch or self.branch).hexsha


@pytest.fixture
def upstream(tmp_path) -> Upstream:
    up = Upstream(tmp_path)
    up.commit("README.md", "seed\n")
    up.commit("Dockerfile", "FROM scratch\n")
    return up


class FakeClock:
    """Deterministic clock for StateStore; starts well before any commit time."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2020, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
