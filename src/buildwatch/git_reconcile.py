"""Mirror reconciliation for tracked repositories.

``GitReconciler`` keeps one local clone ("mirror") per repository under
``repos_dir`` and brings it to the remote branch tip on every call:

- No mirror yet: clone, then switch to a local branch tracking
  ``origin/<branch>`` when the configured branch is not the default one. A
  missing remote branch here is logged and the default branch is used.
- Mirror present: discard local modifications, fetch, and make the local
  branch equal ``origin/<branch>``. With ``strategy="reset"`` this is a hard
  reset. With ``strategy="pull"`` a rebase pull is tried first, then a merge
  pull, then the hard reset. Either way the mirror ends on the remote tip with
  a clean working tree; the mirror is never a place for local work.

Every attempt re-inspects the on-disk state, so a retry after a failed clone
or fetch resumes from wherever the previous attempt stopped.
"""

from __future__ import annotations

import os
import shutil
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

import git
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from .config_schema import BuildwatchConfig, RepositoryConfig
from .observability import log_debug, log_info, log_warning, timeit
from .retry import run_with_retry


class GitReconcileError(Exception):
    """Base exception for mirror reconciliation."""
    pass


class TransientGitError(GitReconcileError):
    """Network, lock or other failure worth retrying."""
    pass


class PermanentGitError(GitReconcileError):
    """Failure that a retry cannot fix (e.g. the tracked branch is gone)."""
    pass


@dataclass
class ReconcileResult:
    """Branch tip of a mirror after a successful reconciliation."""
    repo_id: str
    path: Path
    branch: Optional[str]
    sha: str
    committed: datetime
    message: str
    cloned: bool

    @property
    def summary(self) -> str:
        return self.message.strip().splitlines()[0] if self.message.strip() else ""


class GitReconciler:
    """Synchronises per-repository mirrors with their remotes.

    Thread Safety:
        Calls for different repositories may run concurrently. Callers must
        serialise calls for the same repository (see ``RepositoryLocks``).
    """

    def __init__(
        self,
        repos_dir: Path,
        *,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        strategy: str = "reset",
        ssh_key_path: Optional[Path] = None,
        connection_timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if strategy not in ("reset", "pull"):
            raise ValueError(f"Unknown reconcile strategy: {strategy}")
        self.repos_dir = Path(repos_dir)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.strategy = strategy
        self.ssh_key_path = ssh_key_path
        self.connection_timeout = connection_timeout
        self._sleep = sleep

        self._env = os.environ.copy()
        # Fail fast instead of hanging on a credential prompt.
        self._env.setdefault("GIT_TERMINAL_PROMPT", "0")
        self._env.setdefault("GCM_INTERACTIVE", "never")
        self._env.setdefault("GIT_ASKPASS", "echo")
        if self.ssh_key_path:
            self._env["GIT_SSH_COMMAND"] = (
                f"ssh -i {self.ssh_key_path} -o IdentitiesOnly=yes -o BatchMode=yes"
            )
        else:
            self._env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
        # Identity for merge commits made by the pull strategy.
        for key, value in (
            ("GIT_AUTHOR_NAME", "buildwatch"),
            ("GIT_AUTHOR_EMAIL", "buildwatch@localhost"),
            ("GIT_COMMITTER_NAME", "buildwatch"),
            ("GIT_COMMITTER_EMAIL", "buildwatch@localhost"),
        ):
            self._env.setdefault(key, value)

    @classmethod
    def from_config(cls, config: BuildwatchConfig, **kwargs) -> "GitReconciler":
        ssh_key = Path(config.git.ssh_key).expanduser() if config.git.ssh_key else None
        return cls(
            Path(config.repos_dir),
            max_retries=config.retry.max_retries,
            retry_delay=config.retry.delay,
            strategy=config.git.strategy,
            ssh_key_path=ssh_key,
            connection_timeout=config.git.connection_timeout,
            **kwargs,
        )

    def mirror_path(self, repo: RepositoryConfig) -> Path:
        return (self.repos_dir / repo.id).resolve()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def reconcile(self, repo: RepositoryConfig) -> ReconcileResult:
        """Bring the repository's mirror to the remote branch tip.

        Returns:
            The reconciled branch tip

        Raises:
            TransientGitError: If git still fails after the retry budget
            PermanentGitError: If there is nothing to track
        """
        path = self.mirror_path(repo)
        self.repos_dir.mkdir(parents=True, exist_ok=True)

        with timeit("git.reconcile", repo=repo.id, strategy=self.strategy) as info:
            cloned = run_with_retry(
                lambda: self._sync_once(repo, path),
                self.max_retries,
                self.retry_delay,
                retry_on=(TransientGitError,),
                sleep=self._sleep,
                label=f"reconcile {repo.id}",
            )
            result = self.read_tip(repo, path, cloned=cloned)
            info["sha"] = result.sha
        return result

    def read_tip(self, repo: RepositoryConfig, path: Path, *, cloned: bool = False) -> ReconcileResult:
        """Read the commit currently checked out in a mirror."""
        try:
            r = Repo(path)
            if not r.head.is_valid():
                raise PermanentGitError(f"Repository {repo.id} has no commits on the checked-out branch")
            commit = r.head.commit
            branch = None if r.head.is_detached else r.active_branch.name
            return ReconcileResult(
                repo_id=repo.id,
                path=path,
                branch=branch,
                sha=commit.hexsha,
                committed=commit.committed_datetime,
                message=str(commit.message),
                cloned=cloned,
            )
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise PermanentGitError(f"Mirror for {repo.id} is not a git repository: {path}") from e
        except GitCommandError as e:
            raise TransientGitError(f"Failed to read HEAD of {repo.id}: {e}") from e

    def test_connection(self, git_url: str) -> List[str]:
        """List the first refs advertised by a remote (``git ls-remote``).

        Raises:
            TransientGitError: If the remote cannot be reached
        """
        log_debug(f"GIT_OP_START: ls-remote {git_url}")
        try:
            output = git.Git().ls_remote(
                git_url,
                env=self._env,
                kill_after_timeout=self.connection_timeout,
            )
        except GitCommandError as e:
            raise TransientGitError(f"Connection test failed for {git_url}: {e}") from e
        log_debug(f"GIT_OP_END: ls-remote {git_url}")
        return [line for line in output.splitlines() if line.strip()][:5]

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    def _sync_once(self, repo: RepositoryConfig, path: Path) -> bool:
        """Run one reconciliation attempt; returns True when it cloned."""
        try:
            if not (path / ".git").exists():
                self._clone(repo, path)
                return True
            self._update(repo, path)
            return False
        except GitCommandError as e:
            raise TransientGitError(f"git {self._command_name(e)} failed for {repo.id}: {e}") from e
        except (InvalidGitRepositoryError, NoSuchPathError, OSError) as e:
            raise TransientGitError(f"Mirror error for {repo.id}: {e}") from e

    @staticmethod
    def _command_name(error: GitCommandError) -> str:
        command = error.command
        if isinstance(command, (list, tuple)) and len(command) > 1:
            return str(command[1])
        return "command"

    def _clone(self, repo: RepositoryConfig, path: Path) -> None:
        if path.exists():
            # Leftover from an interrupted clone.
            shutil.rmtree(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        log_info(f"Cloning {repo.git_url} into {path}")
        log_debug(f"GIT_OP_START: clone {repo.git_url}")
        Repo.clone_from(repo.git_url, path, env=self._env)
        log_debug(f"GIT_OP_END: clone {repo.git_url}")

        r = Repo(path)
        current = None if r.head.is_detached else r.active_branch.name
        if current == repo.branch:
            return

        if self._remote_has_branch(r, repo.branch):
            log_debug(f"GIT_OP_START: checkout -b {repo.branch}")
            r.git.checkout("-b", repo.branch, f"origin/{repo.branch}", env=self._env)
            log_debug(f"GIT_OP_END: checkout -b {repo.branch}")
            log_info(f"Created tracking branch {repo.branch} in {repo.id}")
        else:
            log_warning(
                f"Branch {repo.branch} does not exist on {repo.git_url}; "
                f"staying on default branch {current}",
            )

    def _update(self, repo: RepositoryConfig, path: Path) -> None:
        r = Repo(path)
        self._discard_local_changes(r)

        log_debug(f"GIT_OP_START: fetch origin ({repo.id})")
        r.git.fetch("origin", "--prune", env=self._env)
        log_debug(f"GIT_OP_END: fetch origin ({repo.id})")

        if not self._remote_has_branch(r, repo.branch):
            raise PermanentGitError(
                f"Remote branch {repo.branch} does not exist for {repo.id} ({repo.git_url})"
            )

        remote_ref = f"origin/{repo.branch}"
        if self.strategy == "pull":
            self._pull_with_fallback(r, repo)
        else:
            log_debug(f"GIT_OP_START: checkout -B {repo.branch} {remote_ref}")
            r.git.checkout("-B", repo.branch, remote_ref, env=self._env)
            log_debug(f"GIT_OP_END: checkout -B {repo.branch} {remote_ref}")

        remote_sha = r.commit(remote_ref).hexsha
        if r.head.commit.hexsha != remote_sha:
            log_warning(f"{repo.id} diverged from {remote_ref}; resetting to remote")
            r.git.reset("--hard", remote_ref, env=self._env)
        r.git.clean("-ffdx", env=self._env)

    def _discard_local_changes(self, r: Repo) -> None:
        git_dir = Path(r.git_dir)
        if (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists():
            r.git.rebase("--abort", env=self._env)
        if (git_dir / "MERGE_HEAD").exists():
            r.git.merge("--abort", env=self._env)
        if r.head.is_valid():
            r.git.reset("--hard", env=self._env)
        r.git.clean("-ffdx", env=self._env)

    def _remote_has_branch(self, r: Repo, branch: str) -> bool:
        return f"refs/remotes/origin/{branch}" in {ref.path for ref in r.references}

    # ------------------------------------------------------------------
    # Pull strategy
    # ------------------------------------------------------------------

    def _ensure_branch(self, r: Repo, repo: RepositoryConfig) -> None:
        current = None if r.head.is_detached else r.active_branch.name
        if current == repo.branch:
            return
        if repo.branch in [head.name for head in r.heads]:
            r.git.checkout(repo.branch, env=self._env)
            log_info(f"Switched {repo.id} to branch {repo.branch}")
        else:
            r.git.checkout("-b", repo.branch, f"origin/{repo.branch}", env=self._env)
            log_info(f"Created tracking branch {repo.branch} in {repo.id}")

    def _pull_with_fallback(self, r: Repo, repo: RepositoryConfig) -> None:
        self._ensure_branch(r, repo)
        remote_ref = f"origin/{repo.branch}"
        if r.head.commit.hexsha == r.commit(remote_ref).hexsha:
            log_debug(f"{repo.id} already at {remote_ref}")
            return

        try:
            r.git.pull("--rebase", "origin", repo.branch, env=self._env)
            log_info(f"Rebased {repo.id} onto {remote_ref}")
            return
        except GitCommandError as rebase_error:
            log_warning(f"Rebase pull failed for {repo.id}, trying merge: {rebase_error}")
            if (Path(r.git_dir) / "rebase-merge").exists() or (Path(r.git_dir) / "rebase-apply").exists():
                r.git.rebase("--abort", env=self._env)

        try:
            r.git.pull("--no-rebase", "--no-edit", "origin", repo.branch, env=self._env)
            log_info(f"Merged {remote_ref} into {repo.id}")
            return
        except GitCommandError as merge_error:
            log_warning(f"Merge pull failed for {repo.id}, resetting: {merge_error}")

        r.git.reset("--hard", remote_ref, env=self._env)
