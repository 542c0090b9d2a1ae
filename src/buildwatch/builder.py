"""Image build orchestration.

``BuildOrchestrator.trigger`` turns a repository into a published image:

1. derive the image tag ``<registry>/<namespace>/<image>:<tag>``
2. prepend a ``building`` record to the repository's history (and stamp
   ``lastBuild``) before anything external runs
3. fail fast if the Dockerfile is missing or the registry login is not ready
4. run the build-and-push capability against the mirror checkout
5. settle the record as ``success`` or ``failure``

At most one build per repository is in flight at any time.
"""

from __future__ import annotations

import json
import os
import subprocess
from datetime import datetime
from pathlib import Path
from subprocess import TimeoutExpired
from typing import Callable, List, Optional, Protocol

from .config_schema import BuildwatchConfig, RepositoryConfig
from .lock import RepositoryLocks
from .observability import log_debug, log_error, log_info, timeit
from .state import BuildInFlightError, BuildStatus, StateStore


class BuildError(Exception):
    """Base exception for build orchestration."""
    pass


class DockerfileMissingError(BuildError):
    """The configured Dockerfile is not present in the checkout."""
    pass


class BuildExecutionError(BuildError):
    """The external build or push failed or timed out."""
    pass


class AuthNotReadyError(BuildError):
    """The registry login is not in place yet."""
    pass


class BuildInProgressError(BuildError):
    """Another build or reconciliation already holds the repository."""
    pass


class ImageBuilder(Protocol):
    def build(self, checkout_path: Path, dockerfile_path: Path, image_tag: str) -> None:
        """Build and publish ``image_tag``; raise BuildExecutionError on failure."""
        ...


class RegistryAuthGate(Protocol):
    def is_ready(self) -> bool:
        ...


class StaticAuthGate:
    """Auth gate with a fixed answer."""

    def __init__(self, ready: bool = True):
        self.ready = ready

    def is_ready(self) -> bool:
        return self.ready


class DockerConfigAuthGate:
    """Ready when the docker client config holds credentials for the registry.

    Looks at ``$DOCKER_CONFIG/config.json`` (default ``~/.docker/config.json``)
    for an ``auths`` or ``credHelpers`` entry naming the registry host, or a
    global ``credsStore``.
    """

    def __init__(self, registry: str, config_dir: Optional[Path] = None):
        self.registry = registry
        self.config_dir = config_dir

    def _config_file(self) -> Path:
        if self.config_dir is not None:
            base = Path(self.config_dir)
        else:
            base = Path(os.getenv("DOCKER_CONFIG") or Path.home() / ".docker")
        return base / "config.json"

    def is_ready(self) -> bool:
        path = self._config_file()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as e:
            log_error(f"Unreadable docker config {path}: {e}")
            return False

        host = self.registry.split("/")[0]
        auths = data.get("auths") or {}
        for key in auths:
            if key.replace("https://", "").replace("http://", "").split("/")[0] == host:
                return True
        if host in (data.get("credHelpers") or {}):
            return True
        return bool(data.get("credsStore"))


class DockerCliBuilder:
    """Build-and-push through the docker command line."""

    def __init__(self, docker_binary: str = "docker", *, timeout: float = 600.0, push: bool = True):
        self.docker_binary = docker_binary
        self.timeout = timeout
        self.push = push

    def _run(self, cmd: List[str], action: str) -> None:
        log_debug(f"DOCKER_OP_START: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except TimeoutExpired as e:
            raise BuildExecutionError(f"docker {action} timed out after {self.timeout:g}s") from e
        except OSError as e:
            raise BuildExecutionError(f"docker {action} could not start: {e}") from e
        log_debug(f"DOCKER_OP_END: {action} rc={result.returncode}")

        for line in (result.stdout or "").splitlines():
            log_debug(f"[docker {action}] {line}")
        if result.returncode != 0:
            stderr = (result.stderr or "").strip().splitlines()
            detail = " | ".join(stderr[-5:]) if stderr else f"exit code {result.returncode}"
            raise BuildExecutionError(f"docker {action} failed: {detail}")

    def build(self, checkout_path: Path, dockerfile_path: Path, image_tag: str) -> None:
        self._run(
            [self.docker_binary, "build", "-t", image_tag, "-f", str(dockerfile_path), str(checkout_path)],
            "build",
        )
        if self.push:
            self._run([self.docker_binary, "push", image_tag], "push")


class BuildOrchestrator:
    """Creates build records and drives the external build for a repository."""

    def __init__(
        self,
        config: Callable[[], BuildwatchConfig],
        store: StateStore,
        locks: RepositoryLocks,
        builder: ImageBuilder,
        auth_gate: RegistryAuthGate,
        repos_dir: Path,
    ):
        self._config = config
        self.store = store
        self.locks = locks
        self.builder = builder
        self.auth_gate = auth_gate
        self.repos_dir = Path(repos_dir)

    def image_tag(self, repo: RepositoryConfig, at: Optional[datetime] = None) -> str:
        config = self._config()
        if config.build.tag_scheme == "latest":
            tag = "latest"
        else:
            at = at or self.store.now()
            tag = str(int(at.timestamp() * 1000))
        return f"{config.registry}/{repo.registry_namespace}/{repo.image_name}:{tag}"

    def trigger(self, repo: RepositoryConfig) -> str:
        """Build a repository on demand, without waiting for a running pass.

        Returns:
            The published image tag

        Raises:
            BuildInProgressError: If the repository is busy
            BuildError: If the build fails
        """
        if not self.locks.acquire(repo.id, timeout=0):
            raise BuildInProgressError(f"Repository {repo.id} is busy (reconciling or building)")
        try:
            return self.run_build(repo)
        finally:
            self.locks.release(repo.id)

    def run_build(self, repo: RepositoryConfig) -> str:
        """Build a repository; the caller must hold the repository's lock."""
        started = self.store.now()
        image_tag = self.image_tag(repo, started)
        try:
            record = self.store.begin_build(repo.id, image_tag, at=started)
        except BuildInFlightError as e:
            raise BuildInProgressError(str(e)) from e

        checkout = (self.repos_dir / repo.id).resolve()
        dockerfile = checkout / repo.dockerfile_path
        log_info(f"Starting image build {image_tag}", repo=repo.id, dockerfile=str(dockerfile))

        try:
            if not dockerfile.is_file():
                self._log_checkout_listing(checkout)
                raise DockerfileMissingError(f"Dockerfile not found: {dockerfile}")
            if not self.auth_gate.is_ready():
                raise AuthNotReadyError(
                    f"Registry login for {self._config().registry} is not ready"
                )
            with timeit("docker.build", repo=repo.id, image=image_tag):
                self.builder.build(checkout, dockerfile, image_tag)
        except BuildError as e:
            self.store.finish_build(repo.id, record.id, BuildStatus.FAILURE, str(e))
            log_error(f"Build failed for {repo.id}: {e}")
            raise
        except Exception as e:
            self.store.finish_build(repo.id, record.id, BuildStatus.FAILURE, str(e))
            log_error(f"Build failed for {repo.id}: {e}")
            raise BuildExecutionError(str(e)) from e

        self.store.finish_build(repo.id, record.id, BuildStatus.SUCCESS)
        log_info(f"Published image {image_tag}", repo=repo.id)
        return image_tag

    def _log_checkout_listing(self, checkout: Path) -> None:
        try:
            entries = sorted(p.name for p in checkout.iterdir())
        except OSError as e:
            log_error(f"Cannot list checkout {checkout}: {e}")
            return
        log_info(f"Checkout {checkout} contains: {', '.join(entries) or '(empty)'}")
