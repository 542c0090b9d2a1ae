"""Wiring of the buildwatch components around one configuration store."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from .builder import (
    BuildOrchestrator,
    DockerCliBuilder,
    DockerConfigAuthGate,
    ImageBuilder,
    RegistryAuthGate,
    StaticAuthGate,
)
from .config_loader import ConfigStore
from .config_schema import RepositoryConfig
from .git_reconcile import GitReconciler
from .lock import RepositoryLocks
from .observability import configure_logging
from .scheduler import MonitorScheduler
from .state import StateStore


class UnknownRepositoryError(KeyError):
    """No repository with the requested id is configured."""

    def __init__(self, repo_id: str):
        super().__init__(repo_id)
        self.repo_id = repo_id

    def __str__(self) -> str:
        return f"Repository not found: {self.repo_id}"


class BuildwatchService:
    """Owns the state store, locks, reconciler, orchestrator and scheduler.

    The mirror directory and docker settings are read once at construction;
    repository list, registry, tag scheme and poll interval are re-read from
    the config store on every use.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        *,
        builder: Optional[ImageBuilder] = None,
        auth_gate: Optional[RegistryAuthGate] = None,
        reconciler: Optional[GitReconciler] = None,
        store: Optional[StateStore] = None,
    ):
        self.config_store = config_store
        config = config_store.get()

        self.store = store or StateStore()
        self.locks = RepositoryLocks()
        self.reconciler = reconciler or GitReconciler.from_config(config)

        if builder is None:
            builder = DockerCliBuilder(
                config.build.docker_binary,
                timeout=config.build.timeout,
                push=config.build.push,
            )
        if auth_gate is None:
            if config.build.require_auth and config.build.push:
                auth_gate = DockerConfigAuthGate(config.registry)
            else:
                auth_gate = StaticAuthGate(True)

        self.orchestrator = BuildOrchestrator(
            config_store.get,
            self.store,
            self.locks,
            builder,
            auth_gate,
            self.reconciler.repos_dir,
        )
        self.scheduler = MonitorScheduler(
            config_store.get,
            self.store,
            self.locks,
            self.reconciler,
            self.orchestrator,
        )

    @classmethod
    def from_config_file(cls, path: Optional[Path] = None, **kwargs) -> "BuildwatchService":
        config_store = ConfigStore.from_file(path)
        configure_logging(config_store.get().logging)
        return cls(config_store, **kwargs)

    def repository(self, repo_id: str) -> RepositoryConfig:
        repo = self.config_store.get().get_repository(repo_id)
        if repo is None:
            raise UnknownRepositoryError(repo_id)
        return repo

    def trigger_build(self, repo_id: str) -> str:
        """Build a repository now, bypassing change detection."""
        return self.orchestrator.trigger(self.repository(repo_id))

    def test_connection(self, repo_id: str) -> List[str]:
        return self.reconciler.test_connection(self.repository(repo_id).git_url)

    def status(self) -> Dict[str, Any]:
        return self.scheduler.status()
