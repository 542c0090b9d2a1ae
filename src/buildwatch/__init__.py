"""buildwatch: keep repository mirrors in sync and rebuild images on new commits."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("buildwatch")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .builder import BuildError, BuildOrchestrator  # noqa: F401
from .config_schema import BuildwatchConfig, RepositoryConfig  # noqa: F401
from .git_reconcile import GitReconciler, GitReconcileError  # noqa: F401
from .retry import run_with_retry  # noqa: F401
from .scheduler import MonitorScheduler, SchedulerError  # noqa: F401
from .service import BuildwatchService  # noqa: F401
from .state import BuildRecord, BuildStatus, RepositoryState, StateStore  # noqa: F401

__all__ = [
    "BuildError",
    "BuildOrchestrator",
    "BuildRecord",
    "BuildStatus",
    "BuildwatchConfig",
    "BuildwatchService",
    "GitReconcileError",
    "GitReconciler",
    "MonitorScheduler",
    "RepositoryConfig",
    "RepositoryState",
    "SchedulerError",
    "StateStore",
    "run_with_retry",
    "__version__",
]
