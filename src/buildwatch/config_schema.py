"""Configuration schema for buildwatch.

Defines all configuration options with types, defaults, and validation.
Uses Pydantic for schema enforcement and clear error messages.
"""

from __future__ import annotations

import re
import warnings
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class RepositoryConfig(BaseModel):
    """One tracked source repository.

    The ``id`` names the mirror directory under ``repos_dir`` and must not
    change once a mirror exists on disk.
    """

    id: str = Field(description="Unique repository identifier (mirror directory name)")
    name: str = Field(default="", description="Display name (empty = use id)")
    git_url: str = Field(description="Remote URL to clone and fetch from")
    branch: str = Field(default="main", description="Branch to track")
    enabled: bool = Field(default=True, description="Include in monitoring passes")
    registry_namespace: str = Field(description="Image namespace in the registry")
    image_name: str = Field(description="Image repository name")
    dockerfile_path: str = Field(
        default="Dockerfile",
        description="Dockerfile path relative to the checkout root",
    )

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Reject ids that cannot be used as a single directory name."""
        if not _SAFE_ID.match(v) or v in {".", ".."}:
            raise ValueError(
                f"Repository id {v!r} must be a plain name "
                "(letters, digits, '.', '_' or '-')"
            )
        return v

    @field_validator("dockerfile_path")
    @classmethod
    def validate_dockerfile_path(cls, v: str) -> str:
        """Dockerfile must stay inside the checkout."""
        path = Path(v)
        if path.is_absolute() or ".." in path.parts:
            raise ValueError(f"dockerfile_path must be relative to the checkout: {v}")
        return v

    @property
    def display_name(self) -> str:
        return self.name or self.id


class RetryConfig(BaseModel):
    """Retry budget for git operations."""

    max_retries: int = Field(
        default=3,
        ge=0,
        description="Additional attempts after the first failure",
    )
    delay: float = Field(
        default=5.0,
        ge=0,
        description="Seconds between attempts",
    )


class GitConfig(BaseModel):
    """Git reconciliation settings."""

    strategy: Literal["reset", "pull"] = Field(
        default="reset",
        description="reset = hard reset to remote; pull = rebase, merge, then reset",
    )
    ssh_key: str = Field(
        default="",
        description="Path to SSH private key (empty = use default)",
    )
    connection_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout in seconds for connection tests",
    )

    @field_validator("ssh_key")
    @classmethod
    def validate_ssh_key(cls, v: str) -> str:
        """Warn if SSH key path doesn't exist."""
        if v:
            path = Path(v).expanduser()
            if not path.exists():
                warnings.warn(
                    f"SSH key path does not exist: {v}",
                    UserWarning,
                )
            elif not path.is_file():
                warnings.warn(
                    f"SSH key path is not a file: {v}",
                    UserWarning,
                )
        return v


class BuildConfig(BaseModel):
    """Image build and publish settings."""

    timeout: float = Field(
        default=600.0,
        gt=0,
        description="Seconds before a docker build or push is treated as failed",
    )
    tag_scheme: Literal["timestamp", "latest"] = Field(
        default="timestamp",
        description="Image tag: epoch milliseconds or 'latest'",
    )
    push: bool = Field(
        default=True,
        description="Push the image after a successful build",
    )
    docker_binary: str = Field(
        default="docker",
        description="Docker CLI executable",
    )
    require_auth: bool = Field(
        default=True,
        description="Refuse builds until the registry login is present",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    dir: str = Field(
        default="",
        description="Log directory (empty = ~/.buildwatch/logs)",
    )
    max_bytes: int = Field(
        default=10485760,  # 10MB
        ge=0,
        description="Maximum log file size in bytes",
    )
    backup_count: int = Field(
        default=5,
        ge=0,
        description="Number of backup log files to keep",
    )
    disable_file: bool = Field(
        default=False,
        description="Disable file logging (stderr only)",
    )


class ServerConfig(BaseModel):
    """HTTP control plane settings."""

    host: str = Field(default="127.0.0.1", description="Bind host")
    port: int = Field(default=3000, ge=1, le=65535, description="Bind port")


class BuildwatchConfig(BaseModel):
    """Root configuration model."""

    registry: str = Field(
        default="registry.cn-hangzhou.aliyuncs.com",
        description="Registry host that images are pushed to",
    )
    poll_interval_minutes: float = Field(
        default=5,
        gt=0,
        description="Minutes between monitoring passes",
    )
    repos_dir: str = Field(
        default="repos",
        description="Directory holding one mirror per repository",
    )
    repositories: List[RepositoryConfig] = Field(default_factory=list)

    retry: RetryConfig = Field(default_factory=RetryConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @model_validator(mode="after")
    def check_unique_ids(self) -> "BuildwatchConfig":
        seen = set()
        for repo in self.repositories:
            if repo.id in seen:
                raise ValueError(f"Duplicate repository id: {repo.id}")
            seen.add(repo.id)
        return self

    @classmethod
    def default(cls) -> "BuildwatchConfig":
        """Create config with all defaults."""
        return cls()

    def get_repository(self, repo_id: str) -> Optional[RepositoryConfig]:
        for repo in self.repositories:
            if repo.id == repo_id:
                return repo
        return None

    def enabled_repositories(self) -> List[RepositoryConfig]:
        return [repo for repo in self.repositories if repo.enabled]
