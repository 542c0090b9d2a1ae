"""Configuration loading, saving and live access for buildwatch.

Handles TOML loading, environment overlay, TOML writing and a thread-safe
holder that the scheduler reads between passes.
"""

from __future__ import annotations

import os
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional

# TOML loading: tomllib (3.11+) with tomli fallback
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore

import tomlkit
from pydantic import ValidationError

from .config_schema import BuildwatchConfig


CONFIG_FILENAME = "buildwatch.toml"
ENV_CONFIG_PATH = "BUILDWATCH_CONFIG"

# Environment variable -> (section path, key)
ENV_MAPPING: Dict[str, tuple[list[str], str]] = {
    "BUILDWATCH_REGISTRY": ([], "registry"),
    "BUILDWATCH_POLL_INTERVAL": ([], "poll_interval_minutes"),
    "BUILDWATCH_REPOS_DIR": ([], "repos_dir"),
    "BUILDWATCH_GIT_STRATEGY": (["git"], "strategy"),
    "BUILDWATCH_GIT_SSH_KEY": (["git"], "ssh_key"),
    "BUILDWATCH_BUILD_TIMEOUT": (["build"], "timeout"),
    "BUILDWATCH_LOG_LEVEL": (["logging"], "level"),
    "BUILDWATCH_LOG_DIR": (["logging"], "dir"),
    "BUILDWATCH_LOG_DISABLE_FILE": (["logging"], "disable_file"),
    "BUILDWATCH_HOST": (["server"], "host"),
    "BUILDWATCH_PORT": (["server"], "port"),
}


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


def default_config_path() -> Path:
    """Config path from $BUILDWATCH_CONFIG, else ./buildwatch.toml."""
    return Path(os.getenv(ENV_CONFIG_PATH) or CONFIG_FILENAME)


def _load_toml(path: Path) -> Dict[str, Any]:
    """Load a TOML file.

    Raises:
        ConfigError: If file cannot be loaded or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}")


def _apply_env_overlay(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config dict."""
    result = dict(config_dict)

    for env_var, (section_path, key_name) in ENV_MAPPING.items():
        value = os.getenv(env_var)
        if value is None:
            continue

        current = result
        for section in section_path:
            current[section] = dict(current.get(section) or {})
            current = current[section]

        # Type conversion happens during Pydantic validation
        current[key_name] = value

    return result


def validate_config(config_dict: Dict[str, Any]) -> BuildwatchConfig:
    try:
        return BuildwatchConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}")


def read_config_file(path: Path) -> Dict[str, Any]:
    """Raw settings stored in a TOML file, without defaults or env overrides."""
    if not path.exists():
        return {}
    return _load_toml(path)


def load_config(path: Optional[Path] = None, skip_env: bool = False) -> BuildwatchConfig:
    """Load buildwatch configuration.

    Precedence (later wins): built-in defaults, the TOML file, environment
    variables. A missing file is not an error; defaults are used.

    Args:
        path: TOML file (default: $BUILDWATCH_CONFIG or ./buildwatch.toml)
        skip_env: Skip environment variable overlay

    Raises:
        ConfigError: If the file is invalid
    """
    path = Path(path) if path is not None else default_config_path()
    config_dict = read_config_file(path)

    if not skip_env:
        config_dict = _apply_env_overlay(config_dict)

    return validate_config(config_dict)


def dump_config(config: BuildwatchConfig) -> str:
    """Render a config as TOML text."""
    data = config.model_dump(mode="json")
    doc = tomlkit.document()
    doc.add(tomlkit.comment(" buildwatch configuration"))
    doc.add(tomlkit.nl())

    repositories = data.pop("repositories")
    sections = {k: v for k, v in data.items() if isinstance(v, dict)}
    for key, value in data.items():
        if key not in sections:
            doc.add(key, value)
    if not repositories:
        doc.add("repositories", tomlkit.array())

    for section, values in sections.items():
        table = tomlkit.table()
        for key, value in values.items():
            table.add(key, value)
        doc.add(section, table)

    if repositories:
        aot = tomlkit.aot()
        for repo in repositories:
            table = tomlkit.table()
            for key, value in repo.items():
                table.add(key, value)
            aot.append(table)
        doc.add("repositories", aot)

    return tomlkit.dumps(doc)


def save_config(config: BuildwatchConfig, path: Optional[Path] = None) -> Path:
    """Write config to TOML, replacing the file atomically."""
    path = Path(path) if path is not None else default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(dump_config(config), encoding="utf-8")
    os.replace(tmp, path)
    return path


class ConfigStore:
    """Thread-safe holder for the live configuration.

    Readers get the current immutable snapshot; ``update`` validates a patch
    before swapping it in, so a bad edit never replaces a good config.

    The store keeps the settings as stored on disk apart from the live config.
    Edits are applied to the stored settings and saved; environment overrides
    are layered on top only for the live config, so they never reach the file.
    """

    def __init__(
        self,
        config: BuildwatchConfig,
        path: Optional[Path] = None,
        *,
        persist: bool = True,
        stored: Optional[Dict[str, Any]] = None,
        apply_env: bool = False,
    ):
        self._config = config
        self._stored = dict(stored) if stored is not None else config.model_dump(mode="json")
        self._apply_env = apply_env
        self._path = Path(path) if path is not None else None
        self._persist = persist and self._path is not None
        self._lock = threading.Lock()

    @classmethod
    def from_file(
        cls,
        path: Optional[Path] = None,
        *,
        persist: bool = True,
        skip_env: bool = False,
    ) -> "ConfigStore":
        path = Path(path) if path is not None else default_config_path()
        stored = read_config_file(path)
        live = stored if skip_env else _apply_env_overlay(stored)
        return cls(
            validate_config(live),
            path,
            persist=persist,
            stored=stored,
            apply_env=not skip_env,
        )

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def get(self) -> BuildwatchConfig:
        with self._lock:
            return self._config

    def update(self, patch: Dict[str, Any]) -> BuildwatchConfig:
        """Merge top-level keys from ``patch`` into the config and persist it.

        Raises:
            ConfigError: If the merged config does not validate
        """
        with self._lock:
            merged = dict(self._stored)
            merged.update(patch)
            stored = validate_config(merged)
            config = validate_config(_apply_env_overlay(merged)) if self._apply_env else stored
            if self._persist:
                save_config(stored, self._path)
            self._stored = stored.model_dump(mode="json")
            self._config = config
            return config
