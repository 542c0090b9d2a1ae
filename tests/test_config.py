"""Tests for config schema, loader and the live config store."""

from __future__ import annotations

import pytest

from buildwatch.config_loader import (
    ConfigError,
    ConfigStore,
    dump_config,
    load_config,
    save_config,
)
from buildwatch.config_schema import BuildwatchConfig, RepositoryConfig


SAMPLE = """
registry = "registry.example.com"
poll_interval_minutes = 2

[build]
tag_scheme = "latest"
push = false

[[repositories]]
id = "web"
name = "Web frontend"
git_url = "git@example.com:acme/web.git"
registry_namespace = "acme"
image_name = "web"

[[repositories]]
id = "api"
git_url = "https://example.com/acme/api.git"
branch = "develop"
enabled = false
registry_namespace = "acme"
image_name = "api"
dockerfile_path = "deploy/Dockerfile"
"""


def repo_dict(repo_id: str) -> dict:
    return {
        "id": repo_id,
        "git_url": f"https://example.com/{repo_id}.git",
        "registry_namespace": "acme",
        "image_name": repo_id,
    }


class TestSchema:
    def test_defaults(self):
        config = BuildwatchConfig.default()
        assert config.registry == "registry.cn-hangzhou.aliyuncs.com"
        assert config.poll_interval_minutes == 5
        assert config.repos_dir == "repos"
        assert config.repositories == []
        assert config.retry.max_retries == 3
        assert config.retry.delay == 5.0
        assert config.git.strategy == "reset"
        assert config.build.tag_scheme == "timestamp"
        assert config.server.port == 3000

    def test_repository_defaults(self):
        repo = RepositoryConfig(**repo_dict("web"))
        assert repo.branch == "main"
        assert repo.enabled is True
        assert repo.dockerfile_path == "Dockerfile"
        assert repo.display_name == "web"

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError, match="Duplicate repository id"):
            BuildwatchConfig(repositories=[repo_dict("web"), repo_dict("web")])

    @pytest.mark.parametrize("bad_id", ["../escape", "a/b", "", ".hidden"])
    def test_unsafe_ids_rejected(self, bad_id):
        with pytest.raises(ValueError):
            RepositoryConfig(**{**repo_dict("x"), "id": bad_id})

    @pytest.mark.parametrize("bad_path", ["/etc/Dockerfile", "../Dockerfile"])
    def test_dockerfile_must_stay_in_checkout(self, bad_path):
        with pytest.raises(ValueError, match="dockerfile_path"):
            RepositoryConfig(**repo_dict("web"), dockerfile_path=bad_path)

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValueError):
            BuildwatchConfig(git={"strategy": "merge"})

    def test_missing_ssh_key_warns(self, tmp_path):
        with pytest.warns(UserWarning, match="does not exist"):
            BuildwatchConfig(git={"ssh_key": str(tmp_path / "id_missing")})

    def test_lookup_helpers(self):
        config = BuildwatchConfig(
            repositories=[repo_dict("web"), {**repo_dict("api"), "enabled": False}]
        )
        assert config.get_repository("api").id == "api"
        assert config.get_repository("nope") is None
        assert [r.id for r in config.enabled_repositories()] == ["web"]


class TestLoader:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.toml", skip_env=True)
        assert config.model_dump() == BuildwatchConfig.default().model_dump()

    def test_load_toml(self, tmp_path):
        path = tmp_path / "buildwatch.toml"
        path.write_text(SAMPLE)

        config = load_config(path, skip_env=True)

        assert config.registry == "registry.example.com"
        assert config.poll_interval_minutes == 2
        assert config.build.tag_scheme == "latest"
        assert config.build.push is False
        assert [r.id for r in config.repositories] == ["web", "api"]
        api = config.get_repository("api")
        assert api.branch == "develop"
        assert api.enabled is False
        assert api.dockerfile_path == "deploy/Dockerfile"

    def test_env_overlay(self, tmp_path, monkeypatch):
        path = tmp_path / "buildwatch.toml"
        path.write_text(SAMPLE)
        monkeypatch.setenv("BUILDWATCH_REGISTRY", "registry.internal")
        monkeypatch.setenv("BUILDWATCH_POLL_INTERVAL", "0.5")
        monkeypatch.setenv("BUILDWATCH_GIT_STRATEGY", "pull")
        monkeypatch.setenv("BUILDWATCH_PORT", "8088")

        config = load_config(path)

        assert config.registry == "registry.internal"
        assert config.poll_interval_minutes == 0.5
        assert config.git.strategy == "pull"
        assert config.server.port == 8088
        assert config.build.tag_scheme == "latest"

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.toml"
        path.write_text('registry = "from-env.example.com"\n')
        monkeypatch.setenv("BUILDWATCH_CONFIG", str(path))
        assert load_config().registry == "from-env.example.com"

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "buildwatch.toml"
        path.write_text("registry = [unterminated\n")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path, skip_env=True)

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "buildwatch.toml"
        path.write_text("poll_interval_minutes = 0\n")
        with pytest.raises(ConfigError, match="validation failed"):
            load_config(path, skip_env=True)

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "buildwatch.toml"
        path.write_text(SAMPLE)
        original = load_config(path, skip_env=True)

        out = save_config(original, tmp_path / "copy" / "buildwatch.toml")

        assert load_config(out, skip_env=True).model_dump() == original.model_dump()
        assert not out.with_name(out.name + ".tmp").exists()

    def test_dump_without_repositories(self):
        text = dump_config(BuildwatchConfig.default())
        assert "repositories = []" in text
        assert 'registry = "registry.cn-hangzhou.aliyuncs.com"' in text


class TestConfigStore:
    def test_update_persists(self, tmp_path):
        path = tmp_path / "buildwatch.toml"
        store = ConfigStore(BuildwatchConfig.default(), path)

        store.update({"repositories": [repo_dict("web")], "poll_interval_minutes": 1})

        assert [r.id for r in store.get().repositories] == ["web"]
        reloaded = load_config(path, skip_env=True)
        assert reloaded.poll_interval_minutes == 1
        assert reloaded.repositories[0].id == "web"

    def test_invalid_update_keeps_previous_config(self, tmp_path):
        path = tmp_path / "buildwatch.toml"
        store = ConfigStore(BuildwatchConfig.default(), path)
        before = store.get()

        with pytest.raises(ConfigError):
            store.update({"repositories": [repo_dict("web"), repo_dict("web")]})

        assert store.get() is before
        assert not path.exists()

    def test_non_persistent_store_writes_nothing(self, tmp_path):
        path = tmp_path / "buildwatch.toml"
        store = ConfigStore(BuildwatchConfig.default(), path, persist=False)
        store.update({"registry": "registry.example.com"})
        assert store.get().registry == "registry.example.com"
        assert not path.exists()

    def test_env_overrides_are_live_but_never_saved(self, tmp_path, monkeypatch):
        path = tmp_path / "buildwatch.toml"
        path.write_text('registry = "file.example.com"\n')
        monkeypatch.setenv("BUILDWATCH_REGISTRY", "env-only.example.com")
        monkeypatch.setenv("BUILDWATCH_REPOS_DIR", str(tmp_path / "env-only-repos"))
        monkeypatch.setenv("BUILDWATCH_LOG_LEVEL", "DEBUG")
        store = ConfigStore.from_file(path)
        assert store.get().registry == "env-only.example.com"

        live = store.update({"poll_interval_minutes": 10})

        assert live.registry == "env-only.example.com"
        assert live.repos_dir == str(tmp_path / "env-only-repos")
        assert live.poll_interval_minutes == 10
        saved = load_config(path, skip_env=True)
        assert saved.registry == "file.example.com"
        assert saved.repos_dir == "repos"
        assert saved.logging.level == "INFO"
        assert saved.poll_interval_minutes == 10
        assert "env-only" not in path.read_text()

    def test_successive_updates_keep_earlier_edits(self, tmp_path, monkeypatch):
        path = tmp_path / "buildwatch.toml"
        path.write_text('registry = "file.example.com"\n')
        monkeypatch.setenv("BUILDWATCH_REGISTRY", "env-only.example.com")
        store = ConfigStore.from_file(path)

        store.update({"poll_interval_minutes": 2})
        store.update({"repositories": [repo_dict("web")]})

        saved = load_config(path, skip_env=True)
        assert saved.poll_interval_minutes == 2
        assert [r.id for r in saved.repositories] == ["web"]
        assert saved.registry == "file.example.com"
        assert store.get().registry == "env-only.example.com"
