"""Unit tests for taskhub.engine.config — taskhub.yaml loading and validation."""

import pytest

from taskhub.engine.config import (
    TaskHubConfig,
    get_config,
    get_environment,
    load_config,
    set_config,
)
from taskhub.engine.errors import ConfigError


class TestDefaults:

    def test_defaults(self):
        cfg = TaskHubConfig()
        assert cfg.environment == "dev"
        assert cfg.documents.max_docs_per_task == 3
        assert cfg.documents.max_files_per_request == 3
        assert cfg.documents.max_file_size_bytes == 5 * 1024 * 1024
        assert cfg.documents.allowed_mime_types == ["application/pdf"]
        assert cfg.redis.session_db == 4
        assert cfg.realtime.channel == "events"
        assert cfg.server.port == 5000

    def test_invalid_environment(self):
        with pytest.raises(ValueError):
            TaskHubConfig(environment="qa")

    def test_bcrypt_rounds_bounds(self):
        with pytest.raises(ValueError):
            TaskHubConfig(security={"bcrypt_rounds": 2})


class TestLoadConfig:

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "taskhub.yaml"
        path.write_text(
            "app:\n"
            "  name: TestHub\n"
            "  environment: staging\n"
            "database:\n"
            "  url: sqlite:///test.db\n"
            "documents:\n"
            "  max_docs_per_task: 5\n"
            "realtime:\n"
            "  redis_relay: true\n",
            encoding="utf-8",
        )
        cfg = load_config(str(path))
        assert cfg.name == "TestHub"
        assert cfg.environment == "staging"
        assert cfg.database.url == "sqlite:///test.db"
        assert cfg.documents.max_docs_per_task == 5
        assert cfg.realtime.redis_relay is True
        assert get_config() is cfg

    def test_explicit_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.yaml"))

    def test_auto_discovery_falls_back_to_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert load_config().environment == "dev"

    def test_auto_discovery_walks_up(self, tmp_path, monkeypatch):
        (tmp_path / "taskhub.yaml").write_text("environment: prod\n", encoding="utf-8")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)
        assert load_config().environment == "prod"
        assert get_environment() == "prod"

    def test_invalid_values_raise_config_error(self, tmp_path):
        path = tmp_path / "taskhub.yaml"
        path.write_text("environment: qa\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "taskhub.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_set_config(self):
        cfg = TaskHubConfig(environment="staging")
        set_config(cfg)
        assert get_config() is cfg
