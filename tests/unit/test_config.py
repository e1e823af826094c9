"""Unit tests for configuration loading and store selection."""

import logging
import logging.handlers

import pytest
import yaml

from threatvault.config.loader import (
    ConfigurationLoader,
    DatabaseConfig,
    ThreatVaultConfig,
    load_config,
    setup_logging,
)
from threatvault.core.exceptions import ConfigurationError
from threatvault.store import InMemoryObjectStore, PostgresObjectStore, create_store

ENV_VARS = ("DATABASE_URL", "THREATVAULT_STORE", "ATTACK_SPEC_VERSION", "LOG_LEVEL", "PORT", "DEBUG")


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    def write(data):
        path = tmp_path / "config.yaml"
        path.write_text(data if isinstance(data, str) else yaml.safe_dump(data), encoding="utf-8")
        return path
    return write


class TestLoadConfig:

    def test_defaults_when_file_missing(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")

        assert config.database.backend == "memory"
        assert config.attack.spec_version == "3.3.0"
        assert config.attack.default_object_spec_version == "2.0.0"
        assert config.imports.progress_every == 1
        assert config.attack.ics_data_sources is None

    def test_values_from_file(self, config_file):
        path = config_file({
            "database": {"backend": "postgres", "url": "postgresql://vault@db/vault"},
            "attack": {"spec_version": "3.2.0", "ics_data_sources": ["Asset Inventory", "Network Traffic"]},
            "imports": {"progress_every": 25},
            "api": {"port": 9000},
        })

        config = load_config(path)

        assert config.database.backend == "postgres"
        assert config.attack.spec_version == "3.2.0"
        assert config.imports.progress_every == 25
        assert config.attack.ics_data_sources == ["Asset Inventory", "Network Traffic"]
        assert config.api.port == 9000

    def test_environment_overrides_file(self, config_file, monkeypatch):
        path = config_file({"attack": {"spec_version": "3.2.0"}, "logging": {"level": "INFO"}})
        monkeypatch.setenv("ATTACK_SPEC_VERSION", "3.3.0")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("DEBUG", "true")

        config = load_config(path)

        assert config.attack.spec_version == "3.3.0"
        assert config.logging.level == "DEBUG"
        assert config.api.debug is True

    def test_database_url_selects_postgres(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://vault@db/vault")

        config = load_config(tmp_path / "absent.yaml")

        assert config.database.backend == "postgres"
        assert config.database.url == "postgresql://vault@db/vault"

    def test_explicit_store_wins_over_database_url(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://vault@db/vault")
        monkeypatch.setenv("THREATVAULT_STORE", "memory")

        assert load_config(tmp_path / "absent.yaml").database.backend == "memory"

    @pytest.mark.parametrize("data", [
        {"database": {"backend": "sqlite"}},
        {"attack": {"spec_version": "three"}},
        {"imports": {"progress_every": 0}},
    ])
    def test_invalid_values(self, config_file, data):
        with pytest.raises(ConfigurationError):
            load_config(config_file(data))

    def test_unparseable_yaml(self, config_file):
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(config_file("database: [unclosed"))
        assert exc_info.value.config_path.endswith("config.yaml")

    def test_non_mapping_root(self, config_file):
        with pytest.raises(ConfigurationError):
            load_config(config_file("- just\n- a list\n"))

    def test_loader_caches(self, config_file):
        loader = ConfigurationLoader(config_file({"api": {"port": 8100}}))
        assert loader.load_config() is loader.load_config()
        assert loader.load_config().api.port == 8100


class TestSetupLogging:

    def test_file_and_console_handlers(self, tmp_path):
        config = ThreatVaultConfig.model_validate({
            "logging": {"level": "WARNING", "file_path": str(tmp_path / "logs" / "vault.log")}
        })

        setup_logging(config)

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in root.handlers)
        assert (tmp_path / "logs").is_dir()
        for handler in root.handlers:
            handler.close()

    def test_console_only(self):
        config = ThreatVaultConfig.model_validate({"logging": {"file_path": None}})

        setup_logging(config)

        handlers = logging.getLogger().handlers
        assert len(handlers) == 1
        assert not isinstance(handlers[0], logging.FileHandler)


class TestCreateStore:

    def test_memory_backend(self):
        assert isinstance(create_store(DatabaseConfig()), InMemoryObjectStore)

    def test_postgres_backend_is_not_opened(self):
        store = create_store(DatabaseConfig(backend="postgres", url="postgresql://vault@db/vault", max_connections=4))

        assert isinstance(store, PostgresObjectStore)
        assert not store.is_open
        assert store.max_connections == 4
