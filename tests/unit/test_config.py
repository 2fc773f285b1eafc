"""
Unit tests for configuration and engine wiring.

Tests cover:
- Loading configuration from environment variables
- Configuration validation
- Logging setup
- Engine construction
"""

import json
import logging

import json_log_formatter
import pytest

from tests.helpers import build_catalog
from ticketdb.ticketdb_core.apply.acl import StaticGroupResolver
from ticketdb.ticketdb_core.config import (
    CatalogConfig,
    ChangeLogConfig,
    EngineConfig,
    ObservabilityConfig,
    StorageConfig,
)
from ticketdb.ticketdb_core.engine import Engine, setup_logging
from ticketdb.ticketdb_core.errors import NotFoundError
from ticketdb.ticketdb_core.schema.catalog import FieldCatalog


class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_defaults(self):
        config = EngineConfig()
        assert config.storage.wal_mode is True
        assert config.changelog.page_size == 500
        assert str(config.storage.db_path).endswith("ticketdb.db")

    def test_from_env(self, monkeypatch, data_dir):
        monkeypatch.setenv("DATA_DIR", data_dir)
        monkeypatch.setenv("DB_FILENAME", "tickets.db")
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("CHANGELOG_PAGE_SIZE", "50")
        monkeypatch.setenv("LOG_FORMAT", "text")
        monkeypatch.delenv("CATALOG_PATH", raising=False)

        config = EngineConfig.from_env()
        assert config.storage.db_path.name == "tickets.db"
        assert config.storage.wal_mode is False
        assert config.changelog.page_size == 50
        assert config.observability.log_format == "text"

    def test_invalid_log_format(self):
        config = EngineConfig(observability=ObservabilityConfig(log_format="xml"))
        with pytest.raises(ValueError, match="LOG_FORMAT"):
            config.validate()

    def test_invalid_page_size(self):
        config = EngineConfig(changelog=ChangeLogConfig(page_size=0))
        with pytest.raises(ValueError, match="CHANGELOG_PAGE_SIZE"):
            config.validate()

    def test_missing_catalog_path(self, monkeypatch, data_dir):
        monkeypatch.setenv("DATA_DIR", data_dir)
        monkeypatch.setenv("CATALOG_PATH", f"{data_dir}/missing.json")
        with pytest.raises(ValueError, match="CATALOG_PATH"):
            EngineConfig.from_env()


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_format(self):
        setup_logging(ObservabilityConfig(log_level="DEBUG", log_format="json"))
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_json_output_carries_extra(self):
        formatter = json_log_formatter.JSONFormatter()
        record = logging.LogRecord("ticketdb", logging.INFO, __file__, 1, "Updated", None, None)
        record.entity_id = 42
        payload = json.loads(formatter.format(record))
        assert payload["message"] == "Updated"
        assert payload["entity_id"] == 42

    def test_text_format(self):
        setup_logging(ObservabilityConfig(log_level="warning", log_format="text"))
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert not isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)


class TestEngine:
    """Tests for engine construction."""

    def test_requires_frozen_catalog(self, data_dir):
        config = EngineConfig(storage=StorageConfig(data_dir=data_dir, wal_mode=False))
        with pytest.raises(ValueError, match="frozen"):
            Engine(config, FieldCatalog(), StaticGroupResolver())

    def test_from_config_loads_catalog(self, data_dir):
        path = f"{data_dir}/catalog.json"
        with open(path, "w", encoding="utf-8") as f:
            f.write(build_catalog().to_json())

        config = EngineConfig(storage=StorageConfig(data_dir=data_dir, wal_mode=False))
        config.catalog = CatalogConfig(catalog_path=path)
        engine = Engine.from_config(config, StaticGroupResolver())
        assert engine.catalog.fingerprint == build_catalog().fingerprint

    def test_from_config_without_catalog(self, data_dir):
        config = EngineConfig(storage=StorageConfig(data_dir=data_dir))
        with pytest.raises(ValueError, match="CATALOG_PATH"):
            Engine.from_config(config, StaticGroupResolver())

    def test_operations_before_start(self, data_dir):
        config = EngineConfig(storage=StorageConfig(data_dir=data_dir, wal_mode=False))
        engine = Engine(config, build_catalog(), StaticGroupResolver())
        assert not engine.database.exists()
        with pytest.raises(NotFoundError):
            with engine.database.connect():
                pass

    @pytest.mark.asyncio
    async def test_acl_administration(self, engine):
        acl = await engine.create_acl({1: 0x1F})
        await engine.replace_acl(acl.acl_id, {2: 0x01}, name="readers")
        loaded = await engine.get_acl(acl.acl_id)
        assert loaded.name == "readers"
        assert dict(loaded.entries) == {2: 0x01}
