"""
Tests for configuration loading and validation.

Configuration comes from config/<ENV>.yaml (or CONFIG_PATH); connection
settings and the database override come from environment variables.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from osmgraph.shared import config as config_module
from osmgraph.shared.config import (
    Config,
    FilterEnvelopeConfig,
    ImporterConfig,
    StoreConfig,
    get_config,
    get_settings,
    init_config,
    load_config,
)

PROJECT_ROOT = Path(__file__).parent.parent.parent


class TestLoadConfig:
    def test_test_environment_config(self, monkeypatch):
        monkeypatch.setenv("ENV", "test")
        monkeypatch.delenv("CONFIG_PATH", raising=False)
        monkeypatch.delenv("NEO4J_DATABASE", raising=False)

        config, settings = load_config()

        assert settings.env == "test"
        assert config.store.backend == "memory"
        assert config.importer.dataset_name == "test"
        assert config.importer.commit_interval == 100

    def test_shipped_development_config_is_valid(self, monkeypatch):
        monkeypatch.setenv("CONFIG_PATH", str(PROJECT_ROOT / "config" / "development.yaml"))
        config, _ = load_config()
        assert config.store.backend == "neo4j"
        assert config.importer.commit_interval >= 100

    def test_config_path_and_database_override(self, monkeypatch, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(
            "importer:\n"
            "  dataset_name: '  berlin  '\n"
            "  commit_interval: 250\n"
            "  filter_envelope: {min_lon: 13.0, max_lon: 13.8, min_lat: 52.3, max_lat: 52.7}\n"
            "store:\n"
            "  backend: neo4j\n"
            "  database: osm\n"
        )
        monkeypatch.setenv("CONFIG_PATH", str(path))
        monkeypatch.setenv("NEO4J_DATABASE", "osm_staging")

        config, settings = load_config()

        assert config.importer.dataset_name == "berlin"
        assert config.importer.filter_envelope.max_lat == 52.7
        assert config.store.database == "osm_staging"
        assert settings.neo4j_database == "osm_staging"

    def test_missing_config_file(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "nope.yaml"))
        with pytest.raises(FileNotFoundError):
            load_config()

    def test_empty_file_gives_defaults(self, monkeypatch, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        monkeypatch.setenv("CONFIG_PATH", str(path))
        monkeypatch.delenv("NEO4J_DATABASE", raising=False)

        config, _ = load_config()

        assert config == Config()
        assert config.importer.commit_interval == 5000
        assert config.importer.max_pending_operations is None


class TestValidation:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"commit_interval": 0},
            {"max_pending_operations": 0},
            {"dataset_name": "   "},
            {"max_logged_misses": -1},
            {"progress_log_seconds": 0},
        ],
    )
    def test_invalid_importer_settings(self, kwargs):
        with pytest.raises(ValidationError):
            ImporterConfig(**kwargs)

    def test_short_commit_interval_is_allowed(self):
        assert ImporterConfig(commit_interval=1).commit_interval == 1

    def test_unknown_backend(self):
        with pytest.raises(ValidationError):
            StoreConfig(backend="sqlite")

    def test_inverted_envelope(self):
        with pytest.raises(ValidationError):
            FilterEnvelopeConfig(min_lon=10, max_lon=5, min_lat=0, max_lat=1)


class TestCachedAccessors:
    def test_init_config_populates_cache(self, monkeypatch):
        monkeypatch.setenv("ENV", "test")
        monkeypatch.delenv("CONFIG_PATH", raising=False)
        monkeypatch.setattr(config_module, "_config", None)
        monkeypatch.setattr(config_module, "_settings", None)

        config, settings = init_config()

        assert get_config() is config
        assert get_settings() is settings
        assert config.importer.dataset_name == "test"
