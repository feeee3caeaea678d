"""
Unit tests for configuration loading and validation.
"""

import pytest

from meeting_library.config import (
    EventsConfig,
    LibraryConfig,
    MeetingsConfig,
    ObservabilityConfig,
    ServiceConfig,
    StorageConfig,
)


class TestConfigFromEnv:
    """Tests for environment loading."""

    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MEETING_LIBRARY_DATA_DIR", str(tmp_path))
        for name in (
            "LIBRARY_DEFAULT_PAGE_SIZE",
            "LIBRARY_MAX_PAGE_SIZE",
            "LIBRARY_CLEANUP_DANGLING",
            "MEETING_DEFAULT_VISIBILITY",
            "EVENTS_ENABLED",
        ):
            monkeypatch.delenv(name, raising=False)

        config = ServiceConfig.from_env()
        assert config.storage.data_dir == str(tmp_path)
        assert config.library.default_page_size == 10
        assert config.library.max_page_size == 100
        assert config.library.cleanup_dangling is True
        assert config.meetings.default_visibility == "public"
        assert config.events.enabled is False

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MEETING_LIBRARY_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("LIBRARY_DEFAULT_PAGE_SIZE", "25")
        monkeypatch.setenv("LIBRARY_REBUILD_BATCH_SIZE", "50")
        monkeypatch.setenv("LIBRARY_CLEANUP_DANGLING", "false")
        monkeypatch.setenv("MEETING_DEFAULT_VISIBILITY", "Private")
        monkeypatch.setenv("EVENTS_ENABLED", "true")
        monkeypatch.setenv("EVENTS_TOPIC", "meetings")
        monkeypatch.setenv("LOG_FORMAT", "text")

        config = ServiceConfig.from_env()
        assert config.storage.wal_mode is False
        assert config.library.default_page_size == 25
        assert config.library.rebuild_batch_size == 50
        assert config.library.cleanup_dangling is False
        assert config.meetings.default_visibility == "private"
        assert config.events == EventsConfig(enabled=True, topic="meetings")
        assert config.observability.log_format == "text"

    def test_invalid_values_rejected(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MEETING_LIBRARY_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("MEETING_DEFAULT_VISIBILITY", "secret")
        with pytest.raises(ValueError):
            ServiceConfig.from_env()


class TestServiceConfigValidate:
    """Tests for ServiceConfig.validate."""

    def config(self, tmp_path, **sections) -> ServiceConfig:
        return ServiceConfig(storage=StorageConfig(data_dir=str(tmp_path)), **sections)

    def test_default_config_is_valid(self, tmp_path):
        self.config(tmp_path).validate()

    @pytest.mark.parametrize(
        "sections",
        [
            {"library": LibraryConfig(default_page_size=0)},
            {"library": LibraryConfig(default_page_size=200, max_page_size=100)},
            {"library": LibraryConfig(rebuild_batch_size=0)},
            {"meetings": MeetingsConfig(default_visibility="hidden")},
            {"events": EventsConfig(enabled=True, topic="")},
            {"observability": ObservabilityConfig(log_format="xml")},
        ],
    )
    def test_invalid(self, tmp_path, sections):
        with pytest.raises(ValueError):
            self.config(tmp_path, **sections).validate()

    def test_configs_are_frozen(self):
        config = LibraryConfig()
        with pytest.raises(AttributeError):
            config.max_page_size = 5

    def test_log_config(self, tmp_path, caplog):
        with caplog.at_level("INFO", logger="meeting_library.config"):
            self.config(tmp_path).log_config()
        assert "Meeting library configuration loaded" in caplog.text
