"""
Configuration management for the meeting library.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Configuration objects are immutable once loaded

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Validate cross-setting constraints in ServiceConfig.validate
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

VISIBILITIES = ("private", "loggedin", "public")
LOG_FORMATS = ("json", "text")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for the SQLite databases
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/meeting-library"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("MEETING_LIBRARY_DATA_DIR", "/var/lib/meeting-library"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class LibraryConfig:
    """Library index configuration.

    Attributes:
        default_page_size: Entries per page when no limit is given
        max_page_size: Upper bound on the requested limit
        rebuild_batch_size: Role records read per batch during a rebuild
        cleanup_dangling: Delete role records of deleted resources on rebuild
    """

    default_page_size: int = 10
    max_page_size: int = 100
    rebuild_batch_size: int = 100
    cleanup_dangling: bool = True

    @classmethod
    def from_env(cls) -> LibraryConfig:
        """Load configuration from environment variables."""
        return cls(
            default_page_size=int(os.getenv("LIBRARY_DEFAULT_PAGE_SIZE", "10")),
            max_page_size=int(os.getenv("LIBRARY_MAX_PAGE_SIZE", "100")),
            rebuild_batch_size=int(os.getenv("LIBRARY_REBUILD_BATCH_SIZE", "100")),
            cleanup_dangling=_env_bool("LIBRARY_CLEANUP_DANGLING", "true"),
        )


@dataclass(frozen=True)
class MeetingsConfig:
    """Meetings configuration.

    Attributes:
        default_visibility: Visibility of meetings created without one
    """

    default_visibility: str = "public"

    @classmethod
    def from_env(cls) -> MeetingsConfig:
        """Load configuration from environment variables."""
        return cls(default_visibility=os.getenv("MEETING_DEFAULT_VISIBILITY", "public").lower())


@dataclass(frozen=True)
class EventsConfig:
    """Change event configuration.

    Attributes:
        enabled: Whether change events are published
        topic: Topic the events are published to
    """

    enabled: bool = False
    topic: str = "meeting-library"

    @classmethod
    def from_env(cls) -> EventsConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("EVENTS_ENABLED", "false"),
            topic=os.getenv("EVENTS_TOPIC", "meeting-library"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServiceConfig:
    """Complete configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        storage: Local storage configuration
        library: Library index configuration
        meetings: Meetings configuration
        events: Change event configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    library: LibraryConfig = field(default_factory=LibraryConfig)
    meetings: MeetingsConfig = field(default_factory=MeetingsConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServiceConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            library=LibraryConfig.from_env(),
            meetings=MeetingsConfig.from_env(),
            events=EventsConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.library.max_page_size < 1:
            raise ValueError("LIBRARY_MAX_PAGE_SIZE must be at least 1")
        if not 1 <= self.library.default_page_size <= self.library.max_page_size:
            raise ValueError("LIBRARY_DEFAULT_PAGE_SIZE must be between 1 and LIBRARY_MAX_PAGE_SIZE")
        if self.library.rebuild_batch_size < 1:
            raise ValueError("LIBRARY_REBUILD_BATCH_SIZE must be at least 1")
        if self.meetings.default_visibility not in VISIBILITIES:
            raise ValueError(
                f"Invalid MEETING_DEFAULT_VISIBILITY '{self.meetings.default_visibility}'. "
                f"Must be one of: {', '.join(VISIBILITIES)}"
            )
        if self.events.enabled and not self.events.topic:
            raise ValueError("EVENTS_TOPIC is required when EVENTS_ENABLED=true")
        if self.observability.log_format not in LOG_FORMATS:
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Meeting library configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "wal_mode": self.storage.wal_mode,
                "default_page_size": self.library.default_page_size,
                "max_page_size": self.library.max_page_size,
                "rebuild_batch_size": self.library.rebuild_batch_size,
                "cleanup_dangling": self.library.cleanup_dangling,
                "default_visibility": self.meetings.default_visibility,
                "events_enabled": self.events.enabled,
                "events_topic": self.events.topic if self.events.enabled else None,
                "log_level": self.observability.log_level,
            },
        )
