"""Shared fixtures."""

import logging
import tempfile

import pytest
import pytest_asyncio

from meeting_library.bootstrap import MeetingLibrary
from meeting_library.config import EventsConfig, ServiceConfig, StorageConfig


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest_asyncio.fixture
async def app(data_dir):
    """Started MeetingLibrary with change events enabled."""
    library = MeetingLibrary(
        ServiceConfig(
            storage=StorageConfig(data_dir=data_dir),
            events=EventsConfig(enabled=True),
        )
    )
    await library.start()
    yield library
    await library.stop()


@pytest.fixture
def restore_logging():
    """Restore the root logger after a test reconfigures it."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)
