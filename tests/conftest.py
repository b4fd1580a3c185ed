"""
Shared fixtures: a file-backed SQLite source reachable through the
connection registry.
"""

import pytest
from sqlalchemy import create_engine

from dataplane.connectors.models import ConnectionConfig, SourceType
from dataplane.connectors.registry import ConnectionRegistry, StaticConfigStore


@pytest.fixture
def sqlite_path(tmp_path):
    return tmp_path / "source.db"


@pytest.fixture
def source_engine(sqlite_path):
    """Direct engine on the source database for seeding and assertions."""
    engine = create_engine(f"sqlite:///{sqlite_path}")
    yield engine
    engine.dispose()


@pytest.fixture
def sqlite_config(sqlite_path):
    return ConnectionConfig(
        id="source",
        source_type=SourceType.SQLITE,
        name="Test source",
        credentials={"database": str(sqlite_path)},
    )


@pytest.fixture
def config_store(sqlite_config):
    return StaticConfigStore([sqlite_config])


@pytest.fixture
def registry(config_store):
    return ConnectionRegistry(config_store, max_concurrency=2)
