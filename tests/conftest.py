"""
Pytest configuration and shared fixtures for engine tests.
"""
import os
import tempfile
from pathlib import Path

import pytest

from proxy_engine.config import EngineConfig
from proxy_engine.kernel.engine import ProxyEngine

FIXTURES = Path(__file__).parent / "fixtures"


def fixture_source(name: str) -> str:
    """Read a YAML schema source from tests/fixtures."""
    return (FIXTURES / f"{name}.yaml").read_text(encoding="utf-8")


@pytest.fixture
def temp_db():
    """Create a temporary database file for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    if os.path.exists(db_path):
        os.unlink(db_path)


@pytest.fixture
def engine(temp_db):
    """A ProxyEngine on a fresh database."""
    engine = ProxyEngine(temp_db, config=EngineConfig(db_path=temp_db))
    yield engine
    engine.close()


@pytest.fixture
def captured_output():
    """Collects everything an engine call writes to its output sink."""
    return []


@pytest.fixture
def schema_source():
    """Loader for the YAML schema sources under tests/fixtures."""
    return fixture_source
