"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any app imports, and the
settings cache is cleared so they take effect.
"""

import base64
import os

os.environ.setdefault("WEBHOOK_SECRET", base64.b64encode(b"test-webhook-signing-key").decode("ascii"))
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from convo_mirror.config import get_settings  # noqa: E402
get_settings.cache_clear()

from convo_mirror.main import app, get_store  # noqa: E402
from convo_mirror.storage import SqlConversationStore, init_db, make_engine  # noqa: E402
from convo_mirror.store import InMemoryConversationStore  # noqa: E402


@pytest.fixture
def memory_store():
    return InMemoryConversationStore()


@pytest.fixture
def sql_store(tmp_path):
    """SQL store on a fresh SQLite file per test."""
    engine = make_engine(f"sqlite:///{tmp_path / 'mirror.db'}")
    init_db(bind=engine)
    yield SqlConversationStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Run a test against both store adapters."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def client(memory_store):
    """Test client with the in-memory store injected."""
    app.dependency_overrides[get_store] = lambda: memory_store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
