"""Pytest configuration and fixtures for Relay tests.

Test isolation strategy:
- Every test that touches the database gets a fresh in-memory SQLite engine
  (StaticPool, so the API threads and the test share one connection)
- Redis is fakeredis with Lua support; the server is flushed around each test
- Service singletons are installed per test and reset afterwards
- Celery submission is patched; jobs are run by calling the task bodies
"""

import os
import sys
from collections.abc import Generator
from pathlib import Path
from unittest.mock import MagicMock, patch

# Settings are read at import time by relay.celery
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RELAY_ENV"] = "test"
os.environ.pop("REDIS_URL", None)

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from relay.app import create_app
from relay.config import clear_settings_cache, get_settings
from relay.db.engine import create_db_engine
from relay.db.models import Base, Character
from relay.db.session import create_session_factory, set_session_factory
from relay.services import conversation_store as store
from relay.services.notifications import set_notifier
from relay.services.registry import install_services, reset_services
from relay.tasks import acknowledge_message, generate_reply
from tests.helpers import RecordingNotifier


@pytest.fixture(autouse=True)
def clear_settings() -> Generator[None, None, None]:
    """Each test sees settings built from its own environment."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture(autouse=True)
def isolated_services() -> Generator[None, None, None]:
    """No service singleton leaks from one test into the next."""
    reset_services()
    yield
    reset_services()


@pytest.fixture
def fake_redis() -> Generator[fakeredis.FakeRedis, None, None]:
    client = fakeredis.FakeRedis(decode_responses=True)
    client.flushall()
    yield client
    client.flushall()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> Generator[sessionmaker[Session], None, None]:
    """Session factory installed as the process default."""
    factory = create_session_factory(engine)
    set_session_factory(factory)
    yield factory
    set_session_factory(None)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def services(fake_redis: fakeredis.FakeRedis) -> fakeredis.FakeRedis:
    """Install Redis-backed services on the fake server."""
    install_services(fake_redis, get_settings())
    return fake_redis


@pytest.fixture
def character(session_factory: sessionmaker[Session]) -> dict:
    """A stored character; returns its job profile."""
    with session_factory() as db:
        row = Character(
            id="c1",
            name="Luna",
            system_prompt="You are Luna, a cheerful astronomer.",
            ai_settings={},
            knowledge=["Luna loves comets."],
        )
        db.add(row)
        db.commit()
        return store.character_profile(row)


@pytest.fixture
def mock_dispatch() -> Generator[MagicMock, None, None]:
    """Capture generate_reply submissions instead of talking to a broker."""
    with patch.object(generate_reply, "apply_async") as mock_apply:
        yield mock_apply


@pytest.fixture
def mock_ack_dispatch() -> Generator[MagicMock, None, None]:
    with patch.object(acknowledge_message, "apply_async") as mock_apply:
        yield mock_apply


@pytest.fixture
def client(
    session_factory: sessionmaker[Session],
    fake_redis: fakeredis.FakeRedis,
    mock_dispatch: MagicMock,
) -> Generator[TestClient, None, None]:
    """Test client with the fake Redis installed by the app lifespan."""
    app = create_app(skip_internal_header=True, redis_client=fake_redis)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def notifier(services: fakeredis.FakeRedis) -> RecordingNotifier:
    """Record conversation events instead of publishing them."""
    recorder = RecordingNotifier()
    set_notifier(recorder)
    return recorder
