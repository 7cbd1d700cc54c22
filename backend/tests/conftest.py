"""Pytest configuration and fixtures for ChatPsi tests.

Test isolation strategy:
- Every test gets its own SQLite file and media root under tmp_path
- Module-level singletons (settings, store, notifier, gateway, uploader) are
  reset around each test
- Async tests that touch the store use the ``store`` fixture, which disposes
  the engine on the test's own event loop
- HTTP tests use ``client``; ``seed_profile`` runs on the app's own loop
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from chatpsi.config import reset_settings
from chatpsi.main import create_app
from chatpsi.services import dispatch as dispatch_service
from chatpsi.services import processor as processor_service
from chatpsi.services import realtime as realtime_service
from chatpsi.services import uploads as uploads_service
from chatpsi.storage import database as database_module
from chatpsi.storage import get_db_manager, shutdown_database
from tests.helpers import PROCESSOR_URL, TEST_JWT_SECRET


def _reset_singletons() -> None:
    reset_settings()
    dispatch_service.reset_dispatch_gateway()
    uploads_service.reset_uploader()
    realtime_service.shutdown_notifier()
    # Engines and HTTP clients bound to a finished event loop cannot be closed
    # from here; tests that open them shut them down themselves.
    database_module._db_manager = None
    processor_service._processor_client = None


@pytest.fixture(autouse=True)
def app_env(tmp_path, monkeypatch) -> Iterator[None]:
    """Point settings at per-test paths and a mock processor URL."""
    monkeypatch.setenv("CHATPSI_DATABASE_PATH", str(tmp_path / "chatpsi.db"))
    monkeypatch.setenv("CHATPSI_MEDIA_ROOT", str(tmp_path / "media"))
    monkeypatch.setenv("CHATPSI_AUTH__JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("CHATPSI_PROCESSOR__URL", PROCESSOR_URL)
    monkeypatch.setenv("CHATPSI_UPLOADS__PUBLIC_BASE_URL", "http://testserver/media")
    monkeypatch.delenv("CHATPSI_PROCESSOR__CALLBACK_SECRET", raising=False)
    monkeypatch.delenv("CHATPSI_DATABASE_URL", raising=False)
    _reset_singletons()
    yield
    _reset_singletons()


@pytest_asyncio.fixture
async def store() -> AsyncIterator[None]:
    """Initialize the message store on the test's event loop."""
    await get_db_manager()
    yield
    await processor_service.shutdown_processor_client()
    await shutdown_database()


@pytest.fixture
def user_id() -> str:
    return str(uuid4())


@pytest.fixture
def client() -> Iterator[TestClient]:
    """Provide a FastAPI test client running the full lifespan."""
    with TestClient(create_app()) as test_client:
        yield test_client
