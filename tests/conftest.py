import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport

# Ensure the project root is importable so `app.*` modules resolve
_ROOT_DIR = Path(__file__).resolve().parents[1]
if str(_ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(_ROOT_DIR))

from app.main import create_app  # noqa: E402
from db.session import get_db  # noqa: E402


@pytest.fixture()
def settings_override(monkeypatch):
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("POSTGRES_HOST", "localhost")
    monkeypatch.setenv("DB_ECHO", "false")
    monkeypatch.setenv("CAPACITY_ALERT_SCHEDULER_ENABLED", "false")
    yield


@pytest.fixture()
def fake_db() -> MagicMock:
    """Session double: sync ``add``, awaitable everything else."""
    db = MagicMock()
    db.execute = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.flush = AsyncMock()
    db.get = AsyncMock(return_value=None)
    return db


@pytest.fixture()
def app(settings_override, fake_db) -> FastAPI:
    application = create_app()

    async def _override_get_db():
        yield fake_db

    application.dependency_overrides[get_db] = _override_get_db
    return application


@pytest.fixture()
async def async_client(app: FastAPI):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
