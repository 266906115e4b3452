from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest
import yaml

from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from httpx import AsyncClient, ASGITransport

_test_dir = Path(tempfile.mkdtemp(prefix="discotrack-tests-"))
TEST_CONFIG = {
    "storage_path": str(_test_dir / "storage"),
    "log_path": str(_test_dir / "changes"),
    "check_interval": 3600,
    "enable_discord_webhooks": False,
    "services": [
        {"service": "people.googleapis.com", "name": "People API"},
        {"service": "youtube.googleapis.com", "key": "test-key"},
    ],
}
(_test_dir / "config.yaml").write_text(yaml.safe_dump(TEST_CONFIG))

# Override settings before importing app
os.environ["CONFIG_PATH"] = str(_test_dir / "config.yaml")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["LOG_LEVEL"] = "debug"

from discotrack.main import app
from discotrack.config import TrackerConfig, get_tracker_config
from discotrack.models.schemas import ServiceDescriptor
from discotrack.storage.database import get_session
from discotrack.storage.snapshots import SnapshotStore, get_snapshot_store


@pytest.fixture
def tracker_config(tmp_path):
    return TrackerConfig.model_validate({
        **TEST_CONFIG,
        "storage_path": str(tmp_path / "storage"),
        "log_path": str(tmp_path / "changes"),
    })


@pytest.fixture
def snapshot_store(tracker_config):
    return SnapshotStore(tracker_config.storage_path)


@pytest.fixture
def service():
    return ServiceDescriptor(
        service_id="people.googleapis.com",
        name="People API",
        endpoint="https://people.googleapis.com/$discovery/rest",
    )


@pytest.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory, tracker_config, snapshot_store):
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_tracker_config] = lambda: tracker_config
    app.dependency_overrides[get_snapshot_store] = lambda: snapshot_store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
