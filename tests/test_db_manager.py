from __future__ import annotations

import certifi
import pytest
from mongomock_motor import AsyncMongoMockClient

from db.manager import DatabaseManager
from db.models import VehicleDocument


class RecordingMotorClient:
    """Captures client options and serves an in-memory database."""

    instances: list[RecordingMotorClient] = []

    def __init__(self, uri: str, **kwargs) -> None:
        self.uri = uri
        self.kwargs = kwargs
        self.closed = False
        self._backend = AsyncMongoMockClient()
        RecordingMotorClient.instances.append(self)

    def __getitem__(self, name: str):
        return self._backend[name]

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _recording_client(monkeypatch: pytest.MonkeyPatch) -> None:
    RecordingMotorClient.instances = []
    monkeypatch.setattr("db.manager.AsyncIOMotorClient", RecordingMotorClient)
    for name in (
        "MONGODB_MAX_POOL_SIZE",
        "MONGODB_CONNECTION_TIMEOUT_MS",
        "MONGODB_SERVER_SELECTION_TIMEOUT_MS",
        "MONGODB_SOCKET_TIMEOUT_MS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_db_requires_initialization() -> None:
    manager = DatabaseManager("mongodb://mongo.test:27017", "dispatch_test")

    with pytest.raises(RuntimeError, match="init_beanie"):
        _ = manager.db


@pytest.mark.asyncio
async def test_init_beanie_connects_with_configured_options(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("MONGODB_MAX_POOL_SIZE", "8")
    monkeypatch.setenv("MONGODB_SERVER_SELECTION_TIMEOUT_MS", "1500")
    manager = DatabaseManager("mongodb://mongo.test:27017", "dispatch_test")

    await manager.init_beanie()

    client = RecordingMotorClient.instances[-1]
    assert client.uri == "mongodb://mongo.test:27017"
    assert client.kwargs["maxPoolSize"] == 8
    assert client.kwargs["serverSelectionTimeoutMS"] == 1500
    assert client.kwargs["connectTimeoutMS"] == 5000
    assert client.kwargs["socketTimeoutMS"] == 10000
    assert "tls" not in client.kwargs
    assert await VehicleDocument.find_all().to_list() == []


@pytest.mark.asyncio
async def test_init_beanie_is_idempotent() -> None:
    manager = DatabaseManager("mongodb://mongo.test:27017", "dispatch_test")

    await manager.init_beanie()
    await manager.init_beanie()

    assert len(RecordingMotorClient.instances) == 1


@pytest.mark.asyncio
async def test_atlas_uri_enables_tls() -> None:
    manager = DatabaseManager("mongodb+srv://cluster.example.net", "dispatch_test")

    await manager.init_beanie()

    client = RecordingMotorClient.instances[-1]
    assert client.kwargs["tls"] is True
    assert client.kwargs["tlsCAFile"] == certifi.where()


@pytest.mark.asyncio
async def test_close_resets_state() -> None:
    manager = DatabaseManager("mongodb://mongo.test:27017", "dispatch_test")
    await manager.init_beanie()
    client = RecordingMotorClient.instances[-1]

    await manager.close()

    assert client.closed is True
    with pytest.raises(RuntimeError):
        _ = manager.db
    await manager.init_beanie()
    assert len(RecordingMotorClient.instances) == 2


def test_invalid_pool_size_fails_at_construction(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MONGODB_MAX_POOL_SIZE", "lots")

    with pytest.raises(RuntimeError, match="MONGODB_MAX_POOL_SIZE"):
        DatabaseManager("mongodb://mongo.test:27017", "dispatch_test")
