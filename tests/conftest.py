import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
from beanie import init_beanie
from mongomock_motor import AsyncMongoMockClient

from core.cache import DispatchCache
from db.models import ALL_DOCUMENT_MODELS
from dispatch.coordinator import DispatchCoordinator
from dispatch.routing import RoutingService
from dispatch.spatial_index import SpatialIndex
from events.notifier import EventNotifier
from redis_fakes import FakeRedis, RecordingBus


@pytest.fixture(autouse=True)
def _default_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/15")
    monkeypatch.setenv("OSRM_BASE_URL", "http://osrm.test")
    monkeypatch.delenv("GEOCELL_SIZE_DEGREES", raising=False)


@pytest.fixture
async def beanie_db():
    client = AsyncMongoMockClient()
    database = client["test_db"]
    await init_beanie(database=database, document_models=ALL_DOCUMENT_MODELS)
    return database


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
async def notifier(bus: RecordingBus):
    notifier = EventNotifier(bus)
    notifier.start()
    yield notifier
    await notifier.stop(drain_timeout=1.0)


@pytest.fixture
def coordinator(fake_redis: FakeRedis, notifier: EventNotifier) -> DispatchCoordinator:
    cache = DispatchCache(fake_redis, op_timeout=0.2)
    return DispatchCoordinator(
        index=SpatialIndex(0.05),
        cache=cache,
        routing=RoutingService(None, cache),
        notifier=notifier,
    )
