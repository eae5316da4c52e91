import os
from pathlib import Path
from typing import Any
from typing import Callable
from typing import Generator

import dotenv
import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from buffered_tus.locks import RedisLockService
from buffered_tus.monitoring import NullMetricsCollector
from buffered_tus.monitoring import set_metrics_collector
from buffered_tus.store import BufferedUploadStore
from tests.unit.mocks.mock_object_store import MockObjectStore


@pytest.fixture(scope="session", autouse=True)
def _load_test_env() -> Generator[None, None, None]:
    """Load test environment variables from base + local env files."""
    project_root = Path(__file__).parents[2]
    dotenv.load_dotenv(project_root / ".env.defaults", override=True)
    dotenv.load_dotenv(project_root / ".env.test-local", override=True)
    os.environ.setdefault("ENVIRONMENT", "test")
    yield


@pytest.fixture(autouse=True)
def _reset_metrics_collector() -> Generator[None, None, None]:
    set_metrics_collector(NullMetricsCollector())
    yield
    set_metrics_collector(NullMetricsCollector())


@pytest.fixture
def redis_client() -> FakeRedis:
    return FakeRedis(server=FakeServer())


@pytest.fixture
def object_store() -> MockObjectStore:
    return MockObjectStore(min_part_size=5)


@pytest.fixture
def lock_service(redis_client: FakeRedis) -> RedisLockService:
    return RedisLockService(redis_client, retry_delay_ms=10)


@pytest.fixture
def make_store(
    redis_client: FakeRedis, lock_service: RedisLockService, object_store: MockObjectStore
) -> Callable[..., BufferedUploadStore]:
    def _make(**overrides: Any) -> BufferedUploadStore:
        kwargs: dict[str, Any] = {
            "redis_client": redis_client,
            "lock_service": lock_service,
            "object_store": object_store,
            "file_prefix": "files/",
            "metadata_prefix": "upload-info/",
            "min_part_size_bytes": 5,
            "expiration_minutes": 60,
            "lock_timeout_seconds": 0.2,
        }
        kwargs.update(overrides)
        return BufferedUploadStore(**kwargs)

    return _make


@pytest.fixture
def store(make_store: Callable[..., BufferedUploadStore]) -> BufferedUploadStore:
    return make_store()
