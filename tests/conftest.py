import os

# Set required env vars BEFORE any sitewatch imports trigger Settings()
os.environ.setdefault("API_KEY", "test-api-key-for-testing")
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("ENVIRONMENT", "production")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("QUEUE_CURRENT_SIGNING_KEY", "test-signing-key")

from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from sitewatch.main import app
from sitewatch.database import Base, get_db
from sitewatch.models import Site
from sitewatch.schemas import CheckResult
from sitewatch.services import providers
from sitewatch.services.monitor import MonitorRuntime
from sitewatch.services.notifier import Notifier
from sitewatch.taskqueue import TaskQueue

TEST_API_KEY = "test-api-key-for-testing"


@pytest.fixture(autouse=True)
def clear_circuit():
    providers._circuit.clear()
    yield
    providers._circuit.clear()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sitewatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


async def add_site(session_factory, site_id: str, url: str, status: str = "unknown",
                   name: Optional[str] = None) -> None:
    async with session_factory() as session:
        session.add(Site(id=site_id, url=url, name=name or site_id.upper(), status=status))
        await session.commit()


class FakeRedis:
    """Just enough of the sorted-set API for the task queue."""

    def __init__(self):
        self.zsets: Dict[str, Dict[str, float]] = {}

    async def ping(self) -> bool:
        return True

    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for m in mapping if m not in zset)
        zset.update(mapping)
        return added

    async def zrangebyscore(self, key, min, max, start=None, num=None) -> List[str]:
        lo = float(min)
        hi = float(max)
        members = sorted(
            (score, m) for m, score in self.zsets.get(key, {}).items() if lo <= score <= hi
        )
        out = [m for _, m in members]
        if start is not None and num is not None:
            out = out[start:start + num]
        return out

    async def zrem(self, key: str, *members: str) -> int:
        zset = self.zsets.get(key, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)

    async def zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    async def zcount(self, key: str, min, max) -> int:
        return len(await self.zrangebyscore(key, min, max))

    def scores(self, key: str) -> List[float]:
        return sorted(self.zsets.get(key, {}).values())


class StubChecker:
    """Returns scripted results per site id; records what it was asked."""

    def __init__(self, kind: str, results: Dict[str, Any]):
        self.kind = kind
        self.results = results
        self.calls: List[tuple] = []

    async def check(self, site_id: str, url: str, strategy: Optional[str] = None) -> CheckResult:
        self.calls.append((site_id, url, strategy))
        scripted = self.results[site_id]
        if callable(scripted):
            scripted = scripted(strategy)
        return scripted.model_copy(update={"strategy": strategy})


class RecordingChannel:
    def __init__(self, name: str = "recording", fail: bool = False):
        self.name = name
        self.fail = fail
        self.sent: List[tuple] = []

    async def send(self, site, status: str) -> None:
        if self.fail:
            raise RuntimeError(f"{self.name} is down")
        self.sent.append((site.id, status))


def mock_http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest_asyncio.fixture
async def runtime(session_factory, fake_redis, channel):
    async with mock_http(lambda request: httpx.Response(200)) as http:
        yield MonitorRuntime(
            http,
            session_factory,
            TaskQueue(fake_redis),
            checkers={},
            notifier=Notifier([channel]),
        )


@pytest_asyncio.fixture
async def client(runtime, session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.runtime = runtime

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c

    app.dependency_overrides.clear()
    app.state.runtime = None
