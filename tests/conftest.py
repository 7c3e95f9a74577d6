import pytest
import pytest_asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from breaktime.core.scheduler import KeyedJobScheduler
from breaktime.sessions.store import SqlAlchemyWellnessStore, ensure_wellness_schema
from support import InMemoryStore, RecordingSink, RecordingStatusSync


@pytest_asyncio.fixture
async def scheduler():
    # Never started: jobs stay pending and tests fire them explicitly.
    return AsyncIOScheduler(timezone="UTC")


@pytest.fixture
def timers(scheduler):
    return KeyedJobScheduler(scheduler)


@pytest.fixture
def memory_store():
    return InMemoryStore()


@pytest.fixture
def status_sync():
    return RecordingStatusSync()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest_asyncio.fixture
async def sql_store():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    try:
        await ensure_wellness_schema(engine)
        yield SqlAlchemyWellnessStore(async_sessionmaker(engine, expire_on_commit=False))
    finally:
        await engine.dispose()
