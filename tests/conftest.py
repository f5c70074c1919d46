"""Shared test fixtures."""
from typing import Generator
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from tablesync.models.sync import CheckpointRecord, SyncConfigRecord, SyncLog  # noqa: F401
from tablesync.engine.rate_limiter import RateLimiter
from tablesync.engine.retry import RetryExecutor

from fakes import FakeLeftEndpoint, FakeRightEndpoint, companies_schema, contacts_schema


class FakeClock:
    """Monotonic clock whose time only moves when told to (or when slept on)."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="retry")
def retry_fixture() -> RetryExecutor:
    """Retry executor that never really sleeps."""
    return RetryExecutor(max_attempts=3, base_delay=0.5, max_delay=30.0, jitter=0.0, sleep=AsyncMock())


@pytest.fixture(name="left_limiter")
def left_limiter_fixture(clock) -> RateLimiter:
    return RateLimiter(5.0, name="left", clock=clock, sleep=clock.sleep)


@pytest.fixture(name="right_limiter")
def right_limiter_fixture(clock) -> RateLimiter:
    return RateLimiter(1.0, name="right", clock=clock, sleep=clock.sleep)


@pytest.fixture(name="left")
def left_fixture() -> FakeLeftEndpoint:
    """Left endpoint with a contacts table and a linked companies table."""
    left = FakeLeftEndpoint()
    left.schemas["tblMain"] = contacts_schema()
    left.schemas["tblCompanies"] = companies_schema()
    return left


@pytest.fixture(name="right")
def right_fixture() -> FakeRightEndpoint:
    return FakeRightEndpoint()
