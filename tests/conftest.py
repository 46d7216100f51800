"""Shared test fixtures."""
from typing import Any, Dict, Generator, List, Optional
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel

from dashboard.db.engine import build_engine, create_tables
from dashboard.gripp.client import Page


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine with SAVEPOINT support. Tables recreated fresh per test."""
    engine = build_engine("sqlite:///:memory:", poolclass=StaticPool)
    create_tables(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


class RecordingSleep:
    """Awaitable stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture(name="sleep")
def sleep_fixture() -> RecordingSleep:
    return RecordingSleep()


def make_page(
    rows: List[Dict[str, Any]],
    count: Optional[int] = None,
    more_items: bool = False,
    start: int = 0,
) -> Page:
    return Page(rows=rows, count=count, start=start, more_items=more_items)


def _field_value(row, field_name):
    value = row.get(field_name.split(".", 1)[-1])
    if isinstance(value, dict):
        value = value.get("id", value.get("date"))
    return value


def _matches(row, filters) -> bool:
    """Apply equals/between filters the way Gripp would."""
    for f in filters:
        value = _field_value(row, f["field"])
        if f["operator"] == "equals" and value != f["value"]:
            return False
        if f["operator"] == "between":
            day = str(value)[:10]
            if not f["value"] <= day <= f["value2"]:
                return False
    return True


def make_mock_client(rows_by_method: Optional[Dict[str, List[Dict[str, Any]]]] = None):
    """
    AsyncMock Gripp client serving `rows_by_method[method]`, filtered like Gripp
    would and paged by the requested offset and page_size. Unknown methods return
    no rows.
    """
    rows_by_method = rows_by_method or {}

    async def _list(method, filters, offset, page_size, orderings=None):
        rows = [r for r in rows_by_method.get(method, []) if _matches(r, filters)]
        chunk = rows[offset:offset + page_size]
        return make_page(chunk, count=len(rows), start=offset,
                         more_items=offset + page_size < len(rows))

    client = AsyncMock()
    client.list = AsyncMock(side_effect=_list)
    return client


@pytest.fixture(name="mock_client_factory")
def mock_client_factory_fixture():
    return make_mock_client
