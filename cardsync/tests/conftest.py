"""
Pytest configuration and shared fixtures for cardsync tests.
"""

from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)

from cardsync.model import Card, SpentTime, SubTask
from cardsync.postgres import create_tables, make_engine
from cardsync.testing import CardSyncHarness


def make_card(card_id: str = "c1", **kwargs) -> Card:
    data = dict(
        id=card_id,
        title=f"Card {card_id}",
        content="",
        created_time=1000,
        session_ids=[],
        spent_time_in_hour=SpentTime(),
        sub_tasks=[],
    )
    data.update(kwargs)
    return Card(**data)


def make_sub_task(sub_task_id: str = "s1", **kwargs) -> SubTask:
    data = dict(id=sub_task_id, title=f"Subtask {sub_task_id}", created_time=2000)
    data.update(kwargs)
    return SubTask(**data)


@pytest.fixture
def card_factory():
    return make_card


@pytest.fixture
def sub_task_factory():
    return make_sub_task


@pytest.fixture
async def harness() -> AsyncGenerator[CardSyncHarness, None]:
    """In-memory card sync with list1 already created."""
    h = CardSyncHarness()
    await h.lists.create_list("list1", "Inbox")
    yield h
    await h.settle()


# Database fixtures
@pytest.fixture
def sqlite_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'cards.db'}"


@pytest.fixture(scope="function")
async def test_engine(sqlite_url) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite engine with fresh tables for each test."""
    engine = make_engine(sqlite_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def test_session_maker(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, expire_on_commit=False)
