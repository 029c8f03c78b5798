"""Test helpers for card sync.

``CardSyncHarness`` wires the command layer to in-memory document stores
with deterministic ids, a settable clock and a fast retry policy, so tests
can run full command → projection → persistence cycles without a database.

Example::

    harness = CardSyncHarness()
    await harness.lists.create_list("list1")

    await harness.commands.add_card("c1", "list1", "Buy milk")
    await harness.settle()

    assert harness.card("c1").title == "Buy milk"
    harness.assert_converged()
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from cardsync.commands import CardCommands
from cardsync.documents import InMemoryDocumentStore
from cardsync.lists import DocumentListDirectory, ListDirectory
from cardsync.model import Card
from cardsync.postgres import RetryPolicy
from cardsync.store import ProjectionStore
from cardsync.sync import PersistenceQueue


@dataclass
class RecordedCall:
    method: str
    list_id: str
    card_id: str


class RecordingListDirectory(ListDirectory):
    """Wraps another list directory and records every call, in order."""

    def __init__(self, inner: ListDirectory) -> None:
        self.inner = inner
        self.calls: list[RecordedCall] = []

    async def add_card_by_id(self, list_id: str, card_id: str) -> None:
        self.calls.append(RecordedCall("add_card_by_id", list_id, card_id))
        await self.inner.add_card_by_id(list_id, card_id)

    async def delete_card(self, list_id: str, card_id: str) -> None:
        self.calls.append(RecordedCall("delete_card", list_id, card_id))
        await self.inner.delete_card(list_id, card_id)


def fast_retry_policy(max_retries: int = 2) -> RetryPolicy:
    return RetryPolicy(
        max_retries=max_retries,
        backoff_strategy="linear",
        backoff_factor=0.0,
        backoff_min=timedelta(0),
        backoff_max=timedelta(0),
    )


@dataclass
class _Clock:
    now: int = 1_700_000_000_000

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@dataclass
class _Ids:
    prefix: str = "id"
    _counter: Any = field(default_factory=lambda: itertools.count(1))

    def __call__(self) -> str:
        return f"{self.prefix}-{next(self._counter)}"


class CardSyncHarness:
    """In-memory card sync for tests.

    Ids come out as ``id-1``, ``id-2``, ...; the clock only moves when
    ``clock.advance(ms)`` is called.
    """

    def __init__(
        self,
        latency: float = 0.0,
        retry_policy: RetryPolicy | None = None,
        serialize_per_key: bool = True,
        on_persist_failed: Any = None,
        metrics: Any = None,
    ) -> None:
        self.cards_db = InMemoryDocumentStore(latency=latency)
        self.lists_db = InMemoryDocumentStore(latency=latency)
        self.lists = DocumentListDirectory(self.lists_db)
        self.list_calls = RecordingListDirectory(self.lists)
        self.clock = _Clock()
        self.ids = _Ids()
        self.store = ProjectionStore()
        self.queue = PersistenceQueue(
            retry_policy=retry_policy or fast_retry_policy(),
            serialize_per_key=serialize_per_key,
            on_persist_failed=on_persist_failed,
            metrics=metrics,
        )
        self.commands = CardCommands(
            store=self.store,
            db=self.cards_db,
            lists=self.list_calls,
            queue=self.queue,
            id_factory=self.ids,
            clock=self.clock,
            metrics=metrics,
        )

    async def settle(self) -> None:
        """Wait for every persistence write issued so far."""
        await self.queue.drain()

    def card(self, card_id: str) -> Card:
        card = self.store.get(card_id)
        if card is None:
            raise AssertionError(f"Card '{card_id}' is not in the projection")
        return card

    async def stored_card(self, card_id: str) -> Card | None:
        doc = await self.cards_db.find_one({"_id": card_id})
        return None if doc is None else Card.from_document(doc)

    async def assert_converged(self) -> None:
        """Assert the stored documents equal the projection, card by card.

        Call after ``settle()``.
        """
        stored = {doc["_id"]: doc for doc in await self.cards_db.find({})}
        projected = {card_id: card.to_document() for card_id, card in self.store.state.items()}
        assert stored == projected, (
            "Store and projection diverged:\n"
            f"  stored:    {stored}\n"
            f"  projected: {projected}"
        )
