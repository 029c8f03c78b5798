"""Command layer: one intent becomes one event plus one persistence write.

Every command applies its event to the projection synchronously and then
hands the matching partial update to the persistence queue. The command
returns as soon as the write is scheduled; the write's outcome is available
through ``IssuedCommand.persistence``.
"""

import asyncio
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from cardsync.delta import Delta, Filter
from cardsync.documents import DocumentStore
from cardsync.lists import ListDirectory
from cardsync.model import (
    Card,
    CardsState,
    EvActualTimeAdded,
    EvActualTimeSet,
    EvCardAdded,
    EvCardDeleted,
    EvCardRenamed,
    EvCardsSet,
    EvContentSet,
    EvEstimatedTimeSet,
    EventBase,
    EvSessionAdded,
    EvSubTaskAdded,
    EvSubTaskDeleted,
    EvSubTaskToggled,
    EvSubTaskUpdated,
    SubTask,
)
from cardsync.projection import new_card
from cardsync.store import ProjectionStore
from cardsync.sync import PersistenceQueue, PersistResult

logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid4().hex[:12]


def now_ms() -> int:
    return int(time.time() * 1000)


class InvalidCommand(ValueError):
    pass


@dataclass
class IssuedCommand:
    event: EventBase
    persistence: "asyncio.Task[PersistResult]"

    async def persisted(self) -> PersistResult:
        return await self.persistence


class CardCommands:
    def __init__(
        self,
        store: ProjectionStore,
        db: DocumentStore,
        lists: ListDirectory,
        queue: PersistenceQueue,
        id_factory: Callable[[], str] = new_id,
        clock: Callable[[], int] = now_ms,
        metrics: Any = None,
    ) -> None:
        self._store = store
        self._db = db
        self._lists = lists
        self._queue = queue
        self._id_factory = id_factory
        self._clock = clock
        self._metrics = metrics

    @property
    def store(self) -> ProjectionStore:
        return self._store

    @property
    def queue(self) -> PersistenceQueue:
        return self._queue

    async def fetch_all(self) -> CardsState:
        """Replace the whole in-memory collection with the stored one.

        Meant to run once, before any mutation: optimistic state that has not
        been persisted yet is overwritten.
        """
        documents = await self._db.find({})
        cards = {doc["_id"]: Card.from_document(doc) for doc in documents}
        if self._store.version or self._queue.pending:
            logger.warning(
                f"fetch_all replaces a collection that has seen {self._store.version} "
                f"event(s) with {self._queue.pending} write(s) in flight; "
                "unpersisted changes will be lost"
            )
        self._apply("fetch_all", EvCardsSet(cards=cards))
        logger.info(f"Loaded {len(cards)} card(s)")
        return self._store.state

    async def add_card(
        self, card_id: str, list_id: str, title: str, content: str = ""
    ) -> IssuedCommand:
        event = EvCardAdded(
            card_id=card_id, title=title, content=content, created_time=self._clock()
        )
        self._apply("add_card", event)
        document = new_card(event).to_document()

        # The list must reference the card before the document is written.
        await self._lists.add_card_by_id(list_id, card_id)

        async def insert(token: str) -> int:
            await self._db.insert(document, token=token)
            return 1

        return IssuedCommand(event, self._queue.submit(card_id, "add_card", insert))

    async def rename_card(self, card_id: str, title: str) -> IssuedCommand:
        return self._set(
            "rename_card",
            EvCardRenamed(card_id=card_id, title=title),
            {"title": title},
        )

    async def set_content(self, card_id: str, content: str) -> IssuedCommand:
        return self._set(
            "set_content",
            EvContentSet(card_id=card_id, content=content),
            {"content": content},
        )

    async def set_estimated_time(self, card_id: str, hours: float) -> IssuedCommand:
        check_hours("set_estimated_time", hours)
        return self._set(
            "set_estimated_time",
            EvEstimatedTimeSet(card_id=card_id, hours=hours),
            {"spentTimeInHour.estimated": hours},
        )

    async def set_actual_time(self, card_id: str, hours: float) -> IssuedCommand:
        check_hours("set_actual_time", hours)
        return self._set(
            "set_actual_time",
            EvActualTimeSet(card_id=card_id, hours=hours),
            {"spentTimeInHour.actual": hours},
        )

    async def add_actual_time(self, card_id: str, hours: float) -> IssuedCommand:
        check_hours("add_actual_time", hours)
        return self._update(
            "add_actual_time",
            EvActualTimeAdded(card_id=card_id, hours=hours),
            {"_id": card_id},
            {"$inc": {"spentTimeInHour.actual": hours}},
        )

    async def on_timer_finished(
        self, card_id: str, session_id: str, hours: float
    ) -> IssuedCommand:
        check_hours("on_timer_finished", hours)
        return self._update(
            "on_timer_finished",
            EvSessionAdded(card_id=card_id, session_id=session_id, hours=hours),
            {"_id": card_id},
            {
                "$push": {"sessionIds": session_id},
                "$inc": {"spentTimeInHour.actual": hours},
            },
        )

    async def delete_card(self, card_id: str, list_id: str) -> IssuedCommand:
        # The list drops its reference before the card disappears.
        await self._lists.delete_card(list_id, card_id)
        event = EvCardDeleted(card_id=card_id)
        self._apply("delete_card", event)

        async def remove(token: str) -> int:
            return await self._db.remove({"_id": card_id})

        return IssuedCommand(event, self._queue.submit(card_id, "delete_card", remove))

    async def add_sub_task(self, card_id: str, title: str) -> IssuedCommand:
        sub_task = SubTask(
            id=self._id_factory(),
            title=title,
            completed=False,
            created_time=self._clock(),
        )
        return self._update(
            "add_sub_task",
            EvSubTaskAdded(card_id=card_id, sub_task=sub_task),
            {"_id": card_id},
            {"$push": {"subTasks": sub_task.to_document()}},
        )

    async def toggle_sub_task(self, card_id: str, sub_task_id: str) -> IssuedCommand:
        event = EvSubTaskToggled(card_id=card_id, sub_task_id=sub_task_id)
        self._apply("toggle_sub_task", event)

        # No native toggle: read the stored flag, then write its negation.
        async def toggle(token: str) -> int:
            doc = await self._db.find_one({"_id": card_id})
            stored = next(
                (
                    st
                    for st in ((doc or {}).get("subTasks") or [])
                    if st.get("_id") == sub_task_id
                ),
                None,
            )
            if stored is None:
                logger.info(
                    f"Subtask {sub_task_id} of card {card_id} is not stored; toggle skipped"
                )
                return 0
            return await self._db.update(
                {"_id": card_id, "subTasks._id": sub_task_id},
                {"$set": {"subTasks.$.completed": not stored.get("completed", False)}},
                token=token,
            )

        return IssuedCommand(
            event, self._queue.submit(card_id, "toggle_sub_task", toggle)
        )

    async def delete_sub_task(self, card_id: str, sub_task_id: str) -> IssuedCommand:
        return self._update(
            "delete_sub_task",
            EvSubTaskDeleted(card_id=card_id, sub_task_id=sub_task_id),
            {"_id": card_id},
            {"$pull": {"subTasks": {"_id": sub_task_id}}},
        )

    async def update_sub_task(
        self, card_id: str, sub_task_id: str, title: str
    ) -> IssuedCommand:
        return self._update(
            "update_sub_task",
            EvSubTaskUpdated(card_id=card_id, sub_task_id=sub_task_id, title=title),
            {"_id": card_id, "subTasks._id": sub_task_id},
            {"$set": {"subTasks.$.title": title}},
        )

    def _set(self, name: str, event: EventBase, fields: dict[str, Any]) -> IssuedCommand:
        return self._update(name, event, {"_id": event.card_id}, {"$set": fields})

    def _update(
        self, name: str, event: EventBase, filter: Filter, delta: Delta
    ) -> IssuedCommand:
        self._apply(name, event)

        async def write(token: str) -> int:
            return await self._db.update(filter, delta, token=token)

        return IssuedCommand(event, self._queue.submit(filter["_id"], name, write))

    def _apply(self, name: str, event: EventBase) -> None:
        card_id = getattr(event, "card_id", None)
        if card_id is not None and card_id not in self._store and name != "add_card":
            logger.debug(f"{name}: card {card_id} is not loaded; projection unchanged")
        self._store.dispatch(event)
        if self._metrics:
            self._metrics.record_command(name)


def check_hours(command: str, hours: Any) -> None:
    if (
        isinstance(hours, bool)
        or not isinstance(hours, (int, float))
        or not math.isfinite(hours)
        or hours < 0
    ):
        raise InvalidCommand(f"{command}: hours must be a non-negative number, got {hours!r}")
