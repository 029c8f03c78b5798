"""
Tests for the in-memory document store and the SQL document store.
"""
import asyncio

import pytest

from cardsync.documents import DocumentStoreError, DuplicateDocument, InMemoryDocumentStore
from cardsync.postgres import (
    AppliedCardDelta,
    CardDocument,
    ListDocument,
    SqlDocumentStore,
)


@pytest.fixture(params=["memory", "sql"])
async def db(request, test_session_maker):
    if request.param == "memory":
        async with InMemoryDocumentStore() as store:
            yield store
    else:
        yield SqlDocumentStore(test_session_maker, CardDocument, AppliedCardDelta)


def _doc(doc_id="c1", **extra):
    base = {
        "_id": doc_id,
        "title": "t",
        "spentTimeInHour": {"estimated": 0, "actual": 0},
        "subTasks": [{"_id": "a", "title": "A", "completed": False}],
    }
    base.update(extra)
    return base


class TestDocumentStores:
    """Behaviour shared by every DocumentStore implementation."""

    @pytest.mark.asyncio
    async def test_insert_and_find_one(self, db):
        await db.insert(_doc())

        assert await db.find_one({"_id": "c1"}) == _doc()
        assert await db.find_one({"_id": "missing"}) is None

    @pytest.mark.asyncio
    async def test_find_all(self, db):
        for doc_id in ["b", "a", "c"]:
            await db.insert(_doc(doc_id))

        assert sorted(d["_id"] for d in await db.find({})) == ["a", "b", "c"]
        assert [d["_id"] for d in await db.find({"title": "t", "_id": "a"})] == ["a"]

    @pytest.mark.asyncio
    async def test_duplicate_insert(self, db):
        await db.insert(_doc())

        with pytest.raises(DuplicateDocument):
            await db.insert(_doc())

    @pytest.mark.asyncio
    async def test_update_returns_matched_count(self, db):
        await db.insert(_doc())

        assert await db.update({"_id": "c1"}, {"$set": {"title": "new"}}) == 1
        assert await db.update({"_id": "nope"}, {"$set": {"title": "new"}}) == 0
        assert (await db.find_one({"_id": "c1"}))["title"] == "new"

    @pytest.mark.asyncio
    async def test_compound_filter_update(self, db):
        await db.insert(_doc())

        matched = await db.update(
            {"_id": "c1", "subTasks._id": "a"},
            {"$set": {"subTasks.$.completed": True}},
        )

        assert matched == 1
        assert (await db.find_one({"_id": "c1"}))["subTasks"][0]["completed"] is True

    @pytest.mark.asyncio
    async def test_compound_filter_misses_deleted_sub_task(self, db):
        await db.insert(_doc(subTasks=[]))

        matched = await db.update(
            {"_id": "c1", "subTasks._id": "a"},
            {"$set": {"subTasks.$.completed": True}},
        )

        assert matched == 0

    @pytest.mark.asyncio
    async def test_token_applies_increment_once(self, db):
        await db.insert(_doc())
        delta = {"$inc": {"spentTimeInHour.actual": 1.5}}

        first = await db.update({"_id": "c1"}, delta, token="tok-1")
        second = await db.update({"_id": "c1"}, delta, token="tok-1")

        assert first == second == 1
        assert (await db.find_one({"_id": "c1"}))["spentTimeInHour"]["actual"] == 1.5

    @pytest.mark.asyncio
    async def test_token_makes_insert_idempotent(self, db):
        await db.insert(_doc(), token="tok-ins")
        await db.insert(_doc(), token="tok-ins")

        assert len(await db.find({})) == 1

    @pytest.mark.asyncio
    async def test_remove(self, db):
        await db.insert(_doc("c1"))
        await db.insert(_doc("c2"))

        assert await db.remove({"_id": "c1"}) == 1
        assert await db.remove({"_id": "c1"}) == 0
        assert [d["_id"] for d in await db.find()] == ["c2"]

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self, db):
        await db.insert(_doc())

        found = await db.find_one({"_id": "c1"})
        found["title"] = "mutated"

        assert (await db.find_one({"_id": "c1"}))["title"] == "t"

    @pytest.mark.asyncio
    async def test_concurrent_increments_all_apply(self, db):
        await db.insert(_doc())

        results = await asyncio.gather(
            *(
                db.update({"_id": "c1"}, {"$inc": {"spentTimeInHour.actual": 1}}, token=f"inc-{i}")
                for i in range(10)
            )
        )

        assert results == [1] * 10
        assert (await db.find_one({"_id": "c1"}))["spentTimeInHour"]["actual"] == 10

    @pytest.mark.asyncio
    async def test_concurrent_pushes_all_apply(self, db):
        await db.insert(_doc())

        await asyncio.gather(
            *(db.update({"_id": "c1"}, {"$push": {"sessionIds": f"s{i}"}}) for i in range(10))
        )

        stored = (await db.find_one({"_id": "c1"}))["sessionIds"]
        assert sorted(stored) == sorted(f"s{i}" for i in range(10))


class TestInMemoryDocumentStore:
    @pytest.mark.asyncio
    async def test_find_returns_insertion_order(self):
        db = InMemoryDocumentStore()
        for doc_id in ["b", "a", "c"]:
            await db.insert(_doc(doc_id))

        assert [d["_id"] for d in await db.find({})] == ["b", "a", "c"]

    @pytest.mark.asyncio
    async def test_insert_requires_id(self):
        db = InMemoryDocumentStore()

        with pytest.raises(DocumentStoreError, match="no _id"):
            await db.insert({"title": "x"})

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self):
        db = InMemoryDocumentStore(latency=0.001)
        await db.insert(_doc())

        await asyncio.gather(
            *(db.update({"_id": "c1"}, {"$inc": {"spentTimeInHour.actual": 1}}) for _ in range(10))
        )

        assert (await db.find_one({"_id": "c1"}))["spentTimeInHour"]["actual"] == 10

    @pytest.mark.asyncio
    async def test_token_ledger_is_bounded(self):
        db = InMemoryDocumentStore(max_tokens=2)
        await db.insert(_doc())
        delta = {"$inc": {"spentTimeInHour.actual": 1}}

        for token in ["t1", "t2", "t3"]:
            await db.update({"_id": "c1"}, delta, token=token)
        # t1 was evicted, so it applies again
        await db.update({"_id": "c1"}, delta, token="t1")

        assert (await db.find_one({"_id": "c1"}))["spentTimeInHour"]["actual"] == 4


class TestSqlDocumentStore:
    @pytest.mark.asyncio
    async def test_tables_are_separate(self, test_session_maker):
        cards = SqlDocumentStore(test_session_maker, CardDocument, AppliedCardDelta)
        lists = SqlDocumentStore(test_session_maker, ListDocument)

        await cards.insert({"_id": "x", "kind": "card"})
        await lists.insert({"_id": "x", "kind": "list", "cards": []})

        assert (await cards.find_one({"_id": "x"}))["kind"] == "card"
        assert (await lists.find_one({"_id": "x"}))["kind"] == "list"

    @pytest.mark.asyncio
    async def test_without_ledger_tokens_are_ignored(self, test_session_maker):
        lists = SqlDocumentStore(test_session_maker, ListDocument)
        await lists.insert({"_id": "l1", "cards": []})

        await lists.update({"_id": "l1"}, {"$push": {"cards": "c1"}}, token="t")
        await lists.update({"_id": "l1"}, {"$push": {"cards": "c1"}}, token="t")

        assert (await lists.find_one({"_id": "l1"}))["cards"] == ["c1", "c1"]
