import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any

from typing_extensions import Self

from cardsync.delta import Delta, Filter, apply_delta, match

logger = logging.getLogger(__name__)


class DocumentStoreError(Exception):
    pass


class DuplicateDocument(DocumentStoreError):
    pass


class DocumentStore(ABC):
    """Key-value document store addressed by ``{"_id": ...}`` filters.

    ``token`` identifies one logical write across retries: a store that has
    already applied a token skips it and reports the first outcome.
    """

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    @abstractmethod
    async def insert(self, document: dict[str, Any], token: str | None = None) -> None:
        pass

    @abstractmethod
    async def update(
        self, filter: Filter, delta: Delta, token: str | None = None
    ) -> int:
        """Apply ``delta`` to the first matching document; return matched count."""

    @abstractmethod
    async def remove(self, filter: Filter) -> int:
        pass

    @abstractmethod
    async def find(self, filter: Filter | None = None) -> list[dict[str, Any]]:
        pass

    async def find_one(self, filter: Filter) -> dict[str, Any] | None:
        found = await self.find(filter)
        return found[0] if found else None


class InMemoryDocumentStore(DocumentStore):
    """Process-local document store.

    Every operation yields to the event loop once (plus ``latency`` seconds),
    so concurrent writers interleave the way they would against a real
    engine.
    """

    def __init__(self, latency: float = 0.0, max_tokens: int = 10_000) -> None:
        self._docs: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self._applied: OrderedDict[str, int] = OrderedDict()
        self._latency = latency
        self._max_tokens = max_tokens

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self._docs.clear()
        self._applied.clear()
        return False

    async def insert(self, document: dict[str, Any], token: str | None = None) -> None:
        await self._io()
        if token is not None and token in self._applied:
            return
        doc_id = document.get("_id")
        if doc_id is None:
            raise DocumentStoreError("Document has no _id")
        if doc_id in self._docs:
            raise DuplicateDocument(f"Document '{doc_id}' already exists")
        self._docs[doc_id] = copy.deepcopy(document)
        self._remember(token, 1)

    async def update(
        self, filter: Filter, delta: Delta, token: str | None = None
    ) -> int:
        await self._io()
        if token is not None and token in self._applied:
            logger.debug(f"Skipping already applied write {token}")
            return self._applied[token]
        for doc_id, doc in self._candidates(filter):
            matched, position = match(doc, filter)
            if matched:
                self._docs[doc_id] = apply_delta(doc, delta, position)
                self._remember(token, 1)
                return 1
        self._remember(token, 0)
        return 0

    async def remove(self, filter: Filter) -> int:
        await self._io()
        removed = [doc_id for doc_id, doc in self._candidates(filter) if match(doc, filter)[0]]
        for doc_id in removed:
            del self._docs[doc_id]
        return len(removed)

    async def find(self, filter: Filter | None = None) -> list[dict[str, Any]]:
        await self._io()
        return [
            copy.deepcopy(doc)
            for _, doc in self._candidates(filter or {})
            if match(doc, filter)[0]
        ]

    def _candidates(self, filter: Filter):
        doc_id = filter.get("_id")
        if doc_id is not None:
            doc = self._docs.get(doc_id)
            return [(doc_id, doc)] if doc is not None else []
        return list(self._docs.items())

    def _remember(self, token: str | None, matched: int) -> None:
        if token is None:
            return
        self._applied[token] = matched
        if len(self._applied) > self._max_tokens:
            self._applied.popitem(last=False)

    async def _io(self) -> None:
        await asyncio.sleep(self._latency)
