import logging
from abc import ABC, abstractmethod

from cardsync.documents import DocumentStore

logger = logging.getLogger(__name__)


class ListDirectory(ABC):
    """The collaborator that owns card-to-list placement."""

    @abstractmethod
    async def add_card_by_id(self, list_id: str, card_id: str) -> None:
        pass

    @abstractmethod
    async def delete_card(self, list_id: str, card_id: str) -> None:
        pass


class DocumentListDirectory(ListDirectory):
    """Lists stored as ``{"_id", "title", "cards": [card ids]}`` documents."""

    def __init__(self, db: DocumentStore) -> None:
        self._db = db

    async def create_list(self, list_id: str, title: str = "") -> None:
        await self._db.insert({"_id": list_id, "title": title, "cards": []})

    async def add_card_by_id(self, list_id: str, card_id: str) -> None:
        matched = await self._db.update({"_id": list_id}, {"$push": {"cards": card_id}})
        if not matched:
            logger.warning(f"List {list_id} not found; card {card_id} left unplaced")

    async def delete_card(self, list_id: str, card_id: str) -> None:
        matched = await self._db.update({"_id": list_id}, {"$pull": {"cards": card_id}})
        if not matched:
            logger.warning(f"List {list_id} not found while removing card {card_id}")

    async def cards_of(self, list_id: str) -> list[str] | None:
        doc = await self._db.find_one({"_id": list_id})
        return None if doc is None else list(doc.get("cards", []))

    async def all_lists(self) -> list[dict]:
        return await self._db.find({})
