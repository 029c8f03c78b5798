import copy
import logging
from datetime import datetime, timedelta
from typing import Any, Literal, Type

from pydantic import BaseModel, Field
from sqlalchemy import JSON, TIMESTAMP, Integer, String, event, func, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from cardsync.delta import Delta, Filter, apply_delta, match
from cardsync.documents import DocumentStore, DuplicateDocument

logger = logging.getLogger(__name__)

JsonDocument = JSON().with_variant(JSONB(), "postgresql")


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    backoff_strategy: Literal["exponential", "linear"] = "exponential"
    backoff_factor: float = 2
    backoff_max: timedelta = timedelta(seconds=60)
    backoff_min: timedelta = timedelta(seconds=1)
    backoff_jitter: float = 0.0


Base = declarative_base()


class StoredDocument(Base):
    __abstract__ = True

    id: Mapped[str] = mapped_column(String(256), primary_key=True)
    body: Mapped[dict] = mapped_column(JsonDocument, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class AppliedDelta(Base):
    """Ledger of write tokens already applied, written in the same transaction."""

    __abstract__ = True

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    document_id: Mapped[str] = mapped_column(String(256), nullable=True, index=True)
    matched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=func.now()
    )


class CardDocument(StoredDocument):
    __tablename__ = "card_documents"


class ListDocument(StoredDocument):
    __tablename__ = "list_documents"


class AppliedCardDelta(AppliedDelta):
    __tablename__ = "applied_card_deltas"


class AppliedListDelta(AppliedDelta):
    __tablename__ = "applied_list_deltas"


def make_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine used by SqlDocumentStore.

    On SQLite every transaction is opened with ``BEGIN IMMEDIATE`` so the
    write lock is taken before the row is read. The driver's own deferred
    BEGIN is switched off for that.
    """
    engine = create_async_engine(database_url, echo=echo)
    if engine.dialect.name == "sqlite":

        @event.listens_for(engine.sync_engine, "connect")
        def _no_implicit_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class SqlDocumentStore(DocumentStore):
    """Document store on top of one SQL table of JSON bodies.

    Updates read the row, apply the delta in Python and write the new body
    back in one transaction, so concurrent writers must be serialized by
    the database: PostgreSQL through ``SELECT ... FOR UPDATE``, SQLite
    through the ``BEGIN IMMEDIATE`` transactions of an engine built with
    :func:`make_engine`. On an engine created any other way SQLite defers
    the write lock and concurrent ``$inc``/``$push`` deltas are lost.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        document_model: Type[StoredDocument],
        applied_model: Type[AppliedDelta] | None = None,
    ) -> None:
        self._session_maker = session_maker
        self._document_model = document_model
        self._applied_model = applied_model

    async def insert(self, document: dict[str, Any], token: str | None = None) -> None:
        async with self._session_maker() as s:
            if await self._applied(s, token) is not None:
                return
            s.add(self._document_model(id=document["_id"], body=copy.deepcopy(document)))
            self._record(s, token, document["_id"], 1)
            try:
                await s.commit()
            except IntegrityError as e:
                await s.rollback()
                raise DuplicateDocument(
                    f"Document '{document['_id']}' already exists in "
                    f"{self._document_model.__tablename__}"
                ) from e

    async def update(
        self, filter: Filter, delta: Delta, token: str | None = None
    ) -> int:
        async with self._session_maker() as s:
            prior = await self._applied(s, token)
            if prior is not None:
                logger.debug(f"Skipping already applied write {token}")
                return prior

            matched = 0
            for row in await self._select(s, filter, for_update=True):
                ok, position = match(row.body, filter)
                if ok:
                    row.body = apply_delta(row.body, delta, position)
                    matched = 1
                    break
            self._record(s, token, filter.get("_id"), matched)
            await s.commit()
            return matched

    async def remove(self, filter: Filter) -> int:
        async with self._session_maker() as s:
            removed = 0
            for row in await self._select(s, filter, for_update=True):
                if match(row.body, filter)[0]:
                    await s.delete(row)
                    removed += 1
            await s.commit()
            return removed

    async def find(self, filter: Filter | None = None) -> list[dict[str, Any]]:
        async with self._session_maker() as s:
            rows = await self._select(s, filter or {})
            return [
                copy.deepcopy(row.body) for row in rows if match(row.body, filter)[0]
            ]

    async def _select(
        self, s: AsyncSession, filter: Filter, for_update: bool = False
    ) -> list[StoredDocument]:
        model = self._document_model
        q = select(model).order_by(model.created_at, model.id)
        if filter.get("_id") is not None:
            q = q.where(model.id == filter["_id"])
        if for_update:
            q = q.with_for_update()
        result = await s.execute(q)
        return list(result.scalars().all())

    async def _applied(self, s: AsyncSession, token: str | None) -> int | None:
        if token is None or self._applied_model is None:
            return None
        row = await s.get(self._applied_model, token)
        return row.matched if row is not None else None

    def _record(
        self, s: AsyncSession, token: str | None, document_id: Any, matched: int
    ) -> None:
        if token is None or self._applied_model is None:
            return
        s.add(
            self._applied_model(
                token=token,
                document_id=None if document_id is None else str(document_id),
                matched=matched,
            )
        )
