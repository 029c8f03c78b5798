"""Configuration and wiring for a card sync session.

Example:
    async with create_card_sync(database_url="sqlite+aiosqlite:///cards.db") as res:
        await res.lists.create_list("todo", "To do")
        await res.commands.fetch_all()
        issued = await res.commands.add_card("c1", "todo", "Buy milk")
        await issued.persisted()
"""

import logging
import os
import tomllib
from contextlib import asynccontextmanager
from dataclasses import dataclass, fields
from datetime import timedelta
from typing import Any, Callable

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)

from cardsync.commands import CardCommands, new_id, now_ms
from cardsync.documents import DocumentStore
from cardsync.lists import DocumentListDirectory, ListDirectory
from cardsync.metrics import SyncMetrics
from cardsync.postgres import (
    AppliedCardDelta,
    AppliedListDelta,
    CardDocument,
    ListDocument,
    RetryPolicy,
    SqlDocumentStore,
    create_tables,
    make_engine,
)
from cardsync.store import ProjectionStore
from cardsync.sync import PersistenceQueue
from cardsync.tracing import SyncTracer

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///cardsync.db"


@dataclass
class SyncConfig:
    database_url: str = DEFAULT_DATABASE_URL
    create_tables: bool = True
    engine_echo: bool = False
    # One write at a time per card id
    serialize_per_card: bool = True
    max_retries: int = 3
    backoff_strategy: str = "exponential"
    backoff_factor: float = 2.0
    backoff_min_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    enable_metrics: bool = True
    enable_otel: bool = False

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            backoff_strategy=self.backoff_strategy,
            backoff_factor=self.backoff_factor,
            backoff_min=timedelta(seconds=self.backoff_min_seconds),
            backoff_max=timedelta(seconds=self.backoff_max_seconds),
        )

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "SyncConfig":
        """Build a config from a flat mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown cardsync config keys: {', '.join(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})


def load_cardsync_toml(path: str | None = None) -> dict[str, Any]:
    """Load a ``cardsync.toml`` configuration file.

    Searches (in order):
    1. The explicit ``path`` argument.
    2. ``$CARDSYNC_CONFIG`` environment variable.
    3. ``cardsync.toml`` in the current working directory.

    Returns the ``[cardsync]`` section, or an empty dict if no file is found:

    .. code-block:: toml

        [cardsync]
        database_url = "postgresql+asyncpg://..."
        max_retries = 5
        backoff_strategy = "linear"
        enable_otel = true

    Environment variables prefixed with ``CARDSYNC_`` override TOML values
    (e.g. ``CARDSYNC_MAX_RETRIES=8``).
    """
    candidates = [
        path,
        os.getenv("CARDSYNC_CONFIG"),
        "cardsync.toml",
    ]
    for candidate in candidates:
        if candidate and os.path.exists(candidate):
            with open(candidate, "rb") as fh:
                data = tomllib.load(fh)
            result: dict[str, Any] = data.get("cardsync", {})
            _apply_env_overrides(result)
            return result

    result = {}
    _apply_env_overrides(result)
    return result


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    """Apply ``CARDSYNC_*`` environment variables on top of cfg dict (in-place)."""
    _BOOL_KEYS = {
        "create_tables",
        "engine_echo",
        "serialize_per_card",
        "enable_metrics",
        "enable_otel",
    }
    _INT_KEYS = {"max_retries"}
    _FLOAT_KEYS = {
        "backoff_factor",
        "backoff_min_seconds",
        "backoff_max_seconds",
    }
    _SKIP_KEYS = {"config"}

    for env_key, env_val in os.environ.items():
        if not env_key.startswith("CARDSYNC_"):
            continue
        cfg_key = env_key[len("CARDSYNC_"):].lower()
        if cfg_key in _SKIP_KEYS:
            continue
        if cfg_key in _BOOL_KEYS:
            cfg[cfg_key] = env_val.lower() in ("1", "true", "yes")
        elif cfg_key in _INT_KEYS:
            try:
                cfg[cfg_key] = int(env_val)
            except ValueError:
                logger.warning(f"Ignoring {env_key}={env_val!r}: not an integer")
        elif cfg_key in _FLOAT_KEYS:
            try:
                cfg[cfg_key] = float(env_val)
            except ValueError:
                logger.warning(f"Ignoring {env_key}={env_val!r}: not a number")
        else:
            cfg[cfg_key] = env_val


def load_config(path: str | None = None, **overrides: Any) -> SyncConfig:
    """TOML file, then ``CARDSYNC_*`` env vars, then explicit non-None overrides."""
    data = load_cardsync_toml(path)
    data.update({k: v for k, v in overrides.items() if v is not None})
    return SyncConfig.from_mapping(data)


def make_commands_from_config(
    config: SyncConfig,
    cards_db: DocumentStore,
    lists: ListDirectory,
    store: ProjectionStore | None = None,
    metrics: SyncMetrics | None = None,
    id_factory: Callable[[], str] = new_id,
    clock: Callable[[], int] = now_ms,
) -> CardCommands:
    """Create a CardCommands with a persistence queue configured from ``config``."""
    queue = PersistenceQueue(
        retry_policy=config.retry_policy(),
        serialize_per_key=config.serialize_per_card,
        metrics=metrics,
        tracer=SyncTracer(enable=config.enable_otel),
    )
    return CardCommands(
        store=store or ProjectionStore(),
        db=cards_db,
        lists=lists,
        queue=queue,
        id_factory=id_factory,
        clock=clock,
        metrics=metrics,
    )


@dataclass
class CardSyncResources:
    """Resources created by create_card_sync."""

    commands: CardCommands
    store: ProjectionStore
    queue: PersistenceQueue
    cards_db: SqlDocumentStore
    lists_db: SqlDocumentStore
    lists: DocumentListDirectory
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    metrics: SyncMetrics | None = None


@asynccontextmanager
async def create_card_sync(config: SyncConfig | None = None, **overrides: Any):
    """Set up the SQL engine, document stores, list directory and commands.

    In-flight persistence writes are drained before the engine is disposed.
    """
    config = config or load_config(**overrides)
    engine = make_engine(config.database_url, echo=config.engine_echo)
    session_maker = async_sessionmaker(engine, expire_on_commit=False)
    try:
        if config.create_tables:
            await create_tables(engine)

        cards_db = SqlDocumentStore(session_maker, CardDocument, AppliedCardDelta)
        lists_db = SqlDocumentStore(session_maker, ListDocument, AppliedListDelta)
        lists = DocumentListDirectory(lists_db)
        metrics = SyncMetrics() if config.enable_metrics else None
        commands = make_commands_from_config(config, cards_db, lists, metrics=metrics)

        async with commands.queue:
            yield CardSyncResources(
                commands=commands,
                store=commands.store,
                queue=commands.queue,
                cards_db=cards_db,
                lists_db=lists_db,
                lists=lists,
                engine=engine,
                session_maker=session_maker,
                metrics=metrics,
            )
    finally:
        await engine.dispose()
