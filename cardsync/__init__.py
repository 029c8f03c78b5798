"""
cardsync - kanban card state kept in sync with a document store

Commands apply to an in-memory projection immediately and reach the
document store as partial updates in the background, with per-card
ordering, retries and observable outcomes.
"""

__version__ = "0.1.0"

# Model and events
from cardsync.model import (
    Card,
    CardEvent,
    CardsState,
    EventBase,
    EvActualTimeAdded,
    EvActualTimeSet,
    EvCardAdded,
    EvCardDeleted,
    EvCardRenamed,
    EvCardsSet,
    EvContentSet,
    EvEstimatedTimeSet,
    EvSessionAdded,
    EvSubTaskAdded,
    EvSubTaskDeleted,
    EvSubTaskToggled,
    EvSubTaskUpdated,
    Rejection,
    SpentTime,
    SubTask,
)

# Projection
from cardsync.projection import evolve, evolve_
from cardsync.store import ProjectionStore

# Persistence
from cardsync.delta import DeltaError, apply_delta, match
from cardsync.documents import (
    DocumentStore,
    DocumentStoreError,
    DuplicateDocument,
    InMemoryDocumentStore,
)
from cardsync.postgres import RetryPolicy, SqlDocumentStore, make_engine
from cardsync.sync import (
    PersistenceFailed,
    PersistenceQueue,
    PersistResult,
    PersistStatus,
)

# Commands and collaborators
from cardsync.commands import CardCommands, InvalidCommand, IssuedCommand
from cardsync.lists import DocumentListDirectory, ListDirectory
from cardsync.editor import CardEditor, CardForm, EditorError, EditorMode, EditorTab

# Configuration
from cardsync.config import (
    CardSyncResources,
    SyncConfig,
    create_card_sync,
    load_cardsync_toml,
    load_config,
    make_commands_from_config,
)

# Observability
from cardsync.metrics import SyncMetrics
from cardsync.tracing import NoopTracer, SyncTracer

__all__ = [
    "__version__",
    # Model
    "Card",
    "CardEvent",
    "CardsState",
    "EventBase",
    "EvActualTimeAdded",
    "EvActualTimeSet",
    "EvCardAdded",
    "EvCardDeleted",
    "EvCardRenamed",
    "EvCardsSet",
    "EvContentSet",
    "EvEstimatedTimeSet",
    "EvSessionAdded",
    "EvSubTaskAdded",
    "EvSubTaskDeleted",
    "EvSubTaskToggled",
    "EvSubTaskUpdated",
    "Rejection",
    "SpentTime",
    "SubTask",
    # Projection
    "evolve",
    "evolve_",
    "ProjectionStore",
    # Persistence
    "DeltaError",
    "apply_delta",
    "match",
    "DocumentStore",
    "DocumentStoreError",
    "DuplicateDocument",
    "InMemoryDocumentStore",
    "RetryPolicy",
    "SqlDocumentStore",
    "make_engine",
    "PersistenceFailed",
    "PersistenceQueue",
    "PersistResult",
    "PersistStatus",
    # Commands
    "CardCommands",
    "InvalidCommand",
    "IssuedCommand",
    "DocumentListDirectory",
    "ListDirectory",
    "CardEditor",
    "CardForm",
    "EditorError",
    "EditorMode",
    "EditorTab",
    # Configuration
    "CardSyncResources",
    "SyncConfig",
    "create_card_sync",
    "load_cardsync_toml",
    "load_config",
    "make_commands_from_config",
    # Observability
    "SyncMetrics",
    "SyncTracer",
    "NoopTracer",
]
