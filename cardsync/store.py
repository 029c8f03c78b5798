import logging
from collections.abc import Callable

from cardsync.model import Card, CardsState, EventBase
from cardsync.projection import evolve

logger = logging.getLogger(__name__)

# (old_state, new_state, event)
Listener = Callable[[CardsState, CardsState, EventBase], None]


class ProjectionStore:
    """Holds the authoritative in-memory card collection.

    Events are applied one at a time, synchronously; a state is never
    observable half-applied. Readers should treat ``state`` as read-only.
    """

    def __init__(self, initial: CardsState | None = None) -> None:
        self._state: CardsState = dict(initial or {})
        self._version = 0
        self._listeners: list[Listener] = []

    @property
    def state(self) -> CardsState:
        return self._state

    @property
    def version(self) -> int:
        """Number of events dispatched so far."""
        return self._version

    def get(self, card_id: str) -> Card | None:
        return self._state.get(card_id)

    def __contains__(self, card_id: str) -> bool:
        return card_id in self._state

    def __len__(self) -> int:
        return len(self._state)

    def dispatch(self, event: EventBase) -> CardsState:
        old = self._state
        new = evolve(old, event)
        self._state = new
        self._version += 1
        logger.debug(f"Applied {event.type} (version={self._version})")
        self._notify(old, new, event)
        return new

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, old: CardsState, new: CardsState, event: EventBase) -> None:
        for listener in list(self._listeners):
            try:
                listener(old, new, event)
            except Exception as e:
                logger.exception(f"Listener failed for {event.type}: {e}")
