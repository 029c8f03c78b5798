"""Pure state transitions for the in-memory card collection.

``evolve`` never performs I/O and never mutates its input. Cards that an
event does not touch keep their identity in the returned collection, and an
event that changes nothing returns the input collection itself.
"""

from collections.abc import Iterable

from cardsync.model import (
    Card,
    CardEventBase,
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
    SpentTime,
)


def evolve(state: CardsState, event: EventBase) -> CardsState:
    if isinstance(event, EvCardsSet):
        return dict(event.cards)

    if isinstance(event, EvCardAdded):
        return {**state, event.card_id: new_card(event)}

    if not isinstance(event, CardEventBase):
        raise TypeError(f"Unsupported event: {type(event).__name__}")

    card = state.get(event.card_id)
    if card is None:
        return state

    if isinstance(event, EvCardDeleted):
        return {k: v for k, v in state.items() if k != event.card_id}

    updated = _evolve_card(card, event)
    if updated is card:
        return state
    return {**state, event.card_id: updated}


def evolve_(state: CardsState, events: Iterable[EventBase]) -> CardsState:
    for e in events:
        state = evolve(state, e)
    return state


def _evolve_card(card: Card, event: CardEventBase) -> Card:
    spent = card.spent_time_in_hour

    if isinstance(event, EvCardRenamed):
        return card.model_copy(update={"title": event.title})
    if isinstance(event, EvContentSet):
        return card.model_copy(update={"content": event.content})
    if isinstance(event, EvEstimatedTimeSet):
        return _with_spent(card, SpentTime(estimated=event.hours, actual=spent.actual))
    if isinstance(event, EvActualTimeSet):
        return _with_spent(card, SpentTime(estimated=spent.estimated, actual=event.hours))
    if isinstance(event, EvActualTimeAdded):
        return _with_spent(
            card,
            SpentTime(estimated=spent.estimated, actual=spent.actual + event.hours),
        )
    if isinstance(event, EvSessionAdded):
        return card.model_copy(
            update={
                "session_ids": card.session_ids + [event.session_id],
                "spent_time_in_hour": SpentTime(
                    estimated=spent.estimated, actual=spent.actual + event.hours
                ),
            }
        )
    if isinstance(event, EvSubTaskAdded):
        return card.model_copy(
            update={"sub_tasks": (card.sub_tasks or []) + [event.sub_task]}
        )

    # The remaining subtask edits leave a card without a subtask list alone.
    if card.sub_tasks is None:
        return card

    if isinstance(event, EvSubTaskToggled):
        return _map_sub_task(
            card,
            event.sub_task_id,
            lambda st: st.model_copy(update={"completed": not st.completed}),
        )
    if isinstance(event, EvSubTaskUpdated):
        return _map_sub_task(
            card,
            event.sub_task_id,
            lambda st: st.model_copy(update={"title": event.title}),
        )
    if isinstance(event, EvSubTaskDeleted):
        remaining = [st for st in card.sub_tasks if st.id != event.sub_task_id]
        if len(remaining) == len(card.sub_tasks):
            return card
        return card.model_copy(update={"sub_tasks": remaining})

    raise TypeError(f"Unsupported event: {type(event).__name__}")


def new_card(event: EvCardAdded) -> Card:
    """The card an EvCardAdded creates: no sessions, no time, no sub-tasks."""
    return Card(
        id=event.card_id,
        title=event.title,
        content=event.content,
        created_time=event.created_time,
        session_ids=[],
        spent_time_in_hour=SpentTime(estimated=0, actual=0),
        sub_tasks=[],
    )


def _with_spent(card: Card, spent: SpentTime) -> Card:
    return card.model_copy(update={"spent_time_in_hour": spent})


def _map_sub_task(card: Card, sub_task_id: str, change) -> Card:
    sub_tasks = card.sub_tasks or []
    if not any(st.id == sub_task_id for st in sub_tasks):
        return card
    return card.model_copy(
        update={
            "sub_tasks": [
                change(st) if st.id == sub_task_id else st for st in sub_tasks
            ]
        }
    )
