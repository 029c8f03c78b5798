from abc import ABC
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DocumentModel(BaseModel):
    """Base for models whose stored document mirrors the in-memory shape.

    Attributes are snake_case in Python and camelCase in documents.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class SubTask(DocumentModel):
    id: str = Field(alias="_id")
    title: str
    completed: bool = False
    created_time: int


class SpentTime(DocumentModel):
    estimated: float = 0
    actual: float = 0


class Card(DocumentModel):
    id: str = Field(alias="_id")
    title: str = ""
    content: str = ""
    created_time: int
    session_ids: list[str] = Field(default_factory=list)
    spent_time_in_hour: SpentTime = Field(default_factory=SpentTime)
    # None for documents written before subtasks existed.
    sub_tasks: list[SubTask] | None = None

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "Card":
        return cls.model_validate(document)


CardsState = dict[str, Card]


class Rejection(BaseModel):
    msg: str = ""


class EventBase(BaseModel, ABC):
    model_config = ConfigDict(frozen=True)

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)

        if cls is EventBase or ABC in cls.__bases__:
            return

        annotation = cls.__annotations__.get("type")
        if annotation is None:
            raise TypeError(
                f"{cls.__name__} must override `type` with a Literal[...] default."
            )


class CardEventBase(EventBase, ABC):
    card_id: str


class EvCardsSet(EventBase):
    """Replaces the whole collection (initial load)."""

    type: Literal["cards_set"] = "cards_set"
    cards: dict[str, Card]


class EvCardAdded(CardEventBase):
    type: Literal["card_added"] = "card_added"
    title: str = ""
    content: str = ""
    created_time: int


class EvCardRenamed(CardEventBase):
    type: Literal["card_renamed"] = "card_renamed"
    title: str


class EvContentSet(CardEventBase):
    type: Literal["content_set"] = "content_set"
    content: str


class EvEstimatedTimeSet(CardEventBase):
    type: Literal["estimated_time_set"] = "estimated_time_set"
    hours: float


class EvActualTimeSet(CardEventBase):
    type: Literal["actual_time_set"] = "actual_time_set"
    hours: float


class EvActualTimeAdded(CardEventBase):
    type: Literal["actual_time_added"] = "actual_time_added"
    hours: float


class EvSessionAdded(CardEventBase):
    """A finished timer session: appended to the log and added to actual time."""

    type: Literal["session_added"] = "session_added"
    session_id: str
    hours: float


class EvCardDeleted(CardEventBase):
    type: Literal["card_deleted"] = "card_deleted"


class EvSubTaskAdded(CardEventBase):
    type: Literal["subtask_added"] = "subtask_added"
    sub_task: SubTask


class EvSubTaskToggled(CardEventBase):
    type: Literal["subtask_toggled"] = "subtask_toggled"
    sub_task_id: str


class EvSubTaskDeleted(CardEventBase):
    type: Literal["subtask_deleted"] = "subtask_deleted"
    sub_task_id: str


class EvSubTaskUpdated(CardEventBase):
    type: Literal["subtask_updated"] = "subtask_updated"
    sub_task_id: str
    title: str


CardEvent = Annotated[
    Union[
        EvCardsSet,
        EvCardAdded,
        EvCardRenamed,
        EvContentSet,
        EvEstimatedTimeSet,
        EvActualTimeSet,
        EvActualTimeAdded,
        EvSessionAdded,
        EvCardDeleted,
        EvSubTaskAdded,
        EvSubTaskToggled,
        EvSubTaskDeleted,
        EvSubTaskUpdated,
    ],
    Field(discriminator="type"),
]
