"""Edit surface for a single card.

The editor is either closed, drafting a new card, or editing an existing
one. Opening seeds the form; saving validates it and issues commands;
cancelling issues nothing. The edit/preview tab and the actual-time lock are
local view state and never persisted.
"""

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from cardsync.commands import CardCommands, IssuedCommand, new_id
from cardsync.model import Card, Rejection

logger = logging.getLogger(__name__)


class EditorMode(str, Enum):
    CLOSED = "closed"
    CREATING_DRAFT = "creating_draft"
    EDITING_EXISTING = "editing_existing"


class EditorTab(str, Enum):
    EDIT = "edit"
    PREVIEW = "preview"


class EditorError(RuntimeError):
    """An editor operation that the editor's current state does not allow."""


class CardForm(BaseModel):
    title: str = ""
    content: str = ""
    estimated_time: float | None = Field(default=None, ge=0, le=100)
    actual_time: float | None = Field(default=None, ge=0)


class CardEditor:
    def __init__(
        self,
        commands: CardCommands,
        list_id: str,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._commands = commands
        self.list_id = list_id
        self._id_factory = id_factory
        self.mode = EditorMode.CLOSED
        self.card_id: str | None = None
        self.form = CardForm()
        self.tab = EditorTab.EDIT
        self.preview_source = ""
        self.actual_time_unlocked = False
        # Survives closing, so labels stay right while the editor fades out.
        self.last_session_was_creation: bool | None = None
        self._seed = CardForm()

    @property
    def is_open(self) -> bool:
        return self.mode is not EditorMode.CLOSED

    @property
    def is_creating(self) -> bool:
        if self.is_open:
            return self.mode is EditorMode.CREATING_DRAFT
        return bool(self.last_session_was_creation)

    @property
    def title_label(self) -> str:
        return "Create a new card" if self.is_creating else "Edit"

    @property
    def ok_label(self) -> str:
        return "Create" if self.is_creating else "Save"

    @property
    def card(self) -> Card | None:
        if self.card_id is None:
            return None
        return self._commands.store.get(self.card_id)

    def start_edit(self, card_id: str | None = None) -> None:
        self.actual_time_unlocked = False
        if card_id is None:
            self.mode = EditorMode.CREATING_DRAFT
            self.card_id = None
            self._seed = CardForm()
            self.tab = EditorTab.EDIT
        else:
            card = self._commands.store.get(card_id)
            if card is None:
                raise KeyError(f"Card {card_id} is not loaded")
            self.mode = EditorMode.EDITING_EXISTING
            self.card_id = card_id
            self._seed = CardForm(
                title=card.title,
                content=card.content,
                estimated_time=card.spent_time_in_hour.estimated,
                actual_time=card.spent_time_in_hour.actual,
            )
            self.tab = EditorTab.PREVIEW
        self.form = self._seed.model_copy()
        self.preview_source = self.form.content
        self.last_session_was_creation = self.mode is EditorMode.CREATING_DRAFT
        logger.debug(f"Editor opened ({self.mode.value}, card={self.card_id})")

    def update_form(self, **fields: Any) -> CardForm:
        """Change form fields; raises pydantic.ValidationError for bad values."""
        self._require_open()
        if "actual_time" in fields and not self.actual_time_unlocked:
            raise EditorError("Actual time is locked; unlock it first")
        self.form = CardForm.model_validate({**self.form.model_dump(), **fields})
        return self.form

    def switch_tab(self, tab: EditorTab) -> None:
        if tab is EditorTab.PREVIEW:
            self.preview_source = self.form.content or ""
        self.tab = tab

    def toggle_actual_time_lock(self) -> bool:
        self.actual_time_unlocked = not self.actual_time_unlocked
        return self.actual_time_unlocked

    async def save(self) -> Rejection | list[IssuedCommand]:
        self._require_open()
        form = self.form
        title = form.title.strip()
        if not title:
            return Rejection(msg="Please input the title of the card")

        issued: list[IssuedCommand] = []
        if self.mode is EditorMode.CREATING_DRAFT:
            card_id = self._id_factory()
            issued.append(
                await self._commands.add_card(card_id, self.list_id, title, form.content)
            )
            if form.estimated_time is not None:
                issued.append(
                    await self._commands.set_estimated_time(card_id, form.estimated_time)
                )
        else:
            card_id = self.card_id
            if card_id is None:
                raise EditorError("No card is being edited")
            seed = self._seed
            if title != seed.title:
                issued.append(await self._commands.rename_card(card_id, title))
            if form.content != seed.content:
                issued.append(await self._commands.set_content(card_id, form.content))
            estimated = form.estimated_time or 0
            if estimated != (seed.estimated_time or 0):
                issued.append(await self._commands.set_estimated_time(card_id, estimated))
            if form.actual_time is not None and form.actual_time != seed.actual_time:
                issued.append(
                    await self._commands.set_actual_time(card_id, form.actual_time)
                )

        self.preview_source = form.content
        self._close()
        return issued

    def cancel(self) -> None:
        self._close()

    async def delete_card(self) -> IssuedCommand | None:
        if self.mode is not EditorMode.EDITING_EXISTING or self.card_id is None:
            return None
        issued = await self._commands.delete_card(self.card_id, self.list_id)
        self._close()
        return issued

    async def add_sub_task(self, title: str) -> IssuedCommand | None:
        card_id = self._editing_card_id()
        if card_id is None or not title.strip():
            return None
        return await self._commands.add_sub_task(card_id, title.strip())

    async def toggle_sub_task(self, sub_task_id: str) -> IssuedCommand | None:
        card_id = self._editing_card_id()
        if card_id is None:
            return None
        return await self._commands.toggle_sub_task(card_id, sub_task_id)

    async def delete_sub_task(self, sub_task_id: str) -> IssuedCommand | None:
        card_id = self._editing_card_id()
        if card_id is None:
            return None
        return await self._commands.delete_sub_task(card_id, sub_task_id)

    async def update_sub_task(self, sub_task_id: str, title: str) -> IssuedCommand | None:
        card_id = self._editing_card_id()
        if card_id is None or not title.strip():
            return None
        return await self._commands.update_sub_task(card_id, sub_task_id, title.strip())

    def _editing_card_id(self) -> str | None:
        if self.mode is EditorMode.EDITING_EXISTING:
            return self.card_id
        return None

    def _require_open(self) -> None:
        if not self.is_open:
            raise EditorError("Editor is closed")

    def _close(self) -> None:
        self.mode = EditorMode.CLOSED
        self.card_id = None
        self.actual_time_unlocked = False
