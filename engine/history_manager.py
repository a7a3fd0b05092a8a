from __future__ import annotations

import base64
import binascii
import csv
import io
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Iterable, Literal, Optional, Protocol

from engine.assistant_store import AssistantStore, StoreError, ensure_auto_assist, parse_snapshot
from engine.file_store import FileStore
from schemas.assistant import (
    AUTO_ASSIST_ID,
    Assistant,
    AssistantDraft,
    AssistantPatch,
    Attachment,
    InlineData,
    Message,
    Part,
    StoreSnapshot,
    Turn,
)

logger = logging.getLogger(__name__)


class AssistantNotFoundError(KeyError):
    pass


class ConversationBusyError(RuntimeError):
    pass


class HistoryError(RuntimeError):
    pass


class ReplayCallback(Protocol):
    def __call__(
        self,
        assistant_id: int,
        text: str,
        attachments: list[Attachment],
        skip_user_append: bool = False,
    ) -> Awaitable[list[Message]]:
        ...


def csv_to_json(text: str) -> str:
    rows = list(csv.reader(io.StringIO(text)))
    if len(rows) <= 1:
        return "[]"
    headers = rows[0]
    records = [dict(zip(headers, row)) for row in rows[1:] if len(row) == len(headers)]
    return json.dumps(records, ensure_ascii=False, indent=2)


def build_user_parts(text: str, attachments: Iterable[Attachment] = ()) -> list[Part]:
    lead = text
    inline: list[Part] = []
    for attachment in attachments:
        if attachment.mime_type == "text/csv":
            try:
                decoded = base64.b64decode(attachment.data).decode("utf-8-sig")
                lead += f"\n---\nCSV→JSON:\n{csv_to_json(decoded)}"
            except (binascii.Error, UnicodeDecodeError, ValueError):
                lead += "\n(CSV→JSON conversion failed)"
        inline.append(Part(inline_data=InlineData(mime_type=attachment.mime_type, data=attachment.data)))
    return [Part(text=lead), *inline]


class HistoryManager:
    """Owns the assistant collection and is the only component that writes it."""

    def __init__(self, store: AssistantStore, files: FileStore) -> None:
        self.store = store
        self.files = files
        self.assistants: list[Assistant] = store.load()
        self.replay: Optional[ReplayCallback] = None
        self._busy: set[int] = set()

    # ------------------------------------------------------------------ reads

    def get(self, assistant_id: int) -> Assistant:
        for assistant in self.assistants:
            if assistant.id == assistant_id:
                return assistant
        raise AssistantNotFoundError(assistant_id)

    @property
    def auto_assist(self) -> Assistant:
        return self.get(AUTO_ASSIST_ID)

    def roster(self) -> list[Assistant]:
        return [assistant for assistant in self.assistants if not assistant.is_auto_assist]

    def is_busy(self, assistant_id: int) -> bool:
        return assistant_id in self._busy

    def any_busy(self) -> bool:
        return bool(self._busy)

    @asynccontextmanager
    async def conversation(self, assistant_id: int) -> AsyncIterator[Assistant]:
        assistant = self.get(assistant_id)
        if assistant_id in self._busy:
            raise ConversationBusyError(f"Assistant {assistant_id} is already processing a message")
        self._busy.add(assistant_id)
        try:
            yield assistant
        finally:
            self._busy.discard(assistant_id)

    # ------------------------------------------------------------------ history

    def append_user(self, assistant_id: int, text: str, attachments: Iterable[Attachment] = ()) -> Turn:
        turn = Turn.user(text, build_user_parts(text, attachments))
        self.get(assistant_id).turns.append(turn)
        self.persist()
        return turn

    def append_reply(self, assistant_id: int, text: str, image_path: Optional[str] = None) -> Turn:
        turn = Turn.reply(text, image_path=image_path)
        self.get(assistant_id).turns.append(turn)
        self.persist()
        return turn

    def persist(self) -> bool:
        try:
            self.store.save(self.assistants)
            return True
        except StoreError as exc:
            # In-memory state stays authoritative until the next successful write.
            logger.error(f"Persisting assistants failed: {exc}")
            return False

    async def edit_and_replay(
        self,
        assistant_id: int,
        index: int,
        new_content: str,
        attachments: Optional[list[Attachment]] = None,
    ) -> list[Message]:
        assistant = self.get(assistant_id)
        if index < 0 or index >= len(assistant.turns):
            raise ValueError(f"Turn index {index} out of range for {len(assistant.turns)} turns")
        if assistant.turns[index].role != "user":
            raise ValueError(f"Turn {index} is not a user turn")

        attachments = list(attachments or [])
        discarded = assistant.turns[index:]
        revised = assistant.model_copy(deep=True)
        revised.turns = revised.turns[:index] + [Turn.user(new_content, build_user_parts(new_content, attachments))]
        candidate = [revised if item.id == assistant_id else item for item in self.assistants]
        try:
            self.store.save(candidate)
        except StoreError as exc:
            raise HistoryError(f"Edit of assistant {assistant_id} was not saved: {exc}") from exc
        self.assistants = candidate
        logger.info(f"Assistant {assistant_id}: turn {index} edited, {len(discarded)} turn(s) discarded")

        for turn in discarded:
            if turn.display.image_path:
                self.files.delete(turn.display.image_path)

        if self.replay is None:
            return [revised.turns[-1].display]
        replies = await self.replay(assistant_id, new_content, attachments, skip_user_append=True)
        return [revised.turns[-1].display, *replies]

    def reset(self, assistant_id: int) -> Assistant:
        assistant = self.get(assistant_id)
        for turn in assistant.turns:
            if turn.display.image_path:
                self.files.delete(turn.display.image_path)
        assistant.turns = []
        self.persist()
        return assistant

    # ------------------------------------------------------------------ collection

    def _next_id(self) -> int:
        return max((assistant.id for assistant in self.roster()), default=0) + 1

    def create(self, draft: AssistantDraft) -> Assistant:
        assistant = Assistant(id=self._next_id(), **draft.model_dump())
        roster = self.roster()
        roster.append(assistant)
        self.assistants = [*roster, self.auto_assist]
        self.persist()
        return assistant

    def update(self, assistant_id: int, patch: AssistantPatch) -> Assistant:
        assistant = self.get(assistant_id)
        changes = patch.model_dump(exclude_none=True)
        if assistant.is_auto_assist and "title" in changes:
            raise ValueError("AutoAssist cannot be renamed")
        for field_name, value in changes.items():
            if field_name == "api_configs":
                value = list(patch.api_configs or [])
            setattr(assistant, field_name, value)
        self.persist()
        return assistant

    def update_summary(self, assistant_id: int, summary: str) -> Assistant:
        assistant = self.get(assistant_id)
        assistant.summary = summary
        self.persist()
        return assistant

    def reorder(self, start_index: int, drop_index: int) -> list[Assistant]:
        roster = self.roster()
        if not 0 <= start_index < len(roster):
            raise ValueError(f"Start index {start_index} out of range")
        item = roster.pop(start_index)
        roster.insert(max(0, min(drop_index, len(roster))), item)
        self.assistants = [*roster, self.auto_assist]
        self.persist()
        return self.assistants

    def delete(self, assistant_id: int) -> None:
        assistant = self.get(assistant_id)
        if assistant.is_auto_assist:
            raise ValueError("AutoAssist cannot be deleted")
        for turn in assistant.turns:
            if turn.display.image_path:
                self.files.delete(turn.display.image_path)
        for path in assistant.knowledge_file_paths:
            self.files.delete(path)
        self.assistants = [item for item in self.assistants if item.id != assistant_id]
        self.persist()

    # ------------------------------------------------------------------ export / import

    def export(self, ids: Optional[list[int]] = None, include_history: bool = True) -> StoreSnapshot:
        selected = [
            assistant.model_copy(deep=True)
            for assistant in self.assistants
            if ids is None or assistant.id in ids
        ]
        if not include_history:
            for assistant in selected:
                assistant.turns = []
        return StoreSnapshot(agents=selected, title_settings=self.store.title_settings)

    def import_snapshot(self, raw: Any, mode: Literal["replace", "merge"] = "replace") -> list[Assistant]:
        if self._busy:
            raise ConversationBusyError("Cannot import while a conversation is in progress")
        snapshot = parse_snapshot(raw)
        if mode == "replace":
            candidate = ensure_auto_assist(list(snapshot.agents))
            title_settings = snapshot.title_settings
        else:
            roster = self.roster()
            next_id = self._next_id()
            for incoming in snapshot.agents:
                if incoming.is_auto_assist:
                    continue
                roster.append(incoming.model_copy(update={"id": next_id}))
                next_id += 1
            candidate = [*roster, self.auto_assist]
            title_settings = snapshot.title_settings or self.store.title_settings

        previous_settings = self.store.title_settings
        self.store.title_settings = title_settings
        try:
            self.store.save(candidate)
        except StoreError as exc:
            self.store.title_settings = previous_settings
            raise HistoryError(f"Import was not saved: {exc}") from exc
        self.assistants = candidate
        logger.info(f"Imported {len(snapshot.agents)} assistant(s) in {mode} mode")
        return self.assistants
