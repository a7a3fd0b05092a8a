from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from schemas.assistant import AUTO_ASSIST_ID, AUTO_ASSIST_TITLE, Assistant, StoreSnapshot

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    pass


def new_auto_assist() -> Assistant:
    return Assistant(id=AUTO_ASSIST_ID, title=AUTO_ASSIST_TITLE)


def ensure_auto_assist(assistants: list[Assistant]) -> list[Assistant]:
    if any(assistant.is_auto_assist for assistant in assistants):
        return assistants
    return [*assistants, new_auto_assist()]


def parse_snapshot(raw: Any) -> StoreSnapshot:
    """Accept ``{agents, titleSettings}``, a bare agent list, or their JSON text."""
    data = raw
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoreError(f"Snapshot is not valid JSON: {exc}") from exc
    if isinstance(data, list):
        data = {"agents": data}
    if not isinstance(data, dict):
        raise StoreError("Snapshot must be an object or a list of assistants")
    try:
        return StoreSnapshot.model_validate(data)
    except ValidationError as exc:
        raise StoreError(f"Snapshot failed validation: {exc}") from exc


def dump_snapshot(snapshot: StoreSnapshot) -> str:
    return snapshot.model_dump_json(by_alias=True, exclude_none=True, indent=2)


class AssistantStore:
    """Full-collection JSON file. Every save overwrites the whole file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.title_settings: Optional[dict[str, Any]] = None

    def load(self) -> list[Assistant]:
        if not self.path.exists():
            return ensure_auto_assist([])
        try:
            snapshot = parse_snapshot(self.path.read_text(encoding="utf-8-sig"))
        except (OSError, StoreError) as exc:
            logger.error(f"Failed to load {self.path}: {exc}")
            return ensure_auto_assist([])
        self.title_settings = snapshot.title_settings
        return ensure_auto_assist(snapshot.agents)

    def save(self, assistants: list[Assistant]) -> None:
        snapshot = StoreSnapshot(agents=assistants, title_settings=self.title_settings)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp_path.write_text(dump_snapshot(snapshot), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StoreError(f"Failed to write {self.path}: {exc}") from exc
