from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

AUTO_ASSIST_ID = 999999
AUTO_ASSIST_TITLE = "AutoAssistSystem"


def now_local() -> str:
    return datetime.now(UTC).isoformat()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# MESSAGES
# =============================================================================

class InlineData(CamelModel):
    mime_type: str
    data: str


class Part(CamelModel):
    text: Optional[str] = None
    inline_data: Optional[InlineData] = None


class Attachment(CamelModel):
    name: str = "attachment"
    data: str
    mime_type: str = "application/octet-stream"


class Message(CamelModel):
    role: Literal["user", "assistant"]
    content: str = ""
    image_path: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _map_legacy_type(cls, raw: Any) -> Any:
        if not isinstance(raw, dict) or "role" in raw:
            return raw
        payload = dict(raw)
        kind = str(payload.pop("type", "user")).lower()
        payload["role"] = "user" if kind == "user" else "assistant"
        return payload


class CompletionMessage(CamelModel):
    role: Literal["user", "model"]
    parts: list[Part] = Field(default_factory=list)

    @field_validator("role", mode="before")
    @classmethod
    def _coerce_role(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return "user" if text == "user" else "model"

    @property
    def text(self) -> str:
        for part in self.parts:
            if part.text is not None:
                return part.text
        return ""

    @property
    def attachments(self) -> list[InlineData]:
        return [part.inline_data for part in self.parts if part.inline_data is not None]

    def with_text(self, text: str) -> "CompletionMessage":
        parts = [part.model_copy() for part in self.parts]
        for index, part in enumerate(parts):
            if part.text is not None:
                parts[index] = Part(text=text)
                break
        else:
            parts.insert(0, Part(text=text))
        return CompletionMessage(role=self.role, parts=parts)


class Turn(CamelModel):
    """One exchange entry. The display and completion projections always travel together."""

    display: Message
    completion: CompletionMessage

    @property
    def role(self) -> str:
        return self.display.role

    @classmethod
    def user(cls, text: str, parts: Optional[list[Part]] = None) -> "Turn":
        return cls(
            display=Message(role="user", content=text),
            completion=CompletionMessage(role="user", parts=parts or [Part(text=text)]),
        )

    @classmethod
    def reply(cls, text: str, image_path: Optional[str] = None) -> "Turn":
        return cls(
            display=Message(role="assistant", content=text, image_path=image_path),
            completion=CompletionMessage(role="model", parts=[Part(text=text)]),
        )


# =============================================================================
# EXTERNAL API CONFIGURATION
# =============================================================================

class Trigger(CamelModel):
    type: Literal["keyword", "pattern"] = "keyword"
    value: str = ""
    description: str = ""


class AuthConfig(CamelModel):
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    key_name: Optional[str] = None
    key_value: Optional[str] = None
    in_header: bool = True


class ParameterSpec(CamelModel):
    name: str = Field(validation_alias=AliasChoices("name", "paramName", "param_name"))
    description: str = ""


class APIConfig(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    endpoint: str
    method: Literal["GET", "POST", "PUT", "DELETE"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body_template: Optional[str] = None
    query_template: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("query_template", "queryTemplate", "queryParamsTemplate"),
    )
    response_template: Optional[str] = None
    auth_type: Literal["none", "basic", "bearer", "apiKey"] = "none"
    auth_config: AuthConfig = Field(default_factory=AuthConfig)
    triggers: list[Trigger] = Field(default_factory=list)
    parameter_extraction: list[ParameterSpec] = Field(default_factory=list)
    response_type: Literal["text", "image"] = "text"
    image_data_path: str = "data[0].b64_json"

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> str:
        return str(value or "GET").strip().upper()

    @field_validator("auth_config", mode="before")
    @classmethod
    def _default_auth(cls, value: Any) -> Any:
        return value if value is not None else {}

    @field_validator("headers", mode="before")
    @classmethod
    def _default_headers(cls, value: Any) -> Any:
        return value if value is not None else {}


# =============================================================================
# ASSISTANTS
# =============================================================================

class Assistant(CamelModel):
    id: int
    title: str
    system_prompt: str = ""
    turns: list[Turn] = Field(default_factory=list)
    knowledge_file_paths: list[str] = Field(default_factory=list)
    summary: str = ""
    api_configs: list[APIConfig] = Field(default_factory=list)
    api_call_enabled: bool = True
    created_at: str = Field(default_factory=now_local)

    @property
    def display_history(self) -> list[Message]:
        return [turn.display for turn in self.turns]

    @property
    def completion_history(self) -> list[CompletionMessage]:
        return [turn.completion for turn in self.turns]

    @property
    def is_auto_assist(self) -> bool:
        return self.id == AUTO_ASSIST_ID

    @model_validator(mode="before")
    @classmethod
    def _map_legacy_payload(cls, raw: Any) -> Any:
        if not isinstance(raw, dict):
            return raw

        payload = dict(raw)
        renames = {
            "customTitle": "title",
            "agentFilePaths": "knowledgeFilePaths",
            "assistantSummary": "summary",
            "enableAPICall": "apiCallEnabled",
        }
        for legacy, current in renames.items():
            if legacy in payload and current not in payload:
                payload[current] = payload.pop(legacy)
            else:
                payload.pop(legacy, None)

        for key in ("knowledgeFilePaths", "apiConfigs", "summary", "systemPrompt"):
            if key in payload and payload[key] is None:
                payload.pop(key)
        if payload.get("apiCallEnabled") is None:
            payload.pop("apiCallEnabled", None)

        # Dual-history payloads are zipped into turns.
        if "turns" not in payload and ("messages" in payload or "postMessages" in payload):
            display = payload.get("messages") or []
            completion = payload.get("postMessages") or []
            if len(display) != len(completion):
                logger.warning(
                    f"Assistant {payload.get('id')}: history length mismatch "
                    f"({len(display)} display / {len(completion)} completion), dropping unmatched tail"
                )
            payload["turns"] = [
                {"display": shown, "completion": sent}
                for shown, sent in zip(display, completion)
            ]
        payload.pop("messages", None)
        payload.pop("postMessages", None)
        payload.pop("inputMessage", None)
        return payload


class AssistantDraft(CamelModel):
    title: str
    system_prompt: str = ""
    knowledge_file_paths: list[str] = Field(default_factory=list)
    summary: str = ""
    api_configs: list[APIConfig] = Field(default_factory=list)
    api_call_enabled: bool = True


class AssistantPatch(CamelModel):
    title: Optional[str] = None
    system_prompt: Optional[str] = None
    knowledge_file_paths: Optional[list[str]] = None
    api_configs: Optional[list[APIConfig]] = None
    api_call_enabled: Optional[bool] = None


class StoreSnapshot(CamelModel):
    agents: list[Assistant] = Field(default_factory=list)
    title_settings: Optional[dict[str, Any]] = None


# =============================================================================
# AUTOASSIST
# =============================================================================

class AutoAssistState(str, Enum):
    IDLE = "idle"
    AWAIT_CONFIRM = "awaitConfirm"
    EXECUTING = "executing"


class SubtaskInfo(CamelModel):
    task: str
    recommended_assistant: Optional[str] = None


class ExternalCallResult(CamelModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    status: Optional[int] = None
    type: Literal["text", "image"] = "text"
