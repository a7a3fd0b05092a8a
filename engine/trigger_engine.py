from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from engine.cancellation import CancellationToken, OperationCancelled
from engine.completion_gateway import CompletionError, CompletionGateway
from engine.external_call import ExternalCallExecutor
from middleware.observability import PipelineTracker
from schemas.assistant import APIConfig, CompletionMessage, Message, Part, Trigger
from schemas.model_replies import ReplyParser

logger = logging.getLogger(__name__)

EXTRACTION_SYSTEM_PROMPT = "You are a parameter extraction engine. Return JSON only."


@dataclass
class ImageResult:
    base64_data: str
    prompt: str
    api_name: str


@dataclass
class TriggerOutcome:
    original_message: str
    processed_message: str
    triggered: list[str] = field(default_factory=list)
    image: Optional[ImageResult] = None
    errors: list[str] = field(default_factory=list)

    @property
    def augmented(self) -> bool:
        return self.processed_message != self.original_message

    @property
    def error(self) -> Optional[str]:
        if self.errors and not self.augmented:
            return "; ".join(self.errors)
        return None


def split_keywords(value: str) -> list[str]:
    return [keyword.strip() for keyword in (value or "").split(",") if keyword.strip()]


def trigger_matches(trigger: Trigger, message: str) -> bool:
    if trigger.type == "keyword":
        lowered = message.lower()
        return any(keyword.lower() in lowered for keyword in split_keywords(trigger.value))
    if trigger.type == "pattern":
        try:
            return re.search(trigger.value, message, flags=re.IGNORECASE) is not None
        except re.error as exc:
            logger.warning(f"Invalid trigger pattern '{trigger.value}': {exc}")
            return False
    return False


def detect_triggered(apis: list[APIConfig], message: str) -> list[APIConfig]:
    triggered: list[APIConfig] = []
    for api in apis:
        if not api.triggers:
            continue
        if any(trigger_matches(trigger, message) for trigger in api.triggers):
            triggered.append(api)
    return triggered


def history_shapes(history: list[Message]) -> dict[str, Any]:
    openai_history = [
        {"role": "user" if msg.role == "user" else "assistant", "content": msg.content}
        for msg in history
    ]
    gemini_history = [
        {"role": "user" if msg.role == "user" else "model", "parts": [{"text": msg.content}]}
        for msg in history
    ]
    return {
        "conversationHistory": [msg.model_dump(by_alias=True, exclude_none=True) for msg in history],
        "openAIFormattedHistory": openai_history,
        "openAIFormattedHistoryStr": json.dumps(openai_history, ensure_ascii=False)[1:-1],
        "geminiFormattedHistory": gemini_history,
        "geminiFormattedHistoryStr": json.dumps(gemini_history, ensure_ascii=False)[1:-1],
    }


class TriggerEngine:
    def __init__(
        self,
        gateway: CompletionGateway,
        executor: ExternalCallExecutor,
        completion_timeout: Optional[float] = None,
    ) -> None:
        self.gateway = gateway
        self.executor = executor
        self.completion_timeout = completion_timeout

    def detect_triggered(self, apis: list[APIConfig], message: str) -> list[APIConfig]:
        return detect_triggered(apis, message)

    def default_parameters(self, message: str, api_config: APIConfig) -> dict[str, Any]:
        params: dict[str, Any] = {"prompt": message}
        if api_config.auth_config.token:
            params["apiKey"] = api_config.auth_config.token
        return params

    async def extract_parameters(
        self,
        message: str,
        api_config: APIConfig,
        credentials: Optional[str],
        history: Optional[list[Message]] = None,
        token: Optional[CancellationToken] = None,
    ) -> dict[str, Any]:
        params = await self._extract(message, api_config, credentials, token)
        params["originalMessage"] = message
        params.setdefault("prompt", message)
        if history:
            params.update(history_shapes(history))
        return params

    async def _extract(
        self,
        message: str,
        api_config: APIConfig,
        credentials: Optional[str],
        token: Optional[CancellationToken],
    ) -> dict[str, Any]:
        if not api_config.parameter_extraction:
            return self.default_parameters(message, api_config)

        wanted = "\n".join(f"- {spec.name}: {spec.description}" for spec in api_config.parameter_extraction)
        prompt = (
            "You are a parameter extraction engine.\n"
            "Extract the required parameters from the user message.\n\n"
            f"User message:\n\"{message}\"\n\n"
            f"Parameters to extract:\n{wanted}\n\n"
            "Return the result as JSON in this form:\n"
            "{\n  \"parameterName\": \"extracted value\"\n}\n"
            "No explanations. Return only the JSON."
        )
        history = [CompletionMessage(role="user", parts=[Part(text=prompt)])]
        call = self.gateway.complete(history, credentials, EXTRACTION_SYSTEM_PROMPT)
        try:
            if token is not None:
                reply = await token.run(call, self.completion_timeout, label="parameter extraction")
            else:
                reply = await call
        except OperationCancelled:
            raise
        except CompletionError as exc:
            logger.warning(f"Parameter extraction for '{api_config.name}' failed: {exc}")
            return self.default_parameters(message, api_config)

        extracted, warnings = ReplyParser.parse_parameters(reply)
        for warning in warnings:
            logger.warning(f"Parameter extraction for '{api_config.name}': {warning}")
        if extracted is None:
            return self.default_parameters(message, api_config)

        if api_config.auth_config.token:
            extracted["apiKey"] = api_config.auth_config.token
        return extracted

    async def process(
        self,
        message: str,
        apis: list[APIConfig],
        credentials: Optional[str],
        history: Optional[list[Message]] = None,
        tracker: Optional[PipelineTracker] = None,
        token: Optional[CancellationToken] = None,
    ) -> TriggerOutcome:
        outcome = TriggerOutcome(original_message=message, processed_message=message)
        triggered = self.detect_triggered(apis, message)
        if not triggered:
            return outcome

        logger.info(f"Triggered APIs: {[api.name for api in triggered]}")
        for api in triggered:
            outcome.triggered.append(api.name)
            if token is not None:
                token.raise_if_cancelled()
            params = await self.extract_parameters(message, api, credentials, history, token)

            if tracker is not None:
                tracker.metrics.external_calls += 1
                with tracker.track_call("external_api", api.name, json.dumps(params, ensure_ascii=False, default=str)) as metric:
                    result = await self.executor.execute(api, params)
                    metric.success = result.success
                    metric.error = result.error
            else:
                result = await self.executor.execute(api, params)

            if not result.success:
                logger.warning(f"API '{api.name}' failed: {result.error}")
                outcome.errors.append(f"{api.name}: {result.error or 'unknown error'}")
                continue

            if result.type == "image":
                outcome.image = ImageResult(base64_data=result.data, prompt=message, api_name=api.name)
                continue

            text = result.data if isinstance(result.data, str) else json.dumps(result.data, ensure_ascii=False, indent=2)
            outcome.processed_message += f"\n\n[Supplemental information: {api.name}]\n{text}"

        return outcome

    @staticmethod
    def enhance_system_prompt(original_prompt: str, apis: list[APIConfig], outcome: Optional[TriggerOutcome] = None) -> str:
        if not apis:
            return original_prompt

        api_info = "\n".join(
            f"- API name: {api.name}\n"
            f"  - Description: {api.description or 'none'}\n"
            f"  - Provides: {', '.join(t.description for t in api.triggers if t.description) or 'none'}"
            for api in apis
        )

        result_info = ""
        if outcome is not None and outcome.error:
            result_info = (
                "Note: an API call for the latest user message failed.\n"
                f"Error: {outcome.error}\n\n"
                "This is an internal error the user has not been told about. "
                "Respond normally and do not mention this error."
            )
        elif outcome is not None and outcome.augmented:
            result_info = (
                "Note: API calls were made for the latest user message and extra information was added.\n"
                f"Original message: \"{outcome.original_message}\"\n"
                f"Message including the API information: \"{outcome.processed_message}\"\n\n"
                "This information is not shown to the user and they do not know it was added. "
                "Weave it into your answer naturally."
            )

        return (
            f"{original_prompt}\n\n"
            "You have access to several external information sources. Depending on the user's request, "
            "data from these sources is provided automatically. Available sources:\n\n"
            f"{api_info}\n\n"
            f"{result_info}\n\n"
            "Data from these sources may be included with the user's message. Use it to give the best answer. "
            "Do not tell the user which API the data came from; incorporate it naturally. "
            "When no data is provided, answer from general knowledge."
        )
