from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from schemas.assistant import CompletionMessage
from schemas.config import DEFAULT_PROVIDERS, ProviderConfig

logger = logging.getLogger(__name__)

RATE_LIMIT_BACKOFF_SECONDS = 2.0


class CompletionError(RuntimeError):
    """Transport, auth or response-shape failure of the completion service."""


class CompletionGateway(Protocol):
    async def complete(
        self,
        history: List[CompletionMessage],
        credential: Optional[str],
        system_prompt: str,
    ) -> str:
        ...


# =============================================================================
# WIRE FORMATS
# =============================================================================

def completion_to_gemini(history: List[CompletionMessage], system_prompt: str) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "contents": [message.model_dump(by_alias=True, exclude_none=True) for message in history],
    }
    if system_prompt:
        payload["system_instruction"] = {"parts": [{"text": system_prompt}]}
    return payload


def completion_to_openai(history: List[CompletionMessage], system_prompt: str) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for message in history:
        role = "user" if message.role == "user" else "assistant"
        attachments = message.attachments
        if not attachments or role != "user":
            messages.append({"role": role, "content": message.text})
            continue
        content: List[Dict[str, Any]] = [{"type": "text", "text": message.text}]
        for item in attachments:
            if item.mime_type.startswith("image/"):
                content.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{item.mime_type};base64,{item.data}"},
                })
        messages.append({"role": role, "content": content})
    return messages


def completion_to_anthropic(history: List[CompletionMessage]) -> List[Dict[str, Any]]:
    result_messages: List[Dict[str, Any]] = []
    for message in history:
        role = "user" if message.role == "user" else "assistant"
        blocks: List[Dict[str, Any]] = [{"type": "text", "text": message.text}]
        if role == "user":
            for item in message.attachments:
                if item.mime_type.startswith("image/"):
                    blocks.append({
                        "type": "image",
                        "source": {"type": "base64", "media_type": item.mime_type, "data": item.data},
                    })
        result_messages.append({"role": role, "content": blocks})
    return result_messages


def extract_reply_text(provider_type: str, data: Dict[str, Any]) -> str:
    try:
        if provider_type == "gemini":
            return data["candidates"][0]["content"]["parts"][0]["text"]
        if provider_type == "anthropic":
            return "".join(
                block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
            )
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise CompletionError(f"Unexpected completion payload: {exc}") from exc

    if isinstance(content, list):
        return "".join(str(item.get("text", "")) if isinstance(item, dict) else str(item) for item in content)
    return content or ""


# =============================================================================
# HTTP GATEWAY
# =============================================================================

class HTTPCompletionGateway:
    def __init__(
        self,
        config: ProviderConfig,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.timeout = timeout
        self.transport = transport

    async def complete(
        self,
        history: List[CompletionMessage],
        credential: Optional[str],
        system_prompt: str,
    ) -> str:
        api_key = credential or self.config.api_key
        try:
            return await self._post(history, api_key, system_prompt)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code != 429:
                raise CompletionError(f"Completion service returned {exc.response.status_code}") from exc
            logger.warning(
                f"Rate limit hit for provider {self.config.provider}. Retrying in {RATE_LIMIT_BACKOFF_SECONDS}s..."
            )
            await asyncio.sleep(RATE_LIMIT_BACKOFF_SECONDS)
            try:
                return await self._post(history, api_key, system_prompt)
            except httpx.HTTPStatusError as exc2:
                raise CompletionError(f"Completion service returned {exc2.response.status_code}") from exc2
            except httpx.HTTPError as exc2:
                raise CompletionError(f"Completion transport error: {exc2}") from exc2
        except httpx.HTTPError as exc:
            raise CompletionError(f"Completion transport error: {exc}") from exc

    async def _post(self, history: List[CompletionMessage], api_key: str, system_prompt: str) -> str:
        endpoint, headers, payload = self._build_request(history, api_key, system_prompt)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(endpoint, headers=headers, json=payload)
            response.raise_for_status()
            try:
                data = response.json()
            except ValueError as exc:
                raise CompletionError("Completion service returned non-JSON body") from exc
        return extract_reply_text(self.config.provider_type, data)

    def _build_request(
        self,
        history: List[CompletionMessage],
        api_key: str,
        system_prompt: str,
    ) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        cfg = self.config
        endpoint = cfg.base_url or DEFAULT_PROVIDERS.get(cfg.provider, {}).get("base_url")
        if not endpoint:
            raise CompletionError(f"Missing base_url for provider {cfg.provider}")
        endpoint = endpoint.replace("{model}", cfg.model)

        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if cfg.provider_type == "anthropic":
            headers["x-api-key"] = api_key
            headers["anthropic-version"] = "2023-06-01"
            payload: Dict[str, Any] = {
                "model": cfg.model,
                "max_tokens": cfg.max_tokens,
                "messages": completion_to_anthropic(history),
            }
            if system_prompt:
                payload["system"] = system_prompt
        elif cfg.provider_type == "gemini":
            headers["x-goog-api-key"] = api_key
            payload = completion_to_gemini(history, system_prompt)
        else:
            headers["Authorization"] = f"Bearer {api_key}"
            payload = {"model": cfg.model, "messages": completion_to_openai(history, system_prompt)}

        if cfg.headers:
            headers.update(cfg.headers)
        return endpoint, headers, payload
