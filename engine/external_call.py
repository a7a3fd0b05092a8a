from __future__ import annotations

import base64
import json
import logging
from typing import Any, Optional

import httpx

from engine.template_evaluator import (
    TemplateError,
    normalize_params,
    render_request_fragment,
    render_response_text,
    resolve_path,
)
from schemas.assistant import APIConfig, ExternalCallResult

logger = logging.getLogger(__name__)

BODY_METHODS = {"POST", "PUT", "DELETE"}


class ExternalCallExecutor:
    """Issues one HTTP call per triggered API config. Never raises past ``execute``."""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.timeout = timeout
        self.transport = transport

    async def execute(self, config: APIConfig, params: dict[str, Any]) -> ExternalCallResult:
        bag = normalize_params(params)
        query = self._render_fragment(config, config.query_template, bag, "query")
        body = self._render_fragment(config, config.body_template, bag, "body")

        query_params: dict[str, Any] = {}
        if isinstance(query, dict):
            query_params.update({key: self._query_value(value) for key, value in query.items()})
        elif query is not None:
            logger.warning(f"API '{config.name}': query template did not produce an object, omitting it")

        request_kwargs: dict[str, Any] = {}
        if body is not None and config.method in BODY_METHODS:
            request_kwargs["json"] = body

        try:
            headers, auth_query = self.build_auth(config, bag)
            query_params.update(auth_query)
            if query_params:
                request_kwargs["params"] = query_params
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(config.method, config.endpoint, headers=headers, **request_kwargs)
                response.raise_for_status()
                payload = self._decode(response)
        except httpx.HTTPStatusError as exc:
            logger.error(f"API '{config.name}' returned {exc.response.status_code}")
            return ExternalCallResult(
                success=False,
                error=f"HTTP {exc.response.status_code}: {exc.response.text[:500]}",
                status=exc.response.status_code,
            )
        except httpx.HTTPError as exc:
            logger.error(f"API '{config.name}' request failed: {exc}")
            return ExternalCallResult(success=False, error=str(exc) or exc.__class__.__name__)
        except (httpx.InvalidURL, ValueError) as exc:
            logger.error(f"API '{config.name}' request could not be built: {exc}")
            return ExternalCallResult(success=False, error=f"Invalid request: {exc}")

        return self.extract_result(config, payload, response.status_code)

    def build_auth(self, config: APIConfig, params: dict[str, Any]) -> tuple[dict[str, str], dict[str, str]]:
        headers = dict(config.headers)
        query: dict[str, str] = {}
        auth = config.auth_config

        if config.auth_type == "bearer":
            token = params.get("apiKey") or auth.token
            if token:
                headers["Authorization"] = f"Bearer {token}"
        elif config.auth_type == "basic":
            raw = f"{auth.username or ''}:{auth.password or ''}".encode("utf-8")
            headers["Authorization"] = f"Basic {base64.b64encode(raw).decode('ascii')}"
        elif config.auth_type == "apiKey" and auth.key_name:
            if auth.in_header:
                headers[auth.key_name] = auth.key_value or ""
            else:
                query[auth.key_name] = auth.key_value or ""
        return headers, query

    def extract_result(self, config: APIConfig, payload: Any, status: int) -> ExternalCallResult:
        if config.response_type == "image":
            try:
                image = resolve_path(payload, config.image_data_path)
            except TemplateError as exc:
                logger.warning(f"API '{config.name}': image path '{config.image_data_path}' failed ({exc}), using text")
            else:
                if isinstance(image, str) and image:
                    return ExternalCallResult(success=True, data=image, status=status, type="image")
                logger.warning(f"API '{config.name}': image path did not resolve to a string, using text")

        if config.response_template:
            try:
                text = render_response_text(config.response_template, payload)
                return ExternalCallResult(success=True, data=text, status=status, type="text")
            except TemplateError as exc:
                logger.warning(f"API '{config.name}': response template failed ({exc}), returning raw response")

        if isinstance(payload, str):
            text = payload
        else:
            text = json.dumps(payload, ensure_ascii=False, indent=2)
        return ExternalCallResult(success=True, data=text, status=status, type="text")

    def _render_fragment(
        self,
        config: APIConfig,
        template: Optional[str],
        params: dict[str, Any],
        label: str,
    ) -> Any:
        if not template or not template.strip():
            return None
        try:
            return render_request_fragment(template, params)
        except TemplateError as exc:
            logger.warning(f"API '{config.name}': {label} template failed ({exc}), omitting {label}")
            return None

    def _query_value(self, value: Any) -> str:
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False)

    def _decode(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text
