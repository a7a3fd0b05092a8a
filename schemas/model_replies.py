from __future__ import annotations

import json
import re
from typing import Any, Optional

TASK_PREFIX = re.compile(r"^\s*(?:task|タスク)\s*\d+\s*[:：]\s*", flags=re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return (text or "").replace("```json", "").replace("```", "").strip()


def clean_task_label(task: str) -> str:
    return TASK_PREFIX.sub("", task).strip()


class ReplyParser:
    """Lenient readers for the JSON the completion service is asked to return.

    Every reader returns a value plus a list of warnings and never raises; the
    caller decides what the fallback means.
    """

    @staticmethod
    def parse_subtasks(raw: str, original_request: str) -> tuple[list[str], list[str]]:
        warnings: list[str] = []
        fallback = [original_request]

        try:
            parsed = json.loads(strip_code_fences(raw))
        except json.JSONDecodeError:
            parsed = ReplyParser._extract_array(raw)
            if parsed is None:
                warnings.append("Decomposition reply is not a JSON array, using the whole request")
                return fallback, warnings
            warnings.append("Recovered JSON array from mixed text payload")

        if not isinstance(parsed, list):
            warnings.append("Decomposition reply is not a JSON array, using the whole request")
            return fallback, warnings
        if not all(isinstance(item, str) for item in parsed):
            warnings.append("Decomposition array contains non-string items, using the whole request")
            return fallback, warnings

        tasks = [clean_task_label(item) for item in parsed]
        tasks = [task for task in tasks if task]
        if not tasks:
            warnings.append("Decomposition array is empty, using the whole request")
            return fallback, warnings
        return tasks, warnings

    @staticmethod
    def parse_routing(raw: str) -> tuple[Optional[str], list[str]]:
        warnings: list[str] = []
        parsed = ReplyParser._parse_object(raw, warnings)
        if parsed is None:
            warnings.append("Routing reply is not a JSON object")
            return None, warnings

        title = parsed.get("assistantTitle")
        if title is None:
            return None, warnings
        if not isinstance(title, str) or not title.strip():
            warnings.append(f"Routing reply has unusable assistantTitle: {title!r}")
            return None, warnings
        return title.strip(), warnings

    @staticmethod
    def parse_parameters(raw: str) -> tuple[Optional[dict[str, Any]], list[str]]:
        warnings: list[str] = []
        candidate = ReplyParser._extract_object(raw or "")
        if candidate is None:
            warnings.append("Parameter reply contains no JSON object")
            return None, warnings
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as exc:
            warnings.append(f"Parameter JSON invalid: {exc}")
            return None, warnings
        if not isinstance(parsed, dict):
            warnings.append("Parameter reply is not a JSON object")
            return None, warnings
        return parsed, warnings

    @staticmethod
    def _parse_object(raw: str, warnings: list[str]) -> Optional[dict[str, Any]]:
        stripped = strip_code_fences(raw)
        if not stripped:
            return None
        try:
            parsed = json.loads(stripped)
            if isinstance(parsed, dict):
                return parsed
            return None
        except json.JSONDecodeError:
            pass

        candidate = ReplyParser._extract_object(stripped)
        if candidate is None:
            return None
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            return None
        if isinstance(parsed, dict):
            warnings.append("Recovered JSON object from mixed text payload")
            return parsed
        return None

    @staticmethod
    def _extract_object(text: str) -> Optional[str]:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            return None
        return text[start : end + 1]

    @staticmethod
    def _extract_array(text: str) -> Optional[list[Any]]:
        start = text.find("[")
        end = text.rfind("]")
        if start == -1 or end == -1 or end <= start:
            return None
        try:
            parsed = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, list) else None
