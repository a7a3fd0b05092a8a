"""
Restricted interpolation templates for external API requests and responses.

A template is plain text containing ``${path}`` or ``${path | json}`` placeholders.
Paths are lookups only (``params.prompt``, ``response.data[0].b64_json``,
``response["content-type"]``); no other expression is evaluated.
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping, Union

PLACEHOLDER = re.compile(r"\$\{([^{}]*)\}")
IDENTIFIER = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
INDEX = re.compile(r"\[\s*(-?\d+)\s*\]")
QUOTED_KEY = re.compile(r"\[\s*(?:\"([^\"]*)\"|'([^']*)')\s*\]")

PathSegment = Union[str, int]


class TemplateError(ValueError):
    pass


def parse_path(expression: str) -> list[PathSegment]:
    text = (expression or "").strip()
    if not text:
        raise TemplateError("Empty path expression")

    segments: list[PathSegment] = []
    position = 0
    expect_name = True
    while position < len(text):
        char = text[position]
        if char == ".":
            if expect_name:
                raise TemplateError(f"Unexpected '.' at {position} in '{text}'")
            expect_name = True
            position += 1
            continue

        if char == "[":
            match = INDEX.match(text, position)
            if match:
                segments.append(int(match.group(1)))
            else:
                match = QUOTED_KEY.match(text, position)
                if not match:
                    raise TemplateError(f"Malformed bracket segment at {position} in '{text}'")
                segments.append(match.group(1) if match.group(1) is not None else match.group(2))
            position = match.end()
            expect_name = False
            continue

        if not expect_name:
            raise TemplateError(f"Unexpected '{char}' at {position} in '{text}'")
        match = IDENTIFIER.match(text, position)
        if not match:
            raise TemplateError(f"Invalid name at {position} in '{text}'")
        segments.append(match.group(0))
        position = match.end()
        expect_name = False

    if expect_name:
        raise TemplateError(f"Path '{text}' ends with '.'")
    return segments


def walk(value: Any, segments: list[PathSegment]) -> Any:
    current = value
    for segment in segments:
        if isinstance(segment, int):
            if not isinstance(current, (list, tuple)):
                raise TemplateError(f"Cannot index non-list with [{segment}]")
            try:
                current = current[segment]
            except IndexError as exc:
                raise TemplateError(f"Index [{segment}] out of range") from exc
            continue

        if isinstance(current, Mapping):
            if segment not in current:
                raise TemplateError(f"Key '{segment}' not found")
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment == "length":
            current = len(current)
        else:
            raise TemplateError(f"Cannot read '{segment}' from {type(current).__name__}")
    return current


def resolve_path(value: Any, expression: str) -> Any:
    """Walk a dot-and-bracket path such as ``data[0].b64_json`` from ``value``."""
    return walk(value, parse_path(expression))


def stringify(value: Any, as_json: bool = False) -> str:
    if as_json:
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, ensure_ascii=False)


class TemplateEvaluator:
    FILTERS = {"json", "raw"}

    def __init__(self, roots: Mapping[str, Any], default_root: str) -> None:
        if default_root not in roots:
            raise ValueError(f"Default root '{default_root}' is not among {sorted(roots)}")
        self.roots = dict(roots)
        self.default_root = default_root

    def lookup(self, expression: str) -> Any:
        segments = parse_path(expression)
        head = segments[0]
        if isinstance(head, str) and head in self.roots:
            return walk(self.roots[head], segments[1:])
        return walk(self.roots[self.default_root], segments)

    def render(self, template: str) -> str:
        def substitute(match: re.Match) -> str:
            body = match.group(1)
            expression, _, filter_name = body.partition("|")
            filter_name = filter_name.strip() or "raw"
            if filter_name not in self.FILTERS:
                raise TemplateError(f"Unknown filter '{filter_name}'")
            value = self.lookup(expression)
            return stringify(value, as_json=filter_name == "json")

        return PLACEHOLDER.sub(substitute, template)

    def render_json(self, template: str) -> Any:
        rendered = self.render(template)
        try:
            return json.loads(rendered)
        except json.JSONDecodeError as exc:
            raise TemplateError(f"Rendered template is not valid JSON: {exc}") from exc


def normalize_params(params: Mapping[str, Any]) -> dict[str, Any]:
    """Collapse line breaks in string values so prompt-like text stays on one line."""
    normalized: dict[str, Any] = {}
    for key, value in params.items():
        if isinstance(value, str):
            normalized[key] = re.sub(r"[\r\n]+", " ", value)
        else:
            normalized[key] = value
    return normalized


def render_request_fragment(template: str, params: Mapping[str, Any]) -> Any:
    return TemplateEvaluator({"params": dict(params)}, "params").render_json(template)


def render_response_text(template: str, response: Any) -> str:
    return TemplateEvaluator({"response": response}, "response").render(template)
