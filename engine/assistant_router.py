from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from schemas.assistant import Assistant, SubtaskInfo
from schemas.model_replies import ReplyParser

logger = logging.getLogger(__name__)

RoutingCall = Callable[[str, str], Awaitable[str]]


def normalize_title(title: str) -> str:
    return (title or "").strip().lower()


class AssistantRouter:
    def roster(self, assistants: list[Assistant]) -> str:
        return "\n".join(
            f"Assistant name: \"{assistant.title}\"\nSummary: \"{assistant.summary or ''}\""
            for assistant in assistants
            if not assistant.is_auto_assist
        )

    def task_context(self, tasks: list[str], index: int) -> str:
        if len(tasks) <= 1:
            return ""
        lines = [f"This is step {index + 1} of {len(tasks)}."]
        if index > 0:
            lines.append(f"Previous task: {tasks[index - 1]}")
        if index < len(tasks) - 1:
            lines.append(f"Next task: {tasks[index + 1]}")
        return "\n".join(lines)

    def build_prompt(self, tasks: list[str], index: int, roster: str) -> str:
        return (
            "Find the assistant whose summary shows it can carry out the task below and answer "
            "with its name in exactly this format:\n"
            "{\n  \"assistantTitle\": \"ReactAssistant\"\n}\n"
            "If no assistant fits:\n"
            "{\n  \"assistantTitle\": null\n}\n\n"
            f"[Assistants]\n{roster}\n\n"
            f"[Task]\n{tasks[index]}\n\n"
            f"[Task context]\n{self.task_context(tasks, index)}\n"
        )

    def match(self, title: Optional[str], assistants: list[Assistant]) -> Optional[Assistant]:
        if not title:
            return None
        wanted = normalize_title(title)
        for assistant in assistants:
            if assistant.is_auto_assist:
                continue
            if normalize_title(assistant.title) == wanted:
                return assistant
        return None

    async def route(self, tasks: list[str], assistants: list[Assistant], ask: RoutingCall) -> list[SubtaskInfo]:
        """Recommend one assistant per task. Transport errors from ``ask`` propagate."""
        roster = self.roster(assistants)
        routed: list[SubtaskInfo] = []
        for index, task in enumerate(tasks):
            reply = await ask(task, self.build_prompt(tasks, index, roster))
            title, warnings = ReplyParser.parse_routing(reply)
            for warning in warnings:
                logger.warning(f"Routing task {index + 1}: {warning}")

            matched = self.match(title, assistants)
            if title and matched is None:
                logger.info(f"Routing task {index + 1}: '{title}' is not in the roster, treating as no match")
            routed.append(SubtaskInfo(task=task, recommended_assistant=matched.title if matched else None))
        return routed
