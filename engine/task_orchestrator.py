from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from engine.assistant_router import AssistantRouter
from engine.cancellation import CancellationToken, OperationCancelled
from engine.completion_gateway import CompletionError, CompletionGateway
from engine.confirmation_gate import CONFIRM_PROMPT, ConfirmationGate
from engine.history_manager import HistoryManager, build_user_parts
from engine.task_digest import TaskDigest, TaskReport
from middleware.observability import PipelineTracker
from schemas.assistant import (
    AUTO_ASSIST_ID,
    Assistant,
    Attachment,
    AutoAssistState,
    CompletionMessage,
    Message,
    Part,
    SubtaskInfo,
)
from schemas.model_replies import ReplyParser

logger = logging.getLogger(__name__)

DECOMPOSITION_SYSTEM_PROMPT = "You split user requests into tasks and answer with a JSON array of strings only."
ROUTING_SYSTEM_PROMPT = "You pick the assistant best suited to a task and answer with JSON only."
FALLBACK_PERSONA = "You are AutoAssist. Carry out the following task yourself and report the result."

PLAN_FAILED_NOTICE = "An error occurred while splitting the request into tasks. Please try again."
RUN_CANCELLED_NOTICE = "AutoAssist run cancelled."
NOT_FOUND_PLACEHOLDER = "(assistant not found)"
EXECUTION_ERROR_PLACEHOLDER = "(error during execution)"


class TaskOrchestrator:
    """AutoAssist state machine: decompose, route, confirm, execute, merge."""

    def __init__(
        self,
        history: HistoryManager,
        gateway: CompletionGateway,
        completion_timeout: Optional[float] = None,
        model: str = "gpt-4",
        router: Optional[AssistantRouter] = None,
        gate: Optional[ConfirmationGate] = None,
    ) -> None:
        self.history = history
        self.gateway = gateway
        self.completion_timeout = completion_timeout
        self.model = model
        self.router = router or AssistantRouter()
        self.gate = gate or ConfirmationGate()

        self.state = AutoAssistState.IDLE
        self.pending_subtasks: list[SubtaskInfo] = []
        self.pending_attachments: list[Attachment] = []
        self.agent_mode = False
        self._token: Optional[CancellationToken] = None

    # ------------------------------------------------------------------ controls

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "agentMode": self.agent_mode,
            "pendingSubtasks": [subtask.model_dump(by_alias=True) for subtask in self.pending_subtasks],
            "running": self._token is not None and not self._token.cancelled,
        }

    def set_agent_mode(self, enabled: bool) -> None:
        self.agent_mode = enabled
        logger.info(f"AutoAssist agent mode {'on' if enabled else 'off'}")

    def cancel(self) -> bool:
        if self._token is None or self._token.cancelled:
            return False
        self._token.cancel()
        logger.info("AutoAssist run cancellation requested")
        return True

    def reset(self) -> Assistant:
        self.cancel()
        self._clear()
        return self.history.reset(AUTO_ASSIST_ID)

    def _clear(self) -> None:
        self.state = AutoAssistState.IDLE
        self.pending_subtasks = []
        self.pending_attachments = []
        self._token = None

    # ------------------------------------------------------------------ entry point

    async def handle_message(
        self,
        text: str,
        attachments: Optional[list[Attachment]] = None,
        credential: Optional[str] = None,
        skip_user_append: bool = False,
    ) -> list[Message]:
        """Route one user message through the state machine and return the new display messages."""
        start = len(self.history.auto_assist.turns)
        attachments = list(attachments or [])

        if skip_user_append:
            # Replayed edits are always treated as a fresh request.
            self._clear()
            await self.submit(text, attachments, credential)
        elif self.state == AutoAssistState.AWAIT_CONFIRM:
            self.history.append_user(AUTO_ASSIST_ID, text, attachments)
            await self.answer(text, credential)
        else:
            self.history.append_user(AUTO_ASSIST_ID, text, attachments)
            await self.submit(text, attachments, credential)

        return [turn.display for turn in self.history.auto_assist.turns[start:]]

    # ------------------------------------------------------------------ planning

    async def submit(self, request: str, attachments: list[Attachment], credential: Optional[str]) -> None:
        tracker = PipelineTracker(request_id=str(uuid.uuid4()), flow="autoassist", model=self.model)
        token = self._new_token()

        async def ask(task: str, prompt: str) -> str:
            history = [CompletionMessage(role="user", parts=[Part(text=prompt)])]
            return await self._call(history, credential, ROUTING_SYSTEM_PROMPT, token, tracker, "routing", task)

        try:
            tasks = await self.decompose(request, credential, token, tracker)
            subtasks = await self.router.route(tasks, self.history.roster(), ask)
        except OperationCancelled:
            self.history.append_reply(AUTO_ASSIST_ID, RUN_CANCELLED_NOTICE)
            self._clear()
            tracker.finalize("cancelled")
            return
        except CompletionError as exc:
            logger.error(f"AutoAssist planning failed: {exc}")
            self.history.append_reply(AUTO_ASSIST_ID, PLAN_FAILED_NOTICE)
            self._clear()
            tracker.finalize("failed")
            return

        logger.info(
            "AutoAssist routing: "
            + ", ".join(f"{index + 1}->{subtask.recommended_assistant}" for index, subtask in enumerate(subtasks))
        )
        self.pending_subtasks = subtasks
        self.pending_attachments = attachments
        self.history.append_reply(AUTO_ASSIST_ID, self.plan_summary(subtasks))

        if self.agent_mode:
            await self.execute(credential, tracker)
            return

        self.state = AutoAssistState.AWAIT_CONFIRM
        self._token = None
        self.history.append_reply(AUTO_ASSIST_ID, CONFIRM_PROMPT)
        tracker.finalize("awaiting_confirmation")

    async def decompose(
        self,
        request: str,
        credential: Optional[str],
        token: CancellationToken,
        tracker: PipelineTracker,
    ) -> list[str]:
        prompt = (
            "Split the following request into 2 to 4 ordered, logically distinct tasks.\n"
            "Answer strictly with a JSON array of strings and nothing else, for example:\n"
            "[\"Collect the requirements\", \"Write the draft\"]\n\n"
            f"Request:\n{request}"
        )
        history = [CompletionMessage(role="user", parts=[Part(text=prompt)])]
        reply = await self._call(history, credential, DECOMPOSITION_SYSTEM_PROMPT, token, tracker, "decomposition", "AutoAssist")
        tasks, warnings = ReplyParser.parse_subtasks(reply, request)
        for warning in warnings:
            logger.warning(f"Decomposition: {warning}")
        logger.info(f"AutoAssist decomposed request into {len(tasks)} task(s)")
        return tasks

    @staticmethod
    def plan_summary(subtasks: list[SubtaskInfo]) -> str:
        lines = ["Task plan:"]
        for index, subtask in enumerate(subtasks):
            lines.append(f"{index + 1}. {subtask.task}")
            lines.append(f"   Assistant: {subtask.recommended_assistant or 'none (AutoAssist will handle it)'}")
        return "\n".join(lines)

    # ------------------------------------------------------------------ confirmation

    async def answer(self, text: str, credential: Optional[str]) -> None:
        decision = self.gate.interpret(text)
        logger.info(f"AutoAssist confirmation answer -> {decision.action}")
        if decision.action == "execute":
            self._new_token()
            await self.execute(credential)
        elif decision.action == "cancel":
            self.history.append_reply(AUTO_ASSIST_ID, decision.reply)
            self._clear()
        else:
            self.history.append_reply(AUTO_ASSIST_ID, decision.reply)

    # ------------------------------------------------------------------ execution

    async def execute(self, credential: Optional[str], tracker: Optional[PipelineTracker] = None) -> None:
        token = self._token or self._new_token()
        tracker = tracker or PipelineTracker(request_id=str(uuid.uuid4()), flow="autoassist", model=self.model)
        subtasks = list(self.pending_subtasks)
        self.state = AutoAssistState.EXECUTING
        tracker.metrics.subtasks = len(subtasks)

        digest = TaskDigest(total=len(subtasks))
        try:
            for index, subtask in enumerate(subtasks):
                token.raise_if_cancelled()
                report = await self.run_subtask(index, subtask, digest, credential, token, tracker)
                if report.failed:
                    tracker.metrics.failed_subtasks += 1
                digest.record(report)
        except OperationCancelled:
            self.history.append_reply(AUTO_ASSIST_ID, RUN_CANCELLED_NOTICE)
            self._clear()
            tracker.finalize("cancelled")
            return

        self.history.append_reply(AUTO_ASSIST_ID, digest.merged())
        self._clear()
        tracker.finalize("completed")

    async def run_subtask(
        self,
        index: int,
        subtask: SubtaskInfo,
        digest: TaskDigest,
        credential: Optional[str],
        token: CancellationToken,
        tracker: PipelineTracker,
    ) -> TaskReport:
        title = subtask.recommended_assistant
        assistant = self.router.match(title, self.history.roster()) if title else None
        if title and assistant is None:
            logger.warning(f"Task {index + 1}: assistant '{title}' no longer exists")
            return TaskReport(index=index, task=subtask.task, assistant=title, output=NOT_FOUND_PLACEHOLDER, failed=True)

        if assistant is None:
            label = "AutoAssist"
            system_prompt = FALLBACK_PERSONA
        else:
            label = assistant.title
            system_prompt = (
                f"{assistant.system_prompt}\n\n"
                f"You are running AutoAssist task {index + 1}/{digest.total}.\n"
                f"Request: {subtask.task}\n"
                "Take the previous task results into account."
            )

        prompt = digest.task_header(index, subtask.task) + digest.previous_results()
        history = [CompletionMessage(role="user", parts=build_user_parts(prompt, self.pending_attachments))]
        try:
            output = await self._call(history, credential, system_prompt, token, tracker, "subtask", label)
        except OperationCancelled:
            raise
        except CompletionError as exc:
            logger.warning(f"Task {index + 1} ({label}) failed: {exc}")
            return TaskReport(index=index, task=subtask.task, assistant=label, output=EXECUTION_ERROR_PLACEHOLDER, failed=True)
        return TaskReport(index=index, task=subtask.task, assistant=label, output=output)

    # ------------------------------------------------------------------ helpers

    def _new_token(self) -> CancellationToken:
        self._token = CancellationToken(self.completion_timeout)
        return self._token

    async def _call(
        self,
        history: list[CompletionMessage],
        credential: Optional[str],
        system_prompt: str,
        token: CancellationToken,
        tracker: PipelineTracker,
        stage: str,
        target: str,
    ) -> str:
        prompt_text = "\n".join(message.text for message in history)
        with tracker.track_call(stage, target, f"{system_prompt}\n{prompt_text}") as metric:
            reply = await token.run(self.gateway.complete(history, credential, system_prompt), label=stage)
            tracker.record_output(metric, reply)
        return reply
