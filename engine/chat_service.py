from __future__ import annotations

import logging
import uuid
from typing import Optional

from engine.cancellation import CancellationToken
from engine.completion_gateway import CompletionError, CompletionGateway
from engine.file_store import FileStore
from engine.history_manager import HistoryManager
from engine.task_orchestrator import TaskOrchestrator
from engine.trigger_engine import TriggerEngine, TriggerOutcome
from middleware.observability import PipelineTracker
from schemas.assistant import AUTO_ASSIST_ID, Assistant, Attachment, Message

logger = logging.getLogger(__name__)

IMAGE_NOTICE = "Image generated"


class ChatService:
    """Send and edit entry points. Ordinary assistants get the trigger pipeline, AutoAssist the orchestrator."""

    def __init__(
        self,
        history: HistoryManager,
        gateway: CompletionGateway,
        triggers: TriggerEngine,
        orchestrator: TaskOrchestrator,
        files: FileStore,
        external_api_enabled: bool = True,
        completion_timeout: Optional[float] = None,
        credential: Optional[str] = None,
        model: str = "gpt-4",
    ) -> None:
        self.history = history
        self.gateway = gateway
        self.triggers = triggers
        self.orchestrator = orchestrator
        self.files = files
        self.external_api_enabled = external_api_enabled
        self.completion_timeout = completion_timeout
        self.credential = credential
        self.model = model
        self.history.replay = self.dispatch

    async def send(
        self,
        assistant_id: int,
        text: str,
        attachments: Optional[list[Attachment]] = None,
        use_knowledge_files: bool = False,
    ) -> list[Message]:
        async with self.history.conversation(assistant_id) as assistant:
            attachments = self._with_knowledge(assistant, attachments, use_knowledge_files)
            return await self.dispatch(assistant_id, text, attachments)

    async def edit(
        self,
        assistant_id: int,
        index: int,
        text: str,
        attachments: Optional[list[Attachment]] = None,
        use_knowledge_files: bool = False,
    ) -> list[Message]:
        async with self.history.conversation(assistant_id) as assistant:
            attachments = self._with_knowledge(assistant, attachments, use_knowledge_files)
            return await self.history.edit_and_replay(assistant_id, index, text, attachments)

    async def dispatch(
        self,
        assistant_id: int,
        text: str,
        attachments: list[Attachment],
        skip_user_append: bool = False,
    ) -> list[Message]:
        if assistant_id == AUTO_ASSIST_ID:
            return await self.orchestrator.handle_message(text, attachments, self.credential, skip_user_append)
        return await self.converse(assistant_id, text, attachments, skip_user_append)

    async def converse(
        self,
        assistant_id: int,
        text: str,
        attachments: list[Attachment],
        skip_user_append: bool = False,
    ) -> list[Message]:
        assistant = self.history.get(assistant_id)
        start = len(assistant.turns)
        if not skip_user_append:
            self.history.append_user(assistant_id, text, attachments)

        tracker = PipelineTracker(request_id=str(uuid.uuid4()), flow="chat", model=self.model)
        token = CancellationToken(self.completion_timeout)
        apis = assistant.api_configs if self.external_api_enabled and assistant.api_call_enabled else []

        outcome: Optional[TriggerOutcome] = None
        if apis:
            prior = assistant.display_history[:-1]
            outcome = await self.triggers.process(text, apis, self.credential, prior, tracker, token)
            if outcome.image is not None and self._append_image(assistant_id, outcome):
                tracker.finalize("image")
                return self._since(assistant_id, start)

        outgoing = list(assistant.completion_history)
        if outcome is not None and outcome.augmented:
            outgoing[-1] = outgoing[-1].with_text(outcome.processed_message)
        system_prompt = TriggerEngine.enhance_system_prompt(assistant.system_prompt, apis, outcome)

        try:
            with tracker.track_call("completion", assistant.title, f"{system_prompt}\n{outgoing[-1].text}") as metric:
                reply = await token.run(
                    self.gateway.complete(outgoing, self.credential, system_prompt),
                    label="completion",
                )
                tracker.record_output(metric, reply)
        except CompletionError as exc:
            logger.error(f"Completion for assistant {assistant_id} failed: {exc}")
            self.history.append_reply(assistant_id, f"An error occurred: {exc}")
            tracker.finalize("failed")
        else:
            self.history.append_reply(assistant_id, reply)
            tracker.finalize("completed")
        return self._since(assistant_id, start)

    def _append_image(self, assistant_id: int, outcome: TriggerOutcome) -> bool:
        try:
            path = self.files.save_image(outcome.image.base64_data)
        except (ValueError, OSError) as exc:
            logger.warning(f"Image from '{outcome.image.api_name}' could not be saved: {exc}")
            return False
        self.history.append_reply(assistant_id, IMAGE_NOTICE, image_path=path)
        return True

    def _with_knowledge(
        self,
        assistant: Assistant,
        attachments: Optional[list[Attachment]],
        use_knowledge_files: bool,
    ) -> list[Attachment]:
        combined = list(attachments or [])
        if use_knowledge_files and assistant.knowledge_file_paths:
            combined.extend(self.files.read_attachments(assistant.knowledge_file_paths))
        return combined

    def _since(self, assistant_id: int, start: int) -> list[Message]:
        return [turn.display for turn in self.history.get(assistant_id).turns[start:]]
