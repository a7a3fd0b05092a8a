import pytest

from engine.assistant_store import AssistantStore
from engine.completion_gateway import CompletionError
from engine.file_store import FileStore
from engine.history_manager import HistoryManager


class ScriptedGateway:
    """Completion gateway double that returns queued replies and records every call."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []

    async def complete(self, history, credential, system_prompt):
        self.calls.append({"history": list(history), "credential": credential, "system_prompt": system_prompt})
        if not self.replies:
            raise CompletionError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(history, system_prompt)
        return reply


@pytest.fixture
def scripted_gateway():
    return ScriptedGateway


@pytest.fixture
def history_manager(tmp_path):
    return HistoryManager(AssistantStore(tmp_path / "assistants.json"), FileStore(tmp_path / "files"))
