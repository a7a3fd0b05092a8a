"""
AutoAssist Backend
Assistant personas with trigger-driven external APIs and an orchestrating AutoAssist persona
"""

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal
import logging
from pathlib import Path

from engine.assistant_store import AssistantStore, StoreError
from engine.chat_service import ChatService
from engine.completion_gateway import CompletionGateway, HTTPCompletionGateway
from engine.external_call import ExternalCallExecutor
from engine.file_store import FileStore
from engine.history_manager import AssistantNotFoundError, ConversationBusyError, HistoryError, HistoryManager
from engine.task_orchestrator import TaskOrchestrator
from engine.trigger_engine import TriggerEngine
from schemas.assistant import AUTO_ASSIST_ID, AssistantDraft, AssistantPatch, Attachment
from schemas.config import DEFAULT_PROVIDERS, AppConfig, load_config, save_config

app = FastAPI()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================

CONFIG_PATH = Path("config.json")
DEFAULT_STORE_PATH = Path("assistants.json")
DEFAULT_FILES_DIR = Path("userdata")


# =============================================================================
# REQUEST MODELS
# =============================================================================

class SendRequest(BaseModel):
    content: str
    attachments: List[Attachment] = Field(default_factory=list)
    use_knowledge_files: bool = False


class SummaryRequest(BaseModel):
    summary: str


class ReorderRequest(BaseModel):
    start_index: int
    drop_index: int


class AgentModeRequest(BaseModel):
    enabled: bool


class ImportRequest(BaseModel):
    snapshot: Any
    mode: Literal["replace", "merge"] = "replace"


# =============================================================================
# SERVICES
# =============================================================================

config: Optional[AppConfig] = load_config(CONFIG_PATH)
history: HistoryManager
orchestrator: Optional[TaskOrchestrator] = None
chat: Optional[ChatService] = None


def build_services(app_config: Optional[AppConfig], gateway: Optional[CompletionGateway] = None) -> None:
    """(Re)build the service graph. The history stays usable without a gateway."""
    global history, orchestrator, chat
    store_path = Path(app_config.store_path) if app_config else DEFAULT_STORE_PATH
    files_dir = Path(app_config.files_dir) if app_config else DEFAULT_FILES_DIR
    files = FileStore(files_dir)
    history = HistoryManager(AssistantStore(store_path), files)

    if app_config is None:
        orchestrator = None
        chat = None
        logger.warning("No configuration loaded, chat endpoints are disabled")
        return

    gateway = gateway or HTTPCompletionGateway(app_config.gateway, timeout=app_config.completion_timeout_seconds)
    executor = ExternalCallExecutor(timeout=app_config.external_call_timeout_seconds)
    triggers = TriggerEngine(gateway, executor, completion_timeout=app_config.completion_timeout_seconds)
    orchestrator = TaskOrchestrator(
        history,
        gateway,
        completion_timeout=app_config.completion_timeout_seconds,
        model=app_config.gateway.model,
    )
    chat = ChatService(
        history,
        gateway,
        triggers,
        orchestrator,
        files,
        external_api_enabled=app_config.external_api_enabled,
        completion_timeout=app_config.completion_timeout_seconds,
        model=app_config.gateway.model,
    )
    logger.info(f"Services ready: provider={app_config.gateway.provider} model={app_config.gateway.model}")


build_services(config)


def require_chat() -> ChatService:
    if chat is None:
        raise HTTPException(status_code=400, detail="Configuration not set")
    return chat


def require_orchestrator() -> TaskOrchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=400, detail="Configuration not set")
    return orchestrator


def assistant_payload(assistant_id: int) -> Dict[str, Any]:
    try:
        return history.get(assistant_id).model_dump(by_alias=True, exclude_none=True)
    except AssistantNotFoundError:
        raise HTTPException(status_code=404, detail="Assistant not found")


# =============================================================================
# API ENDPOINTS
# =============================================================================

@app.get("/api/providers")
async def get_providers():
    return DEFAULT_PROVIDERS


@app.get("/api/config")
async def get_config():
    if not config:
        raise HTTPException(status_code=404, detail="Configuration not set")
    return config.model_dump()


@app.post("/api/config")
async def update_config(app_config: AppConfig):
    global config
    if history.any_busy():
        raise HTTPException(status_code=409, detail="A conversation is in progress")
    config = save_config(CONFIG_PATH, app_config)
    build_services(config)
    return {"status": "success"}


@app.get("/api/assistants")
async def list_assistants():
    return [
        {
            "id": assistant.id,
            "title": assistant.title,
            "summary": assistant.summary,
            "turns": len(assistant.turns),
            "createdAt": assistant.created_at,
            "autoAssist": assistant.is_auto_assist,
        }
        for assistant in history.assistants
    ]


@app.post("/api/assistants")
async def create_assistant(draft: AssistantDraft):
    assistant = history.create(draft)
    return assistant.model_dump(by_alias=True, exclude_none=True)


@app.post("/api/assistants/reorder")
async def reorder_assistants(request: ReorderRequest):
    try:
        history.reorder(request.start_index, request.drop_index)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return [assistant.id for assistant in history.assistants]


@app.get("/api/assistants/{assistant_id}")
async def get_assistant(assistant_id: int):
    return assistant_payload(assistant_id)


@app.patch("/api/assistants/{assistant_id}")
async def update_assistant(assistant_id: int, patch: AssistantPatch):
    try:
        history.update(assistant_id, patch)
    except AssistantNotFoundError:
        raise HTTPException(status_code=404, detail="Assistant not found")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return assistant_payload(assistant_id)


@app.delete("/api/assistants/{assistant_id}")
async def delete_assistant(assistant_id: int):
    if history.is_busy(assistant_id):
        raise HTTPException(status_code=409, detail="Assistant is busy")
    try:
        history.delete(assistant_id)
    except AssistantNotFoundError:
        raise HTTPException(status_code=404, detail="Assistant not found")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"status": "deleted"}


@app.put("/api/assistants/{assistant_id}/summary")
async def update_summary(assistant_id: int, request: SummaryRequest):
    try:
        history.update_summary(assistant_id, request.summary)
    except AssistantNotFoundError:
        raise HTTPException(status_code=404, detail="Assistant not found")
    return {"status": "success"}


@app.post("/api/assistants/{assistant_id}/messages")
async def send_message(assistant_id: int, request: SendRequest):
    service = require_chat()
    try:
        messages = await service.send(
            assistant_id,
            request.content,
            request.attachments,
            use_knowledge_files=request.use_knowledge_files,
        )
    except AssistantNotFoundError:
        raise HTTPException(status_code=404, detail="Assistant not found")
    except ConversationBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"messages": [message.model_dump(by_alias=True, exclude_none=True) for message in messages]}


@app.post("/api/assistants/{assistant_id}/messages/{index}/edit")
async def edit_message(assistant_id: int, index: int, request: SendRequest):
    service = require_chat()
    try:
        messages = await service.edit(
            assistant_id,
            index,
            request.content,
            request.attachments,
            use_knowledge_files=request.use_knowledge_files,
        )
    except AssistantNotFoundError:
        raise HTTPException(status_code=404, detail="Assistant not found")
    except ConversationBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except HistoryError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"messages": [message.model_dump(by_alias=True, exclude_none=True) for message in messages]}


@app.post("/api/assistants/{assistant_id}/reset")
async def reset_assistant(assistant_id: int):
    if history.is_busy(assistant_id):
        raise HTTPException(status_code=409, detail="Assistant is busy")
    try:
        if assistant_id == AUTO_ASSIST_ID and orchestrator is not None:
            orchestrator.reset()
        else:
            history.reset(assistant_id)
    except AssistantNotFoundError:
        raise HTTPException(status_code=404, detail="Assistant not found")
    return {"status": "success"}


@app.get("/api/autoassist")
async def get_autoassist():
    return require_orchestrator().status()


@app.post("/api/autoassist/agent-mode")
async def set_agent_mode(request: AgentModeRequest):
    auto = require_orchestrator()
    auto.set_agent_mode(request.enabled)
    return auto.status()


@app.post("/api/autoassist/cancel")
async def cancel_autoassist():
    if not require_orchestrator().cancel():
        raise HTTPException(status_code=404, detail="No AutoAssist run in flight")
    return {"status": "cancelling"}


@app.post("/api/autoassist/reset")
async def reset_autoassist():
    auto = require_orchestrator()
    auto.reset()
    return auto.status()


@app.get("/api/export")
async def export_assistants(ids: Optional[str] = None, include_history: bool = True):
    selected = None
    if ids:
        try:
            selected = [int(item) for item in ids.split(",") if item.strip()]
        except ValueError:
            raise HTTPException(status_code=400, detail="ids must be a comma-separated list of integers")
    snapshot = history.export(selected, include_history=include_history)
    return snapshot.model_dump(by_alias=True, exclude_none=True)


@app.post("/api/import")
async def import_assistants(request: ImportRequest):
    try:
        assistants = history.import_snapshot(request.snapshot, mode=request.mode)
    except ConversationBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except StoreError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except HistoryError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return {"status": "success", "count": len(assistants)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
