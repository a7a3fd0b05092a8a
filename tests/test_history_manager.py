import base64
import json
from pathlib import Path

import pytest

from engine.assistant_store import AssistantStore, StoreError
from engine.file_store import FileStore
from engine.history_manager import (
    AssistantNotFoundError,
    ConversationBusyError,
    HistoryError,
    HistoryManager,
    build_user_parts,
)
from schemas.assistant import AUTO_ASSIST_ID, AssistantDraft, AssistantPatch, Attachment


def seed(manager, title="Writer", exchanges=2):
    assistant = manager.create(AssistantDraft(title=title, system_prompt=f"You are {title}."))
    for index in range(exchanges):
        manager.append_user(assistant.id, f"question {index}")
        manager.append_reply(assistant.id, f"answer {index}")
    return assistant


def test_fresh_store_contains_only_auto_assist(history_manager):
    assert [assistant.id for assistant in history_manager.assistants] == [AUTO_ASSIST_ID]
    assert history_manager.roster() == []


def test_appends_keep_histories_aligned_and_persist(history_manager, tmp_path):
    assistant = seed(history_manager)
    assert len(assistant.display_history) == len(assistant.completion_history) == 4
    assert assistant.completion_history[1].role == "model"

    reloaded = AssistantStore(tmp_path / "assistants.json").load()
    assert [item.id for item in reloaded] == [assistant.id, AUTO_ASSIST_ID]
    assert reloaded[0].display_history[2].content == "question 1"


def test_csv_attachment_is_converted_into_text_part():
    csv_data = base64.b64encode("name,age\nAlice,30\nBob\n".encode("utf-8")).decode("ascii")
    parts = build_user_parts("summarize", [Attachment(name="people.csv", data=csv_data, mime_type="text/csv")])

    assert parts[0].text.startswith("summarize\n---\nCSV→JSON:\n")
    rows = json.loads(parts[0].text.split("CSV→JSON:\n", 1)[1])
    assert rows == [{"name": "Alice", "age": "30"}]
    assert parts[1].inline_data.mime_type == "text/csv"


def test_undecodable_csv_is_marked():
    parts = build_user_parts("x", [Attachment(data=base64.b64encode(b"\xff\xfe\xfa").decode("ascii"), mime_type="text/csv")])
    assert "(CSV→JSON conversion failed)" in parts[0].text


@pytest.mark.asyncio
async def test_edit_truncates_to_index_plus_one(history_manager):
    assistant = seed(history_manager, exchanges=3)

    shown = await history_manager.edit_and_replay(assistant.id, 2, "revised question")

    current = history_manager.get(assistant.id)
    assert len(current.display_history) == len(current.completion_history) == 3
    assert current.display_history[-1].content == "revised question"
    assert [message.content for message in shown] == ["revised question"]


@pytest.mark.asyncio
async def test_edit_replays_without_duplicating_user_turn(history_manager):
    assistant = seed(history_manager, exchanges=2)
    calls = []

    async def replay(assistant_id, text, attachments, skip_user_append=False):
        calls.append((assistant_id, text, skip_user_append))
        turn = history_manager.append_reply(assistant_id, f"reply to {text}")
        return [turn.display]

    history_manager.replay = replay
    shown = await history_manager.edit_and_replay(assistant.id, 0, "new start")

    current = history_manager.get(assistant.id)
    assert calls == [(assistant.id, "new start", True)]
    assert len(current.display_history) == len(current.completion_history) == 2
    assert [message.content for message in shown] == ["new start", "reply to new start"]


@pytest.mark.asyncio
async def test_edit_rejects_bad_index_and_assistant_turns(history_manager):
    assistant = seed(history_manager, exchanges=1)
    with pytest.raises(ValueError):
        await history_manager.edit_and_replay(assistant.id, 5, "x")
    with pytest.raises(ValueError):
        await history_manager.edit_and_replay(assistant.id, 1, "x")
    with pytest.raises(AssistantNotFoundError):
        await history_manager.edit_and_replay(404, 0, "x")


@pytest.mark.asyncio
async def test_failed_edit_leaves_history_untouched(history_manager, monkeypatch):
    assistant = seed(history_manager, exchanges=2)

    def broken_save(assistants):
        raise StoreError("disk full")

    monkeypatch.setattr(history_manager.store, "save", broken_save)
    with pytest.raises(HistoryError):
        await history_manager.edit_and_replay(assistant.id, 0, "revised")

    current = history_manager.get(assistant.id)
    assert len(current.turns) == 4
    assert current.display_history[0].content == "question 0"


@pytest.mark.asyncio
async def test_edit_deletes_images_of_discarded_turns(history_manager):
    assistant = seed(history_manager, exchanges=1)
    image_path = history_manager.files.save_image(base64.b64encode(b"png").decode("ascii"))
    history_manager.append_user(assistant.id, "draw a cat")
    history_manager.append_reply(assistant.id, "Image generated", image_path=image_path)

    await history_manager.edit_and_replay(assistant.id, 2, "draw a dog")

    assert not Path(image_path).exists()


def test_persist_failure_keeps_memory_state(history_manager, monkeypatch):
    assistant = seed(history_manager, exchanges=0)

    def broken_save(assistants):
        raise StoreError("read-only")

    monkeypatch.setattr(history_manager.store, "save", broken_save)
    history_manager.append_user(assistant.id, "still here")
    assert history_manager.get(assistant.id).display_history[-1].content == "still here"


@pytest.mark.asyncio
async def test_busy_conversation_rejects_second_entry(history_manager):
    assistant = seed(history_manager, exchanges=0)
    async with history_manager.conversation(assistant.id):
        assert history_manager.is_busy(assistant.id)
        with pytest.raises(ConversationBusyError):
            async with history_manager.conversation(assistant.id):
                pass
    assert not history_manager.is_busy(assistant.id)


def test_reorder_keeps_auto_assist_last(history_manager):
    first = seed(history_manager, "First", 0)
    second = seed(history_manager, "Second", 0)
    third = seed(history_manager, "Third", 0)

    history_manager.reorder(2, 0)

    assert [a.id for a in history_manager.assistants] == [third.id, first.id, second.id, AUTO_ASSIST_ID]


def test_update_and_summary(history_manager):
    assistant = seed(history_manager, exchanges=0)
    history_manager.update(assistant.id, AssistantPatch(title="Editor", api_call_enabled=False))
    history_manager.update_summary(assistant.id, "Edits prose")

    updated = history_manager.get(assistant.id)
    assert updated.title == "Editor"
    assert updated.api_call_enabled is False
    assert updated.summary == "Edits prose"
    with pytest.raises(ValueError):
        history_manager.update(AUTO_ASSIST_ID, AssistantPatch(title="Renamed"))


def test_delete_cascades_to_knowledge_files(history_manager, tmp_path):
    source = tmp_path / "notes.txt"
    source.write_text("knowledge", encoding="utf-8")
    stored = history_manager.files.copy_into_storage(source)
    assistant = history_manager.create(AssistantDraft(title="Reader", knowledge_file_paths=[stored]))

    history_manager.delete(assistant.id)

    assert not Path(stored).exists()
    with pytest.raises(AssistantNotFoundError):
        history_manager.get(assistant.id)
    with pytest.raises(ValueError):
        history_manager.delete(AUTO_ASSIST_ID)


def test_export_without_history(history_manager):
    seed(history_manager, exchanges=2)
    snapshot = history_manager.export(include_history=False)
    assert all(assistant.turns == [] for assistant in snapshot.agents)
    assert len(history_manager.roster()[0].turns) == 4


def test_import_merge_assigns_fresh_ids(history_manager):
    existing = seed(history_manager, "Writer", 1)
    incoming = {
        "agents": [
            {"id": 1, "title": "Translator"},
            {"id": AUTO_ASSIST_ID, "title": "AutoAssistSystem"},
        ],
        "titleSettings": {"fontSize": 14},
    }

    history_manager.import_snapshot(incoming, mode="merge")

    ids = [assistant.id for assistant in history_manager.assistants]
    assert ids == [existing.id, existing.id + 1, AUTO_ASSIST_ID]
    assert history_manager.get(existing.id + 1).title == "Translator"
    assert history_manager.store.title_settings == {"fontSize": 14}


def test_import_replace_accepts_legacy_payload(history_manager):
    seed(history_manager, "Writer", 1)
    legacy = [
        {
            "id": 3,
            "customTitle": "Legacy",
            "messages": [{"type": "user", "content": "hi"}, {"type": "ai", "content": "hello"}, {"type": "user", "content": "lost"}],
            "postMessages": [{"role": "user", "parts": [{"text": "hi"}]}, {"role": "model", "parts": [{"text": "hello"}]}],
            "agentFilePaths": None,
            "enableAPICall": False,
        }
    ]

    history_manager.import_snapshot(json.dumps(legacy), mode="replace")

    assert [assistant.id for assistant in history_manager.assistants] == [3, AUTO_ASSIST_ID]
    imported = history_manager.get(3)
    assert imported.title == "Legacy"
    assert imported.api_call_enabled is False
    assert [message.role for message in imported.display_history] == ["user", "assistant"]
    assert len(imported.completion_history) == 2


def test_import_rejects_garbage(history_manager):
    with pytest.raises(StoreError):
        history_manager.import_snapshot("not json", mode="replace")


@pytest.mark.asyncio
async def test_import_is_rejected_while_a_conversation_runs(history_manager):
    writer = seed(history_manager, "Writer", 1)
    before = history_manager.export()
    incoming = {"agents": [{"id": writer.id, "title": "Impostor"}]}

    async with history_manager.conversation(writer.id):
        assert history_manager.any_busy()
        with pytest.raises(ConversationBusyError):
            history_manager.import_snapshot(incoming, mode="replace")
        with pytest.raises(ConversationBusyError):
            history_manager.import_snapshot(incoming, mode="merge")

    assert not history_manager.any_busy()
    assert history_manager.export() == before
    assert [turn.role for turn in history_manager.get(writer.id).display_history] == ["user", "assistant"]


def test_reload_from_disk(tmp_path):
    manager = HistoryManager(AssistantStore(tmp_path / "a.json"), FileStore(tmp_path / "files"))
    assistant = seed(manager, exchanges=1)

    again = HistoryManager(AssistantStore(tmp_path / "a.json"), FileStore(tmp_path / "files"))
    assert again.get(assistant.id).completion_history[0].text == "question 0"
