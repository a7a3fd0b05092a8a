"""Rewrite a legacy assistant store into the turn-list format.

Run from the project root: ``python -m scripts.migrate_histories [store.json]``
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

from engine.assistant_store import AssistantStore, StoreError, ensure_auto_assist, parse_snapshot

ROOT = Path.cwd()
CONFIG_PATH = ROOT / "config.json"
DEFAULT_STORE = ROOT / "assistants.json"


def store_path_from_config() -> Path:
    if not CONFIG_PATH.exists():
        return DEFAULT_STORE
    data = json.loads(CONFIG_PATH.read_text(encoding="utf-8-sig"))
    return ROOT / data.get("store_path", DEFAULT_STORE.name)


def count_dropped(agents: list[dict[str, Any]]) -> dict[Any, int]:
    """Number of unmatched tail entries per legacy assistant."""
    dropped: dict[Any, int] = {}
    for agent in agents:
        if "turns" in agent:
            continue
        display = agent.get("messages") or []
        completion = agent.get("postMessages") or []
        if len(display) != len(completion):
            dropped[agent.get("id")] = abs(len(display) - len(completion))
    return dropped


def migrate(path: Path) -> int:
    if not path.exists():
        print(f"[migrate_histories] {path} not found, nothing to do")
        return 0

    raw = json.loads(path.read_text(encoding="utf-8-sig"))
    agents = raw if isinstance(raw, list) else raw.get("agents", [])
    legacy = [agent for agent in agents if isinstance(agent, dict) and "turns" not in agent]
    if not legacy:
        print(f"[migrate_histories] {path.name} is already in turn format")
        return 0

    snapshot = parse_snapshot(raw)
    backup = path.with_suffix(path.suffix + ".bak")
    backup.write_text(path.read_text(encoding="utf-8-sig"), encoding="utf-8")
    print(f"[migrate_histories] Backup written to {backup.name}")

    store = AssistantStore(path)
    store.title_settings = snapshot.title_settings
    store.save(ensure_auto_assist(snapshot.agents))

    for assistant_id, count in count_dropped(legacy).items():
        print(f"[migrate_histories] Assistant {assistant_id}: dropped {count} misaligned entr{'y' if count == 1 else 'ies'}")
    print(f"[migrate_histories] Converted {len(legacy)} assistant(s)")
    return len(legacy)


def run() -> None:
    path = Path(sys.argv[1]) if len(sys.argv) > 1 else store_path_from_config()
    try:
        migrate(path)
    except (StoreError, json.JSONDecodeError) as exc:
        print(f"[migrate_histories] Migration failed: {exc}")
        sys.exit(1)
    print("[migrate_histories] Migration complete")


if __name__ == "__main__":
    run()
