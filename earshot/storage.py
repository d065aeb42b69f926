"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM — reads and writes go through plain helper
methods that load and dump JSON.

Directory layout:

    {base}/
      config.json                 ← settings overrides (see earshot.config)
      sessions/
        {session_id}.json         ← SessionRecord: transcript, roster, exclusions
      memories/
        {character_id}.json       ← {"<day>": ["memory", ...]}

Session ids are derived from the participant set (see session_key), so
reopening a conversation with the same group resumes the same file.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from earshot.models import SessionRecord


def _file_stem(key: str) -> str:
    """Filesystem-safe stem for an id; distinct ids stay distinct."""
    return re.sub(r"[^A-Za-z0-9_.+-]", lambda m: f"%{ord(m.group()):02x}", key)


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._sessions = base_path / "sessions"
        self._memories = base_path / "memories"
        self._sessions.mkdir(parents=True, exist_ok=True)
        self._memories.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _session_file(self, session_id: str) -> Path:
        return self._sessions / f"{_file_stem(session_id)}.json"

    def _memory_file(self, character_id: str) -> Path:
        return self._memories / f"{_file_stem(character_id)}.json"

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def save_session(self, record: SessionRecord) -> None:
        self._session_file(record.session_id).write_text(
            record.model_dump_json(indent=2, exclude_none=True)
        )

    def get_session(self, session_id: str) -> SessionRecord | None:
        path = self._session_file(session_id)
        if not path.exists():
            return None
        return SessionRecord.model_validate_json(path.read_text())

    def list_sessions(self) -> list[SessionRecord]:
        return [
            SessionRecord.model_validate_json(p.read_text())
            for p in sorted(self._sessions.glob("*.json"))
        ]

    def delete_session(self, session_id: str) -> bool:
        path = self._session_file(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    # ------------------------------------------------------------------
    # Memories (append-only per character per day)
    # ------------------------------------------------------------------

    def get_memories(self, character_id: str) -> dict[int, list[str]]:
        path = self._memory_file(character_id)
        if not path.exists():
            return {}
        return {int(day): entries for day, entries in self._read_json(path).items()}

    def append_memory(self, character_id: str, day: int, memory: str) -> None:
        memories = self.get_memories(character_id)
        memories.setdefault(day, []).append(memory)
        self._write_json(
            self._memory_file(character_id),
            {str(d): entries for d, entries in sorted(memories.items())},
        )
