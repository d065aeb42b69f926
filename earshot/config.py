"""App configuration (LLM connection, conversation limits).

Read order: built-in defaults → `{data_dir}/config.json` → environment
variables. `update_config()` applies partial updates — `connection` and
`chat` are merged key-by-key — and persists the result.

Environment overrides (loaded from `.env` by the launcher):

    EARSHOT_PROVIDER_FORMAT   koboldcpp | openai | openai_chat | gemini | echo
    EARSHOT_PROVIDER_URL
    EARSHOT_API_KEY
    EARSHOT_MODEL
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

ProviderFormat = Literal["koboldcpp", "openai", "openai_chat", "gemini", "echo"]

_ENV_KEYS = {
    "provider_format": "EARSHOT_PROVIDER_FORMAT",
    "provider_url": "EARSHOT_PROVIDER_URL",
    "api_key": "EARSHOT_API_KEY",
    "model": "EARSHOT_MODEL",
}


class Connection(BaseModel):
    """Where replies come from. Selected once per session."""

    provider_format: ProviderFormat = "echo"
    provider_url: str = ""  # empty: the backend's default endpoint
    api_key: str = ""
    model: str = ""
    timeout: float = 120.0


class ChatSettings(BaseModel):
    """Spatial and scheduling limits of a group conversation."""

    # Spatial eligibility
    max_chat_distance: float = Field(15.0, gt=0)
    outdoor_chat_distance: float = Field(8.0, gt=0)
    max_new_joiners: int = Field(2, ge=0)

    # Turn scheduling
    max_turns_per_character: int = Field(2, ge=1)
    max_total_turns: int = Field(8, ge=1)
    safety_ceiling: int = Field(15, ge=1)
    min_reply_length: int = Field(4, ge=0)
    history_window: int = Field(6, ge=0)
    strict_mentions: bool = False

    # Waiting and pacing (seconds)
    reply_timeout: float = Field(5.0, gt=0)
    summary_timeout: float = Field(10.0, gt=0)
    typing_pause: float = Field(0.3, ge=0)
    turn_pause: float = Field(1.0, ge=0)
    memory_pause: float = Field(0.8, ge=0)

    @model_validator(mode="after")
    def _ceiling_above_turn_cap(self) -> ChatSettings:
        if self.safety_ceiling <= self.max_total_turns:
            raise ValueError(
                f"safety_ceiling ({self.safety_ceiling}) must be larger than "
                f"max_total_turns ({self.max_total_turns})"
            )
        return self


class AppConfig(BaseModel):
    connection: Connection = Field(default_factory=Connection)
    chat: ChatSettings = Field(default_factory=ChatSettings)


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def _stored(data_dir: Path) -> dict[str, Any]:
    path = _config_path(data_dir)
    if not path.is_file():
        return {}
    return json.loads(path.read_text())


def _env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for field, env_key in _ENV_KEYS.items():
        value = os.getenv(env_key, "")
        if value:
            overrides[field] = value
    return overrides


def load_config(data_dir: Path | None = None) -> AppConfig:
    """Return defaults merged with stored values and environment overrides."""
    stored = _stored(data_dir) if data_dir is not None else {}
    connection = dict(stored.get("connection", {}))
    connection.update(_env_overrides())
    return AppConfig(
        connection=Connection(**connection),
        chat=ChatSettings(**stored.get("chat", {})),
    )


def update_config(data_dir: Path, fields: dict[str, Any]) -> AppConfig:
    """Merge fields into the stored config and persist. Returns full config.

    Environment overrides are not written back to disk.
    """
    stored = _stored(data_dir)
    for section in ("connection", "chat"):
        if section in fields:
            merged = dict(stored.get(section, {}))
            merged.update(fields[section])
            stored[section] = merged

    # Validate before writing so a bad update never lands on disk
    AppConfig(
        connection=Connection(**stored.get("connection", {})),
        chat=ChatSettings(**stored.get("chat", {})),
    )
    data_dir.mkdir(parents=True, exist_ok=True)
    _config_path(data_dir).write_text(json.dumps(stored, indent=2))
    logger.info("config updated sections=%s", sorted(k for k in fields if k in ("connection", "chat")))
    return load_config(data_dir)
