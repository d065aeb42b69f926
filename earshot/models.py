"""Core domain models.

Every component in the engine exchanges these types. Pydantic is used for
validation and serialisation at every data boundary (session records,
API responses, stored memories).
"""

from __future__ import annotations

import math
from typing import Literal

from pydantic import BaseModel, Field

LineKind = Literal["dialog", "date_separator", "system"]

SystemEvent = Literal[
    "joined_room",
    "joined_outdoor",
    "joined_nearby",
    "joined_manually",
    "left_manually",
    "moved_away",
    "no_longer_present",
    "all_gone",
    "cleared",
]

RoundEndReason = Literal[
    "completed",
    "quorum_met",
    "all_participants_lost",
    "cancelled",
]

USER_LABEL = "You"


class Point(BaseModel, frozen=True):
    """A map cell. `z` is the second horizontal axis, as on a game grid."""

    x: int
    z: int

    def distance_to(self, other: Point) -> float:
        return math.hypot(self.x - other.x, self.z - other.z)

    def adjacent_to(self, other: Point) -> bool:
        """8-way adjacency; a cell is not adjacent to itself."""
        if self == other:
            return False
        return abs(self.x - other.x) <= 1 and abs(self.z - other.z) <= 1


class Character(BaseModel):
    """An in-world character that can take part in a conversation."""

    id: str
    name: str
    short_name: str = ""  # speaker label; first word of name when empty
    position: Point
    map_id: str
    dead: bool = False
    humanlike: bool = True
    player_faction: bool = True
    description: str = ""

    @property
    def label(self) -> str:
        if self.short_name:
            return self.short_name
        return self.name.split()[0] if self.name.strip() else self.id


class Door(BaseModel, frozen=True):
    cell: Point
    open: bool = False


class TranscriptLine(BaseModel):
    """A single entry in a session's append-only transcript."""

    kind: LineKind
    text: str
    speaker_id: str | None = None
    speaker_label: str | None = None
    event: SystemEvent | None = None  # present on system lines only
    day: int | None = None

    @property
    def is_dialog(self) -> bool:
        return self.kind == "dialog"

    @property
    def is_user(self) -> bool:
        return self.kind == "dialog" and self.speaker_id is None

    def render(self) -> str:
        if self.kind == "dialog":
            return f"{self.speaker_label}: {self.text}"
        return self.text


class RoundResult(BaseModel):
    """Outcome of one scheduler round, reported to the presentation layer."""

    reason: RoundEndReason
    turns_taken: int = 0
    skipped_turns: int = 0
    participation: dict[str, int] = Field(default_factory=dict)
    joined: list[str] = Field(default_factory=list)
    left: list[str] = Field(default_factory=list)
    new_lines: list[TranscriptLine] = Field(default_factory=list)
    memories: dict[str, str] = Field(default_factory=dict)


class SessionRecord(BaseModel):
    """Serialisable snapshot of a ConversationSession."""

    session_id: str
    initiator_id: str
    participant_ids: list[str]
    excluded_ids: list[str] = Field(default_factory=list)
    lines: list[TranscriptLine] = Field(default_factory=list)
    last_chat_day: int | None = None
