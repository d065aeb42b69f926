"""Conversation session — transcript plus roster, one per participant group.

A session owns an append-only transcript of TranscriptLines and the live
ParticipantRoster. Nothing else mutates either; the presentation layer and
the orchestrator go through the methods below, which keep dialogue lines and
system annotations apart and insert a date separator whenever the in-world
day changes between two lines.

Lifecycle of a round:

    idle ──begin_round()──▶ admitting ──start_turns()──▶ in_round ──end_round()──▶ idle

Only one round may run at a time; begin_round() raises RoundInProgress
otherwise. clear() bumps `epoch`, which tells a running round that any reply
still in flight belongs to a transcript that no longer exists.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Literal

from earshot.models import (
    USER_LABEL,
    Character,
    SessionRecord,
    SystemEvent,
    TranscriptLine,
)
from earshot.roster import ParticipantRoster, RemovalRejected
from earshot.storage import Storage

logger = logging.getLogger(__name__)

SessionState = Literal["idle", "admitting", "in_round"]

ANNOTATIONS: dict[str, str] = {
    "joined_room": "{name} joins the conversation.",
    "joined_outdoor": "{name} walks over and joins the conversation.",
    "joined_nearby": "{name} overhears the conversation from nearby and joins in.",
    "joined_manually": "{name} was added to the conversation.",
    "left_manually": "{name} left the conversation.",
    "moved_away": "{name} is no longer present (moved out of earshot).",
    "no_longer_present": "{name} is no longer present.",
    "all_gone": "Everyone has left the conversation.",
    "cleared": "Chat history cleared.",
}


class RoundInProgress(RuntimeError):
    """Raised when a round is started while another one is still running."""


def session_key(character_ids: Iterable[str]) -> str:
    """Stable id for a participant set: order and duplicates don't matter."""
    return "+".join(sorted(set(character_ids)))


def date_header(day: int) -> str:
    return f"--- Day {day} ---"


class ConversationSession:
    def __init__(
        self,
        session_id: str,
        roster: ParticipantRoster,
        lines: list[TranscriptLine] | None = None,
        last_chat_day: int | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.session_id = session_id
        self.roster = roster
        self._lines: list[TranscriptLine] = list(lines or [])
        self._last_chat_day = last_chat_day
        self._clock = clock
        self.state: SessionState = "idle"
        self.epoch = 0

    @classmethod
    def start(
        cls,
        participant_ids: list[str],
        excluded_ids: Iterable[str] = (),
        clock: Callable[[], int] | None = None,
    ) -> ConversationSession:
        """New session; the first participant is the initiator."""
        if not participant_ids:
            raise ValueError("A conversation needs at least one participant")
        roster = ParticipantRoster(participant_ids[0], participant_ids, excluded_ids)
        return cls(session_key(participant_ids), roster, clock=clock)

    # ------------------------------------------------------------------
    # Transcript reads
    # ------------------------------------------------------------------

    @property
    def lines(self) -> list[TranscriptLine]:
        return list(self._lines)

    @property
    def members(self) -> list[str]:
        return self.roster.members

    def dialogue_lines(self) -> list[TranscriptLine]:
        return [line for line in self._lines if line.is_dialog]

    def recent_history(self, window: int) -> list[str]:
        """Last `window` dialogue lines, rendered; annotations never included."""
        if window <= 0:
            return []
        return [line.render() for line in self.dialogue_lines()[-window:]]

    def summary_text(self, since: int = 0) -> str:
        """Characters' lines from index `since` on — what the summariser gets."""
        return "\n".join(
            line.render() for line in self._lines[since:]
            if line.is_dialog and not line.is_user
        )

    def user_message_count(self) -> int:
        return sum(1 for line in self._lines if line.is_user)

    # ------------------------------------------------------------------
    # Transcript writes
    # ------------------------------------------------------------------

    def append_line(self, line: TranscriptLine) -> TranscriptLine:
        """The single mutation point for the transcript."""
        if line.kind != "date_separator" and self._clock is not None:
            day = self._clock()
            if day != self._last_chat_day:
                self._lines.append(
                    TranscriptLine(kind="date_separator", text=date_header(day), day=day)
                )
                self._last_chat_day = day
            line = line.model_copy(update={"day": day})
        self._lines.append(line)
        return line

    def add_user_message(self, text: str) -> TranscriptLine:
        return self.append_line(
            TranscriptLine(kind="dialog", text=text, speaker_label=USER_LABEL)
        )

    def add_dialog(self, speaker: Character, text: str) -> TranscriptLine:
        return self.append_line(
            TranscriptLine(
                kind="dialog", text=text,
                speaker_id=speaker.id, speaker_label=speaker.label,
            )
        )

    def annotate(self, event: SystemEvent, name: str = "") -> TranscriptLine:
        text = ANNOTATIONS[event].format(name=name)
        logger.info("session %s: %s", self.session_id, text)
        return self.append_line(TranscriptLine(kind="system", text=text, event=event))

    def remove_last_exchange(self) -> list[TranscriptLine]:
        """Drop the last user message and everything after it."""
        for i in range(len(self._lines) - 1, -1, -1):
            if self._lines[i].is_user:
                removed = self._lines[i:]
                del self._lines[i:]
                return removed
        return []

    def clear(self) -> None:
        """Empty the transcript. Replies still in flight will be discarded."""
        self._lines.clear()
        self.epoch += 1
        self.annotate("cleared")

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    def admit(self, character: Character, event: SystemEvent = "joined_manually") -> bool:
        """Add a participant and announce it. Returns False if already present."""
        if not self.roster.admit(character.id):
            return False
        self.annotate(event, character.label)
        return True

    def remove(self, character: Character) -> str | None:
        """Manual removal. Returns a message for the player when refused."""
        try:
            self.roster.remove(character.id)
        except RemovalRejected as e:
            logger.info("removal of %s refused: %s", character.id, e)
            return str(e)
        self.annotate("left_manually", character.label)
        return None

    def drop(self, character_id: str, label: str, event: SystemEvent) -> bool:
        """Automatic removal with an annotation (moved away, no longer present)."""
        if not self.roster.drop(character_id):
            return False
        self.annotate(event, label)
        return True

    # ------------------------------------------------------------------
    # Round state
    # ------------------------------------------------------------------

    def begin_round(self) -> int:
        """Enter the admitting phase. Returns the epoch the round runs under."""
        if self.state != "idle":
            raise RoundInProgress(f"Session {self.session_id} already has a round in progress")
        self.state = "admitting"
        return self.epoch

    def start_turns(self) -> None:
        self.state = "in_round"

    def end_round(self) -> None:
        self.state = "idle"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_record(self) -> SessionRecord:
        return SessionRecord(
            session_id=self.session_id,
            initiator_id=self.roster.initiator_id,
            participant_ids=self.roster.members,
            excluded_ids=sorted(self.roster.excluded),
            lines=self.lines,
            last_chat_day=self._last_chat_day,
        )

    @classmethod
    def from_record(
        cls, record: SessionRecord, clock: Callable[[], int] | None = None
    ) -> ConversationSession:
        roster = ParticipantRoster(
            record.initiator_id, record.participant_ids, record.excluded_ids
        )
        return cls(
            record.session_id, roster,
            lines=record.lines,
            last_chat_day=record.last_chat_day,
            clock=clock,
        )


class SessionRegistry:
    """Live sessions keyed by participant set, backed by Storage.

    get_or_create() returns the same ConversationSession object for the same
    group while the process runs, and resumes the stored transcript after a
    restart.
    """

    def __init__(self, storage: Storage | None = None, clock: Callable[[], int] | None = None) -> None:
        self._storage = storage
        self._clock = clock
        self._sessions: dict[str, ConversationSession] = {}

    def get(self, session_id: str) -> ConversationSession | None:
        session = self._sessions.get(session_id)
        if session is None and self._storage is not None:
            record = self._storage.get_session(session_id)
            if record is not None:
                session = ConversationSession.from_record(record, clock=self._clock)
                self._sessions[session_id] = session
                logger.info("resumed session %s (%d lines)", session_id, len(record.lines))
        return session

    def get_or_create(self, participant_ids: list[str]) -> ConversationSession:
        session = self.get(session_key(participant_ids))
        if session is None:
            session = ConversationSession.start(participant_ids, clock=self._clock)
            self._sessions[session.session_id] = session
            self.save(session)
            logger.info("created session %s", session.session_id)
        return session

    def save(self, session: ConversationSession) -> None:
        if self._storage is not None:
            self._storage.save_session(session.to_record())

    def list_ids(self) -> list[str]:
        ids = set(self._sessions)
        if self._storage is not None:
            ids.update(r.session_id for r in self._storage.list_sessions())
        return sorted(ids)
