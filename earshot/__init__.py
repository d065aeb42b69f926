"""Earshot — spatially-aware group conversations between in-world characters.

Who may join a conversation is decided by where characters stand: same room,
a room connected through an open door, or open ground in line of sight.
A round is triggered by a player message; the scheduler then hands out turns
so that everyone gets heard, mentioned characters answer first, and the
round always ends.

Layers, bottom-up:

    world / eligibility    spatial queries and the "can these two talk" rule
    roster / discovery     who is in, who may join, who has to leave
    scheduler / mentions   who speaks next, when the round is over
    session                transcript + roster for one participant group
    orchestrator           one round end-to-end, cancellation, summaries
    api                    FastAPI host endpoints
"""

# Re-export the main entry points so `from earshot import run_round` works.

from .config import AppConfig, ChatSettings, Connection, load_config  # noqa: F401
from .llm import LLMError, TextGenerator, make_generator  # noqa: F401
from .models import Character, Point, RoundResult, TranscriptLine  # noqa: F401
from .orchestrator import ConversationRunner, run_round  # noqa: F401
from .roster import ParticipantRoster, RemovalRejected  # noqa: F401
from .session import ConversationSession, RoundInProgress, SessionRegistry  # noqa: F401
from .world import GridWorld, WorldView  # noqa: F401
