"""FastAPI host endpoints under /api.

The presentation layer drives conversations through these routes: open a
session for a group, send the player's messages (each one runs a round),
add or remove participants by hand, clear or cancel. The world itself is
owned by the host; by default it is loaded from the JSON file named by
EARSHOT_WORLD (see GridWorld.from_dict for the layout).
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, ValidationError

from earshot.config import AppConfig, load_config, update_config
from earshot.discovery import refresh_candidates
from earshot.llm import TextGenerator, make_generator
from earshot.models import Character, RoundResult
from earshot.orchestrator import ConversationRunner
from earshot.session import ConversationSession, RoundInProgress, SessionRegistry
from earshot.storage import Storage
from earshot.world import GridWorld, WorldView

load_dotenv(Path(__file__).parent.parent / ".env")

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class CreateSession(BaseModel):
    participant_ids: list[str]


class MessageBody(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Shared state
# ---------------------------------------------------------------------------

class Host:
    """Everything the routes share: world, storage, sessions, runner."""

    def __init__(
        self,
        data_dir: Path,
        world: WorldView,
        generator: TextGenerator | None = None,
    ) -> None:
        self.data_dir = data_dir
        self.world = world
        self.storage = Storage(data_dir)
        self.config = load_config(data_dir)
        self.registry = SessionRegistry(self.storage, clock=world.current_day)
        self._fixed_generator = generator
        self.runner = ConversationRunner(
            world,
            generator or make_generator(self.config.connection),
            self.config.chat,
            storage=self.storage,
        )

    def apply_config(self, config: AppConfig) -> None:
        self.config = config
        self.runner.settings = config.chat
        if self._fixed_generator is None:
            self.runner.generator = make_generator(config.connection)

    def session(self, session_id: str) -> ConversationSession:
        session = self.registry.get(session_id)
        if session is None:
            raise HTTPException(404, "Session not found")
        return session

    def character(self, character_id: str) -> Character:
        char = self.world.character(character_id)
        if char is None:
            raise HTTPException(404, f"Character {character_id} not found")
        return char


def _host(request: Request) -> Host:
    return request.app.state.host


def _session_view(session: ConversationSession) -> dict:
    data = session.to_record().model_dump(exclude_none=True)
    data["state"] = session.state
    return data


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(request: Request):
    """Current connection and conversation settings."""
    return _host(request).config


@router.patch("/settings")
async def patch_settings(request: Request, body: dict):
    """Partial update of settings; `connection` and `chat` merge key-by-key."""
    host = _host(request)
    try:
        config = update_config(host.data_dir, body)
    except ValidationError as e:
        raise HTTPException(422, str(e))
    host.apply_config(config)
    return config


@router.post("/sessions")
async def create_session(request: Request, body: CreateSession):
    """Open (or resume) the session for a group. The first id is the initiator."""
    host = _host(request)
    if not body.participant_ids:
        raise HTTPException(400, "participant_ids must not be empty")
    for cid in body.participant_ids:
        host.character(cid)
    session = host.registry.get_or_create(body.participant_ids)
    return _session_view(session)


@router.get("/sessions/{session_id}")
async def get_session(request: Request, session_id: str):
    """Transcript, roster and round state of a session."""
    return _session_view(_host(request).session(session_id))


@router.get("/sessions/{session_id}/candidates")
async def get_candidates(request: Request, session_id: str):
    """Who could join right now, and who would have to leave."""
    host = _host(request)
    session = host.session(session_id)
    return refresh_candidates(host.world, session.roster, host.config.chat)


@router.post("/sessions/{session_id}/messages", response_model=RoundResult)
async def post_message(request: Request, session_id: str, body: MessageBody):
    """Send a player message and run one round."""
    host = _host(request)
    session = host.session(session_id)
    if not body.message.strip():
        raise HTTPException(400, "Message must not be empty")
    try:
        return await host.runner.run(session, body.message.strip())
    except RoundInProgress as e:
        raise HTTPException(409, str(e))


@router.post("/sessions/{session_id}/participants/{character_id}")
async def add_participant(request: Request, session_id: str, character_id: str):
    """Manually admit a nearby character (also lifts an earlier exclusion)."""
    host = _host(request)
    session = host.session(session_id)
    char = host.character(character_id)
    if character_id not in session.roster:
        refresh = refresh_candidates(host.world, session.roster, host.config.chat)
        if character_id not in refresh.joinable + refresh.excluded_nearby:
            raise HTTPException(409, f"{char.label} is too far away to join the conversation.")
        session.admit(char)
        host.registry.save(session)
    return _session_view(session)


@router.delete("/sessions/{session_id}/participants/{character_id}")
async def remove_participant(request: Request, session_id: str, character_id: str):
    """Manually remove a participant; refused for the initiator or small groups."""
    host = _host(request)
    session = host.session(session_id)
    char = host.character(character_id)
    problem = session.remove(char)
    if problem is not None:
        raise HTTPException(409, problem)
    host.registry.save(session)
    return _session_view(session)


@router.post("/sessions/{session_id}/clear")
async def clear_session(request: Request, session_id: str):
    """Empty the transcript; replies still being generated are discarded."""
    host = _host(request)
    session = host.session(session_id)
    session.clear()
    host.registry.save(session)
    return _session_view(session)


@router.post("/sessions/{session_id}/cancel")
async def cancel_round(request: Request, session_id: str):
    """Abandon the round in progress, if any."""
    host = _host(request)
    host.session(session_id)
    return {"cancelled": host.runner.cancel(session_id)}


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def _load_world() -> WorldView:
    path = os.getenv("EARSHOT_WORLD", "")
    if not path:
        logger.warning("EARSHOT_WORLD not set; starting with an empty world")
        return GridWorld({})
    return GridWorld.from_json(Path(path))


def create_app(
    data_dir: Path | None = None,
    world: WorldView | None = None,
    generator: TextGenerator | None = None,
) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    app = FastAPI(title="Earshot")
    app.state.host = Host(resolved, world if world is not None else _load_world(), generator)
    app.include_router(router, prefix="/api")
    return app
