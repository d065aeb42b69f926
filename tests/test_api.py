"""HTTP-level tests for the /api routes, driven through httpx's ASGI transport."""

import asyncio
import json

import httpx
import pytest

from conftest import INNER_DOOR
from earshot.api import create_app


class ReplyLLM:
    """Answers every call with the same line, optionally after a delay."""

    def __init__(self, text: str = "Sounds good to me, let's do it.", delay: float = 0) -> None:
        self.text = text
        self.delay = delay
        self.calls: list[str] = []

    async def __call__(self, stage: str, prompt: str) -> str:
        self.calls.append(stage)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.text


FAST_CHAT = {"typing_pause": 0, "turn_pause": 0, "memory_pause": 0, "reply_timeout": 2}


@pytest.fixture
def llm():
    return ReplyLLM()


@pytest.fixture
def app(tmp_path, world, llm):
    (tmp_path / "config.json").write_text(json.dumps({"chat": FAST_CHAT}))
    return create_app(tmp_path, world, generator=llm)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _open(client, ids=("alice", "bob")) -> str:
    resp = await client.post("/api/sessions", json={"participant_ids": list(ids)})
    assert resp.status_code == 200
    return resp.json()["session_id"]


# ---------------------------------------------------------------------------
# Basics
# ---------------------------------------------------------------------------

async def test_health(client):
    resp = await client.get("/api/health")
    assert resp.json() == {"status": "ok"}


async def test_settings_roundtrip(client, tmp_path):
    resp = await client.get("/api/settings")
    assert resp.json()["chat"]["max_total_turns"] == 8

    resp = await client.patch("/api/settings", json={"chat": {"max_total_turns": 4}})
    assert resp.status_code == 200
    assert resp.json()["chat"]["max_total_turns"] == 4
    assert resp.json()["chat"]["turn_pause"] == 0
    stored = json.loads((tmp_path / "config.json").read_text())
    assert stored["chat"]["max_total_turns"] == 4


async def test_invalid_settings_rejected(client):
    resp = await client.patch("/api/settings", json={"chat": {"max_new_joiners": -1}})
    assert resp.status_code == 422
    resp = await client.patch(
        "/api/settings", json={"chat": {"max_total_turns": 20, "safety_ceiling": 5}}
    )
    assert resp.status_code == 422
    assert (await client.get("/api/settings")).json()["chat"]["safety_ceiling"] == 15


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

async def test_create_and_get_session(client):
    sid = await _open(client)
    assert sid == "alice+bob"
    resp = await client.get(f"/api/sessions/{sid}")
    data = resp.json()
    assert data["initiator_id"] == "alice"
    assert data["participant_ids"] == ["alice", "bob"]
    assert data["state"] == "idle"
    assert data["lines"] == []


async def test_same_group_same_session(client):
    first = await _open(client, ["alice", "bob"])
    second = await _open(client, ["bob", "alice"])
    assert first == second


async def test_create_session_validation(client):
    resp = await client.post("/api/sessions", json={"participant_ids": []})
    assert resp.status_code == 400
    resp = await client.post("/api/sessions", json={"participant_ids": ["alice", "zed"]})
    assert resp.status_code == 404


async def test_unknown_session_404(client):
    resp = await client.get("/api/sessions/nobody")
    assert resp.status_code == 404


async def test_candidates(client):
    sid = await _open(client)
    resp = await client.get(f"/api/sessions/{sid}/candidates")
    data = resp.json()
    assert data["joinable"] == ["carol"]
    assert data["must_leave"] == []
    assert data["initiator_lost"] is False


async def test_session_resumed_after_restart(tmp_path, world, llm, client):
    sid = await _open(client)
    await client.post(f"/api/sessions/{sid}/messages", json={"message": "Morning, all."})

    fresh = create_app(tmp_path, world, generator=llm)
    transport = httpx.ASGITransport(app=fresh)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as other:
        resp = await other.get(f"/api/sessions/{sid}")
    assert resp.status_code == 200
    texts = [line["text"] for line in resp.json()["lines"]]
    assert "Morning, all." in texts


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

async def test_message_runs_round(client, llm):
    sid = await _open(client)
    resp = await client.post(f"/api/sessions/{sid}/messages", json={"message": "Who's up for a walk?"})
    assert resp.status_code == 200
    result = resp.json()
    assert result["reason"] == "quorum_met"
    assert result["joined"] == ["carol"]
    assert set(result["memories"]) == {"alice", "bob", "carol"}
    assert "welcome" in llm.calls

    session = (await client.get(f"/api/sessions/{sid}")).json()
    assert session["participant_ids"] == ["alice", "bob", "carol"]
    assert session["lines"][0]["text"] == "--- Day 3 ---"


async def test_empty_message_rejected(client):
    sid = await _open(client)
    resp = await client.post(f"/api/sessions/{sid}/messages", json={"message": "   "})
    assert resp.status_code == 400


async def test_message_while_round_running(client, llm):
    llm.delay = 0.3
    sid = await _open(client)
    first = asyncio.create_task(
        client.post(f"/api/sessions/{sid}/messages", json={"message": "First"})
    )
    await asyncio.sleep(0.05)
    resp = await client.post(f"/api/sessions/{sid}/messages", json={"message": "Second"})
    assert resp.status_code == 409
    await client.post(f"/api/sessions/{sid}/cancel")
    await first


async def test_cancel(client, llm):
    llm.delay = 0.5
    sid = await _open(client)
    pending = asyncio.create_task(
        client.post(f"/api/sessions/{sid}/messages", json={"message": "Hello?"})
    )
    await asyncio.sleep(0.05)
    resp = await client.post(f"/api/sessions/{sid}/cancel")
    assert resp.json() == {"cancelled": True}

    result = (await pending).json()
    assert result["reason"] == "cancelled"
    resp = await client.post(f"/api/sessions/{sid}/cancel")
    assert resp.json() == {"cancelled": False}


async def test_clear(client):
    sid = await _open(client)
    await client.post(f"/api/sessions/{sid}/messages", json={"message": "Hi there."})
    resp = await client.post(f"/api/sessions/{sid}/clear")
    texts = [line["text"] for line in resp.json()["lines"]]
    assert texts == ["Chat history cleared."]


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------

async def test_add_nearby_participant(client):
    sid = await _open(client)
    resp = await client.post(f"/api/sessions/{sid}/participants/carol")
    assert resp.status_code == 200
    data = resp.json()
    assert data["participant_ids"] == ["alice", "bob", "carol"]
    assert data["lines"][-1]["text"] == "Carol was added to the conversation."


async def test_add_participant_too_far(client):
    sid = await _open(client)
    resp = await client.post(f"/api/sessions/{sid}/participants/dave")
    assert resp.status_code == 409
    assert "too far away" in resp.json()["detail"]


async def test_add_participant_through_open_door(client, world):
    world.set_door("home", INNER_DOOR, True)
    sid = await _open(client)
    resp = await client.post(f"/api/sessions/{sid}/participants/dave")
    assert resp.status_code == 200


async def test_remove_and_readmit(client):
    sid = await _open(client, ["alice", "bob", "carol"])
    resp = await client.delete(f"/api/sessions/{sid}/participants/carol")
    assert resp.status_code == 200
    data = resp.json()
    assert data["participant_ids"] == ["alice", "bob"]
    assert data["excluded_ids"] == ["carol"]

    candidates = (await client.get(f"/api/sessions/{sid}/candidates")).json()
    assert candidates["joinable"] == []
    assert candidates["excluded_nearby"] == ["carol"]

    resp = await client.post(f"/api/sessions/{sid}/participants/carol")
    assert resp.status_code == 200
    assert resp.json()["excluded_ids"] == []


async def test_remove_rejected(client):
    sid = await _open(client)
    resp = await client.delete(f"/api/sessions/{sid}/participants/bob")
    assert resp.status_code == 409
    resp = await client.delete(f"/api/sessions/{sid}/participants/alice")
    assert resp.status_code == 409
    assert "initiator" in resp.json()["detail"]
