"""Tests for round summaries and personal memories."""

import asyncio
import logging

from conftest import make_character
from earshot.config import ChatSettings
from earshot.llm import LLMError
from earshot.summary import store_memories, summarize_round

ALICE = make_character("alice", 0, 0)
BOB = make_character("bob", 0, 0)
CAROL = make_character("carol", 0, 0)

TRANSCRIPT = "Alice: The roof leaks again.\nBob: I'll fix it tomorrow."
FAST = ChatSettings(memory_pause=0, summary_timeout=0.5)


class SummaryLLM:
    """Answers summary/memory calls from queues; records every call."""

    def __init__(self, summary, memories: list) -> None:
        self.summary = summary
        self.memories = list(memories)
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, stage: str, prompt: str) -> str:
        self.calls.append((stage, prompt))
        reply = self.summary if stage == "summary" else self.memories.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


async def test_memory_per_participant():
    llm = SummaryLLM("They discussed the leaking roof.", [
        "Memory: I worry the roof won't hold.",
        '"Bob promised to fix it, I am relieved."',
    ])
    memories = await summarize_round(llm, TRANSCRIPT, [ALICE, BOB], settings=FAST)
    assert memories == {
        "alice": "[Group conversation with Bob]\nI worry the roof won't hold.",
        "bob": "[Group conversation with Alice]\nBob promised to fix it, I am relieved.",
    }
    assert [stage for stage, _ in llm.calls] == ["summary", "memory", "memory"]
    assert "They discussed the leaking roof." in llm.calls[1][1]


async def test_heading_names_all_others():
    llm = SummaryLLM("Summary text here.", ["I had a long talk today."] * 3)
    memories = await summarize_round(llm, TRANSCRIPT, [ALICE, BOB, CAROL], settings=FAST)
    assert memories["alice"].startswith("[Group conversation with Bob, Carol]\n")
    assert memories["carol"].startswith("[Group conversation with Alice, Bob]\n")


async def test_failed_summary_falls_back_to_transcript():
    llm = SummaryLLM(LLMError("down"), ["I remember the talk about the roof."] * 2)
    await summarize_round(llm, TRANSCRIPT, [ALICE, BOB], settings=FAST)
    memory_prompt = llm.calls[1][1]
    assert "Bob: I'll fix it tomorrow." in memory_prompt


async def test_short_memory_replaced_by_generic_sentence():
    llm = SummaryLLM("They discussed the leaking roof.", ["ok", "⚠️ rate limited"])
    memories = await summarize_round(llm, TRANSCRIPT, [ALICE, BOB], settings=FAST)
    assert memories["alice"] == (
        "[Group conversation with Bob]\n"
        "I had a group conversation with Bob. They discussed the leaking roof."
    )
    assert "I had a group conversation with Alice." in memories["bob"]


async def test_slow_memory_times_out():
    class Slow(SummaryLLM):
        async def __call__(self, stage, prompt):
            if stage == "memory":
                await asyncio.sleep(1)
            return await super().__call__(stage, prompt)

    llm = Slow("Short summary of it.", ["never used", "never used"])
    settings = ChatSettings(memory_pause=0, summary_timeout=0.01)
    memories = await summarize_round(llm, TRANSCRIPT, [ALICE, BOB], settings=settings)
    assert "I had a group conversation with Bob." in memories["alice"]


async def test_nothing_said_nothing_stored():
    llm = SummaryLLM("unused", [])
    assert await summarize_round(llm, "  ", [ALICE, BOB], settings=FAST) == {}
    assert await summarize_round(llm, TRANSCRIPT, [], settings=FAST) == {}
    assert llm.calls == []


def test_store_memories(storage):
    store_memories(storage, 5, {"alice": "A", "bob": "B"})
    assert storage.get_memories("alice") == {5: ["A"]}
    assert storage.get_memories("bob") == {5: ["B"]}


async def test_summarizing_does_not_claim_to_save(caplog):
    caplog.set_level(logging.INFO, logger="earshot.summary")
    llm = SummaryLLM("They discussed the leaking roof.", ["I worry about that roof."] * 2)
    await summarize_round(llm, TRANSCRIPT, [ALICE, BOB], settings=FAST)
    assert "summarized round into 2 memories" in caplog.text
    assert "saved" not in caplog.text


def test_store_memories_logs_save(storage, caplog):
    caplog.set_level(logging.INFO, logger="earshot.summary")
    store_memories(storage, 2, {"alice": "A"})
    assert "saved 1 memories for day 2" in caplog.text
