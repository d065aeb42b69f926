"""Round summaries and per-participant memories.

After a round the orchestrator hands over the dialogue-only transcript
(annotations and the player's own lines filtered out). One "summary" call
condenses it; then each participant gets a "memory" call that retells the
summary from their own point of view.

Failures never abort the hand-off. A failed summary falls back to the raw
transcript; a failed memory falls back to a plain sentence naming the other
participants. Each stored memory is prefixed with who took part:

    [Group conversation with Bob, Carol]
    I was glad Bob finally agreed to help with the harvest...
"""

from __future__ import annotations

import asyncio
import logging

from earshot.config import ChatSettings
from earshot.llm import TextGenerator, ask
from earshot.models import Character
from earshot.prompts import PromptBuilder, PromptError, clean_personal_memory
from earshot.storage import Storage

logger = logging.getLogger(__name__)

MIN_MEMORY_LENGTH = 10


def _others_label(character: Character, participants: list[Character]) -> str:
    return ", ".join(p.label for p in participants if p.id != character.id)


async def summarize_round(
    generator: TextGenerator,
    transcript: str,
    participants: list[Character],
    *,
    settings: ChatSettings,
    prompts: PromptBuilder | None = None,
) -> dict[str, str]:
    """Return {character_id: memory text} for every participant."""
    if not transcript.strip() or not participants:
        return {}
    prompts = prompts or PromptBuilder()

    try:
        summary = await ask(
            generator, "summary", prompts.summary(transcript), settings.summary_timeout
        )
    except PromptError as e:
        logger.warning("summary prompt failed: %s", e)
        summary = None
    if summary is None:
        summary = transcript

    memories: dict[str, str] = {}
    for i, character in enumerate(participants):
        others = [p for p in participants if p.id != character.id]
        others_label = _others_label(character, participants)
        try:
            reply = await ask(
                generator, "memory",
                prompts.memory(character, others, summary),
                settings.summary_timeout,
            )
        except PromptError as e:
            logger.warning("memory prompt failed for %s: %s", character.id, e)
            reply = None

        memory = clean_personal_memory(reply) if reply else ""
        if len(memory) <= MIN_MEMORY_LENGTH:
            memory = f"I had a group conversation with {others_label or 'the others'}. {summary}"

        heading = f"[Group conversation with {others_label}]" if others_label else "[Group conversation]"
        memories[character.id] = f"{heading}\n{memory}"

        if settings.memory_pause and i < len(participants) - 1:
            await asyncio.sleep(settings.memory_pause)

    logger.info("summarized round into %d memories", len(memories))
    return memories


def store_memories(storage: Storage, day: int, memories: dict[str, str]) -> None:
    for character_id, memory in memories.items():
        storage.append_memory(character_id, day, memory)
    logger.info("saved %d memories for day %d", len(memories), day)
