"""Handlebars prompt rendering for conversation turns, summaries and memories.

The orchestrator never looks inside a prompt; it asks a PromptBuilder for
one and passes it to the text generator. Every template can be replaced by
passing a dict of overrides keyed by template name:

    group_turn   a participant's turn in the round
    welcome      a newcomer's first line after being admitted
    summary      the whole round, condensed
    memory       one participant's first-person memory of the round
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pybars

from earshot.models import Character

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} — iterate over the last N items."""
    result = []
    count = int(count)
    if count <= 0:
        return result
    for item in list(items)[-count:]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Default templates ────────────────────────────────────

GROUP_TURN_TEMPLATE = """\
*Group chat:* You are {{{speaker.label}}}{{#if others}} with {{{others}}}{{/if}}. Everyone can hear each other.
{{#if speaker.description}}
*About you:* {{{speaker.description}}}
{{/if}}
{{#if history}}
*Recent conversation:*
{{#last history window}}{{{this}}}
{{/last}}
{{/if}}
*The player just said:* "{{{message}}}"
{{#if first_turn}}
You are the first to answer. Respond to the player directly.
{{else}}
Keep the conversation going. Answer the player or react to what the others just said.
{{/if}}
Reply as {{{speaker.label}}} with one or two short sentences of spoken dialogue. Do not prefix your name."""

WELCOME_TEMPLATE = """\
You are {{{speaker.label}}}. You just arrived near {{{others}}}.
{{#if first_message}}
The player just said: '{{{message}}}'
You heard this and want to join the conversation.
Respond naturally to what the player said, as if you just walked up and heard it.
Don't ask 'what are you talking about' - you heard what was said.
{{else}}
You notice them talking and want to join in.
Say a brief greeting or politely ask what's being discussed.
{{/if}}
Keep it natural and short (1-2 sentences)."""

SUMMARY_TEMPLATE = """\
Briefly summarize this conversation in 2-3 sentences:

{{{transcript}}}"""

MEMORY_TEMPLATE = """\
You are {{{speaker.label}}}. You just finished a group conversation.
Other participants: {{{others}}}
{{#if speaker.description}}
About you: {{{speaker.description}}}
{{/if}}

Here's what happened in the conversation:
{{{summary}}}

Write a brief personal memory of this conversation from YOUR perspective only.
Focus on:
- How YOU felt about what was discussed
- What YOU thought was important
- YOUR personal reactions or concerns
- Any specific interactions YOU had with the others

Requirements:
- Write in first person (I, me, my)
- Keep it under 100 words
- Be authentic to your personality
- Don't just repeat the summary - add your personal perspective
- Write in natural, conversational language"""

DEFAULT_TEMPLATES: dict[str, str] = {
    "group_turn": GROUP_TURN_TEMPLATE,
    "welcome": WELCOME_TEMPLATE,
    "summary": SUMMARY_TEMPLATE,
    "memory": MEMORY_TEMPLATE,
}

_MEMORY_PREFIXES = (
    "Personal memory:",
    "My memory:",
    "Memory:",
    "I remember:",
    "Here's my memory:",
)


def _speaker_ctx(character: Character) -> dict[str, str]:
    return {
        "id": character.id,
        "name": character.name,
        "label": character.label,
        "description": character.description,
    }


def _labels(characters: list[Character]) -> str:
    return ", ".join(c.label for c in characters)


class PromptBuilder:
    """Builds the prompt text for each kind of generation call."""

    def __init__(self, templates: dict[str, str] | None = None) -> None:
        self.templates = dict(DEFAULT_TEMPLATES)
        if templates:
            unknown = set(templates) - set(DEFAULT_TEMPLATES)
            if unknown:
                raise PromptError(f"Unknown template names: {sorted(unknown)}")
            self.templates.update(templates)

    def group_turn(
        self,
        speaker: Character,
        others: list[Character],
        history: list[str],
        message: str,
        *,
        first_turn: bool,
        window: int = 6,
    ) -> str:
        return render_prompt(self.templates["group_turn"], {
            "speaker": _speaker_ctx(speaker),
            "others": _labels(others),
            "history": history,
            "window": window,
            "message": message,
            "first_turn": first_turn,
        })

    def welcome(
        self,
        newcomer: Character,
        others: list[Character],
        message: str,
        *,
        first_message: bool,
    ) -> str:
        return render_prompt(self.templates["welcome"], {
            "speaker": _speaker_ctx(newcomer),
            "others": _labels(others),
            "message": message,
            "first_message": first_message,
        })

    def summary(self, transcript: str) -> str:
        return render_prompt(self.templates["summary"], {"transcript": transcript})

    def memory(self, character: Character, others: list[Character], summary: str) -> str:
        return render_prompt(self.templates["memory"], {
            "speaker": _speaker_ctx(character),
            "others": _labels(others),
            "summary": summary,
        })


def clean_personal_memory(memory: str) -> str:
    """Strip wrapping quotes and "Memory:"-style prefixes; capitalise."""
    memory = memory.strip()
    if len(memory) >= 2 and memory.startswith('"') and memory.endswith('"'):
        memory = memory[1:-1].strip()
    for prefix in _MEMORY_PREFIXES:
        if memory.lower().startswith(prefix.lower()):
            memory = memory[len(prefix):].strip()
            break
    if memory:
        memory = memory[0].upper() + memory[1:]
    return memory
