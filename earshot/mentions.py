"""Mention detection — did the speaker address someone by name?

Matching is case-insensitive and deliberately permissive: the short name
anywhere in the reply counts, which takes in the usual vocative forms
("Bob, ...", "Bob?", "@Bob", "what do you think, Bob"). A false positive
only moves someone up the speaking order; a missed address leaves a
question hanging.

strict=True accepts only whole-word occurrences, so "Al" no longer matches
inside "also" or "usual, ". Every vocative form contains the name, so in
strict mode the whole-word check covers them too.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from earshot.models import Character


def mentions_name(utterance: str, name: str, *, strict: bool = False) -> bool:
    """Whether `utterance` refers to `name`."""
    name = name.strip().lower()
    if not name:
        return False
    text = utterance.lower()
    if strict:
        return re.search(rf"(?<!\w){re.escape(name)}(?!\w)", text) is not None
    return name in text


def detect_mentions(
    utterance: str,
    members: Iterable[Character],
    speaker_id: str | None,
    *,
    strict: bool = False,
) -> list[str]:
    """Ids of members (other than the speaker) named in the utterance.

    Returned in roster order so the scheduler's queue order is deterministic.
    """
    found: list[str] = []
    for member in members:
        if member.id == speaker_id or member.id in found:
            continue
        if mentions_name(utterance, member.label, strict=strict):
            found.append(member.id)
    return found
