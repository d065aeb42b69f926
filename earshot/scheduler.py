"""Turn scheduler — picks who speaks next and when a round is over.

Selection tiers, each consulted only when the previous one is empty:

  1. mentioned   first queued mention that is still a member, under the
                 per-character cap and not the previous speaker; it leaves
                 the queue the moment it is picked
  2. unheard     members with no turn yet this round (previous speaker
                 excluded), chosen uniformly at random
  3. least heard members under the cap (previous speaker excluded), fewest
                 turns first, ties broken at random
  4. fallback    fewest turns among everyone but the previous speaker, cap
                 ignored, so two-person rounds can still make progress

A round stops when the total turn count reaches max_total_turns, when every
member has spoken and total turns >= roster size (quorum), or when the
iteration count reaches the safety ceiling. Skipped turns count as
iterations, so a silent backend cannot stall a round.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable

from earshot.config import ChatSettings
from earshot.models import RoundEndReason

logger = logging.getLogger(__name__)


class RoundState:
    """Per-round bookkeeping: participation counts, last speaker, mention queue."""

    def __init__(self, member_ids: Iterable[str] = ()) -> None:
        self.participation: dict[str, int] = {cid: 0 for cid in member_ids}
        self.last_speaker: str | None = None
        # dict keeps insertion order; values unused
        self._mentions: dict[str, None] = {}
        self.total_turns = 0
        self.iterations = 0

    @property
    def mention_queue(self) -> list[str]:
        return list(self._mentions)

    def turns(self, character_id: str) -> int:
        return self.participation.get(character_id, 0)

    def add_member(self, character_id: str) -> None:
        self.participation.setdefault(character_id, 0)

    def forget(self, character_id: str) -> None:
        """Drop a departed member from the mention queue."""
        self._mentions.pop(character_id, None)

    def queue_mentions(self, character_ids: Iterable[str]) -> None:
        for cid in character_ids:
            self._mentions.setdefault(cid, None)

    def take_mention(self, character_id: str) -> None:
        self._mentions.pop(character_id, None)

    def record_turn(self, speaker_id: str, *, counts_toward_total: bool = True) -> None:
        """A reply was accepted for speaker_id.

        A newcomer's welcome line counts as their turn but not toward the
        round total.
        """
        self.participation[speaker_id] = self.participation.get(speaker_id, 0) + 1
        self.last_speaker = speaker_id
        if counts_toward_total:
            self.total_turns += 1

    def record_iteration(self) -> None:
        self.iterations += 1


class TurnScheduler:
    def __init__(self, settings: ChatSettings, rng: random.Random | None = None) -> None:
        self.settings = settings
        self._rng = rng or random.Random()

    @property
    def cap(self) -> int:
        return self.settings.max_turns_per_character

    def next_speaker(self, member_ids: list[str], state: RoundState) -> str | None:
        """Return the next speaker, or None when nobody can speak."""
        for cid in member_ids:
            state.add_member(cid)
        last = state.last_speaker

        for cid in state.mention_queue:
            if cid in member_ids and state.turns(cid) < self.cap and cid != last:
                state.take_mention(cid)
                logger.debug("next speaker %s (mentioned)", cid)
                return cid

        unheard = [cid for cid in member_ids if state.turns(cid) == 0 and cid != last]
        if unheard:
            chosen = self._rng.choice(unheard)
            logger.debug("next speaker %s (not heard yet)", chosen)
            return chosen

        under_cap = [cid for cid in member_ids if state.turns(cid) < self.cap and cid != last]
        if under_cap:
            chosen = self._fewest_turns(under_cap, state)
            logger.debug("next speaker %s (least heard)", chosen)
            return chosen

        others = [cid for cid in member_ids if cid != last]
        if others:
            fewest = min(state.turns(cid) for cid in others)
            chosen = next(cid for cid in others if state.turns(cid) == fewest)
            logger.debug("next speaker %s (fallback)", chosen)
            return chosen
        return None

    def _fewest_turns(self, candidates: list[str], state: RoundState) -> str:
        fewest = min(state.turns(cid) for cid in candidates)
        tied = [cid for cid in candidates if state.turns(cid) == fewest]
        return self._rng.choice(tied)

    def should_stop(self, member_ids: list[str], state: RoundState) -> RoundEndReason | None:
        """Termination check, run after every iteration."""
        if state.total_turns >= self.settings.max_total_turns:
            return "completed"
        if (
            member_ids
            and all(state.turns(cid) >= 1 for cid in member_ids)
            and state.total_turns >= len(member_ids)
        ):
            return "quorum_met"
        if state.iterations >= self.settings.safety_ceiling:
            logger.warning("round hit the safety ceiling after %d iterations", state.iterations)
            return "completed"
        return None
