"""Participant roster — who is in a group conversation right now.

The roster is an ordered set of character ids with two extras:

  initiator  the character the conversation was opened with. Always a
             member, never excluded, never removed (manually or otherwise).
  excluded   characters the player removed by hand. Automatic discovery
             skips them; a manual admit clears the exclusion.

Manual removal needs at least three members, so a two-person exchange can
never be reduced to a monologue.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator

logger = logging.getLogger(__name__)

MIN_MEMBERS_FOR_REMOVAL = 3


class RosterError(ValueError):
    """Raised when a roster operation would break a roster invariant."""


class RemovalRejected(RosterError):
    """A manual removal was refused. The message is fit to show the player."""


class ParticipantRoster:
    def __init__(
        self,
        initiator_id: str,
        participant_ids: Iterable[str] = (),
        excluded_ids: Iterable[str] = (),
    ) -> None:
        self.initiator_id = initiator_id
        self._excluded: set[str] = set(excluded_ids)
        self._excluded.discard(initiator_id)

        self._members: list[str] = []
        for cid in participant_ids:
            if cid not in self._excluded and cid not in self._members:
                self._members.append(cid)
        if initiator_id not in self._members:
            # Previously excluded members filtered out the initiator's group;
            # fall back to the initiator alone
            self._members = [initiator_id]
        self._check()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def members(self) -> list[str]:
        return list(self._members)

    @property
    def excluded(self) -> set[str]:
        return set(self._excluded)

    def __contains__(self, character_id: object) -> bool:
        return character_id in self._members

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._members))

    def __len__(self) -> int:
        return len(self._members)

    def is_excluded(self, character_id: str) -> bool:
        return character_id in self._excluded

    def can_remove(self, character_id: str) -> bool:
        return self._removal_problem(character_id) is None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def admit(self, character_id: str) -> bool:
        """Add a member. Idempotent; clears any exclusion.

        Returns True when the character was not already a member.
        """
        self._excluded.discard(character_id)
        if character_id in self._members:
            return False
        self._members.append(character_id)
        self._check()
        return True

    def remove(self, character_id: str) -> None:
        """Manual removal. The character is excluded from automatic re-admission.

        Raises RemovalRejected with no state change when the roster is too
        small, the target is the initiator, or the target is not a member.
        """
        problem = self._removal_problem(character_id)
        if problem is not None:
            raise RemovalRejected(problem)
        self._members.remove(character_id)
        self._excluded.add(character_id)
        self._check()

    def drop(self, character_id: str) -> bool:
        """Automatic removal (moved away, gone). Does not exclude.

        Returns False when the character was not a member.
        """
        if character_id == self.initiator_id:
            raise RosterError("The initiator is never removed automatically")
        if character_id not in self._members:
            return False
        self._members.remove(character_id)
        self._check()
        return True

    def prune_excluded(self, keep: Callable[[str], bool]) -> list[str]:
        """Forget exclusions for characters `keep` rejects (dead, gone, other map).

        Returns the ids that were pruned.
        """
        pruned = sorted(cid for cid in self._excluded if not keep(cid))
        for cid in pruned:
            self._excluded.discard(cid)
        if pruned:
            logger.info("pruned exclusions %s", pruned)
        return pruned

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _removal_problem(self, character_id: str) -> str | None:
        if character_id == self.initiator_id:
            return "You can't remove the initiator of the conversation."
        if character_id not in self._members:
            return "That character is not part of the conversation."
        if len(self._members) < MIN_MEMBERS_FOR_REMOVAL:
            return "A conversation needs at least three participants before anyone can be removed."
        return None

    def _check(self) -> None:
        if self.initiator_id not in self._members:
            raise RosterError("The initiator must be a member")
        if self.initiator_id in self._excluded:
            raise RosterError("The initiator cannot be excluded")
        if self._excluded.intersection(self._members):
            raise RosterError("A member cannot be excluded")
