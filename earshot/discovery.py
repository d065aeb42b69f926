"""Candidate discovery — who may join, who has to leave.

The conversation is held at a centre point: the bounding-box centre of all
members' positions (the sole member's position when only one is left).
When that cell is a wall or a door the initiator's position is used instead.
Each refresh recomputes it from a fresh world snapshot, then

  joinable   nearby characters that can hear the centre and are neither
             members nor excluded (closest first)
  must_leave members that can no longer take part: dead or off the map
             ("no_longer_present"), or out of earshot ("moved_away")

The initiator is never flagged as moved away; the centre follows the group.
Exclusions of characters who died or left the initiator's map are
forgotten on every refresh.
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, Field

from earshot.config import ChatSettings
from earshot.eligibility import can_communicate, is_basic_eligible
from earshot.models import Character, Point
from earshot.roster import ParticipantRoster
from earshot.world import WorldView

logger = logging.getLogger(__name__)

LeaveReason = Literal["moved_away", "no_longer_present"]


class Departure(BaseModel):
    character_id: str
    reason: LeaveReason


class CandidateRefresh(BaseModel):
    center: Point | None = None
    map_id: str | None = None
    joinable: list[str] = Field(default_factory=list)
    must_leave: list[Departure] = Field(default_factory=list)
    excluded_nearby: list[str] = Field(default_factory=list)
    initiator_lost: bool = False


def conversation_center(world: WorldView, character_ids: list[str]) -> Point | None:
    """Bounding-box centre cell of the given characters, or None."""
    positions: list[Point] = []
    for cid in character_ids:
        char = world.character(cid)
        if char is not None:
            positions.append(char.position)
    if not positions:
        return None
    if len(positions) == 1:
        return positions[0]
    min_x = min(p.x for p in positions)
    max_x = max(p.x for p in positions)
    min_z = min(p.z for p in positions)
    max_z = max(p.z for p in positions)
    return Point(x=min_x + (max_x - min_x + 1) // 2, z=min_z + (max_z - min_z + 1) // 2)


def _present(char: Character | None, map_id: str) -> bool:
    return char is not None and not char.dead and char.map_id == map_id


def refresh_candidates(
    world: WorldView,
    roster: ParticipantRoster,
    settings: ChatSettings,
) -> CandidateRefresh:
    """Recompute the centre and classify nearby characters and current members."""
    initiator = world.character(roster.initiator_id)
    if initiator is None or initiator.dead:
        logger.info("initiator %s is no longer present", roster.initiator_id)
        return CandidateRefresh(initiator_lost=True)
    map_id = initiator.map_id
    roster.prune_excluded(lambda cid: _present(world.character(cid), map_id))

    must_leave: list[Departure] = []
    present: list[str] = []
    for cid in roster:
        if cid == roster.initiator_id:
            present.append(cid)
            continue
        if not _present(world.character(cid), map_id):
            must_leave.append(Departure(character_id=cid, reason="no_longer_present"))
        else:
            present.append(cid)

    center = conversation_center(world, present)
    if center is None:
        return CandidateRefresh(map_id=map_id, must_leave=must_leave, initiator_lost=True)
    if world.is_filled(map_id, center) or world.door_at(map_id, center) is not None:
        # A wall or doorway belongs to no room; hold the conversation where the initiator stands
        center = initiator.position

    for cid in present:
        if cid == roster.initiator_id:
            continue
        char = world.character(cid)
        if not (is_basic_eligible(char, map_id, center, settings)
                and can_communicate(world, map_id, center, char, settings)):
            must_leave.append(Departure(character_id=cid, reason="moved_away"))

    joinable: list[Character] = []
    excluded_nearby: list[str] = []
    for char in world.characters_on_map(map_id):
        if char.id in roster:
            continue
        if not (is_basic_eligible(char, map_id, center, settings)
                and can_communicate(world, map_id, center, char, settings)):
            continue
        if roster.is_excluded(char.id):
            excluded_nearby.append(char.id)
        else:
            joinable.append(char)
    joinable.sort(key=lambda c: c.position.distance_to(center))

    refresh = CandidateRefresh(
        center=center,
        map_id=map_id,
        joinable=[c.id for c in joinable],
        must_leave=must_leave,
        excluded_nearby=excluded_nearby,
    )
    logger.debug(
        "refresh center=(%d, %d) joinable=%s must_leave=%s excluded_nearby=%s",
        center.x, center.z, refresh.joinable,
        [d.character_id for d in must_leave], excluded_nearby,
    )
    return refresh
