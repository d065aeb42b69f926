"""Spatial eligibility — can a character hear a given point?

Rules, in order (distances are straight-line cell distances):

  0. hard cutoff   candidate on the same map, both cells resolvable, and
                   distance <= max_chat_distance (15)
  1. same room     → True
  2. both outdoors → distance <= outdoor_chat_distance (8) and line of sight
  3. one indoors   → distance <= 8 and a direct path whose first door is open
  4. two rooms     → distance <= 8 and the rooms are connected: a shared
                     door decides (open/closed); otherwise a pair of
                     adjacent, unfilled border cells connects them

Every function here is pure over a WorldView snapshot and never raises:
anything that cannot be resolved is simply not eligible.
"""

from __future__ import annotations

import logging

from earshot.config import ChatSettings
from earshot.models import Character, Point
from earshot.world import WorldError, WorldView

logger = logging.getLogger(__name__)

_RESOLUTION_ERRORS = (WorldError, LookupError, ValueError)


def is_basic_eligible(
    character: Character | None,
    map_id: str,
    center: Point,
    settings: ChatSettings,
) -> bool:
    """Alive, humanlike, player-faction, on the map and within the hard cutoff."""
    if character is None:
        return False
    if character.dead or character.map_id != map_id:
        return False
    if not character.humanlike or not character.player_faction:
        return False
    return character.position.distance_to(center) <= settings.max_chat_distance


def can_communicate(
    world: WorldView,
    map_id: str,
    reference: Point,
    candidate: Character | None,
    settings: ChatSettings,
) -> bool:
    """Whether `candidate` can take part in a conversation held at `reference`."""
    if candidate is None or candidate.map_id != map_id:
        return False
    try:
        return _can_communicate(world, map_id, reference, candidate.position, settings)
    except _RESOLUTION_ERRORS as e:
        logger.debug("eligibility unresolved for %s: %s", candidate.id, e)
        return False


def can_communicate_pair(
    world: WorldView, a: Character | None, b: Character | None, settings: ChatSettings
) -> bool:
    """Character-to-character variant: the reference point is a's position."""
    if a is None or b is None or a.dead or b.dead:
        return False
    return can_communicate(world, a.map_id, a.position, b, settings)


def _can_communicate(
    world: WorldView,
    map_id: str,
    here: Point,
    there: Point,
    settings: ChatSettings,
) -> bool:
    if not world.in_bounds(map_id, here) or not world.in_bounds(map_id, there):
        return False

    distance = here.distance_to(there)
    if distance > settings.max_chat_distance:
        return False

    room_here = world.room_at(map_id, here)
    room_there = world.room_at(map_id, there)

    if room_here is not None and room_here == room_there:
        return True

    if distance > settings.outdoor_chat_distance:
        return False

    if room_here is None and room_there is None:
        return world.line_of_sight(map_id, here, there)

    if room_here is None or room_there is None:
        return has_direct_connection(world, map_id, here, there)

    return rooms_connected(world, map_id, room_here, room_there)


def has_direct_connection(world: WorldView, map_id: str, a: Point, b: Point) -> bool:
    """Line of sight from a to b, where the first door on the path must be open."""
    if not world.line_of_sight(map_id, a, b):
        return False
    for cell in world.line_cells(a, b):
        if not world.in_bounds(map_id, cell):
            continue
        door = world.door_at(map_id, cell)
        if door is not None:
            return door.open
        if world.is_filled(map_id, cell):
            return False
    return True


def room_doors(world: WorldView, map_id: str, room_id: str) -> list[Point]:
    """Door cells on the border of a room, in border order, without duplicates."""
    doors: list[Point] = []
    for cell in world.room_border_cells(map_id, room_id):
        if world.door_at(map_id, cell) is not None and cell not in doors:
            doors.append(cell)
    return doors


def rooms_connected(world: WorldView, map_id: str, room_a: str, room_b: str) -> bool:
    """Two rooms hear each other through a shared open door or an open gap."""
    doors_b = set(room_doors(world, map_id, room_b))
    shared = [cell for cell in room_doors(world, map_id, room_a) if cell in doors_b]
    if shared:
        # Shared doors decide on their own; any open one is enough
        return any(_door_open(world, map_id, cell) for cell in shared)

    border_b = world.room_border_cells(map_id, room_b)
    for cell_a in world.room_border_cells(map_id, room_a):
        if world.is_filled(map_id, cell_a):
            continue
        for cell_b in border_b:
            if cell_a.adjacent_to(cell_b) and not world.is_filled(map_id, cell_b):
                return True
    return False


def _door_open(world: WorldView, map_id: str, cell: Point) -> bool:
    door = world.door_at(map_id, cell)
    return door is not None and door.open
