"""Tests for earshot.eligibility — who can hear whom."""

import itertools

import pytest

from conftest import INNER_DOOR, OUTER_DOOR, ROOM_A, ROOM_B, make_character
from earshot.config import ChatSettings
from earshot.eligibility import (
    can_communicate,
    can_communicate_pair,
    has_direct_connection,
    is_basic_eligible,
    room_doors,
    rooms_connected,
)
from earshot.models import Point
from earshot.world import GridWorld


def P(x: int, z: int) -> Point:
    return Point(x=x, z=z)


@pytest.fixture
def cfg() -> ChatSettings:
    return ChatSettings()


# ---------------------------------------------------------------------------
# is_basic_eligible
# ---------------------------------------------------------------------------

class TestBasicEligibility:
    def test_alive_humanlike_colonist_in_range(self, cfg: ChatSettings) -> None:
        assert is_basic_eligible(make_character("x", 2, 2), "home", P(3, 3), cfg)

    def test_missing_character(self, cfg: ChatSettings) -> None:
        assert not is_basic_eligible(None, "home", P(3, 3), cfg)

    def test_dead(self, cfg: ChatSettings) -> None:
        assert not is_basic_eligible(make_character("x", 2, 2, dead=True), "home", P(3, 3), cfg)

    def test_animal(self, cfg: ChatSettings) -> None:
        assert not is_basic_eligible(make_character("x", 2, 2, humanlike=False), "home", P(3, 3), cfg)

    def test_other_faction(self, cfg: ChatSettings) -> None:
        char = make_character("x", 2, 2, player_faction=False)
        assert not is_basic_eligible(char, "home", P(3, 3), cfg)

    def test_other_map(self, cfg: ChatSettings) -> None:
        char = make_character("x", 2, 2, map_id="caravan")
        assert not is_basic_eligible(char, "home", P(3, 3), cfg)

    def test_hard_cutoff(self, cfg: ChatSettings) -> None:
        assert is_basic_eligible(make_character("x", 15, 0), "home", P(0, 0), cfg)
        assert not is_basic_eligible(make_character("x", 16, 0), "home", P(0, 0), cfg)


# ---------------------------------------------------------------------------
# can_communicate — the four spatial rules
# ---------------------------------------------------------------------------

class TestCanCommunicate:
    def test_same_room(self, world: GridWorld, cfg: ChatSettings) -> None:
        assert can_communicate(world, "home", P(2, 2), make_character("x", 5, 4), cfg)

    def test_same_room_beyond_outdoor_range(self, cfg: ChatSettings) -> None:
        hall = GridWorld({"hall": ["#" * 14, "#" + "." * 12 + "#", "#" * 14]})
        far = make_character("x", 12, 1, map_id="hall")
        assert can_communicate(hall, "hall", P(1, 1), far, cfg)

    def test_outdoors_in_range_with_line_of_sight(self, world: GridWorld, cfg: ChatSettings) -> None:
        assert can_communicate(world, "home", P(12, 6), make_character("x", 18, 2), cfg)

    def test_outdoors_too_far(self, world: GridWorld, cfg: ChatSettings) -> None:
        assert not can_communicate(world, "home", P(0, 7), make_character("x", 12, 7), cfg)

    def test_outdoors_wall_in_between(self, world: GridWorld, cfg: ChatSettings) -> None:
        assert not can_communicate(world, "home", P(2, 0), make_character("x", 2, 6), cfg)

    def test_indoor_outdoor_through_closed_door(self, world: GridWorld, cfg: ChatSettings) -> None:
        assert not can_communicate(world, "home", P(3, 3), make_character("x", 3, 0), cfg)

    def test_indoor_outdoor_through_open_door(self, world: GridWorld, cfg: ChatSettings) -> None:
        world.set_door("home", OUTER_DOOR, True)
        assert can_communicate(world, "home", P(3, 3), make_character("x", 3, 0), cfg)

    def test_adjacent_rooms_closed_door(self, world: GridWorld, cfg: ChatSettings) -> None:
        assert not can_communicate(world, "home", P(4, 3), make_character("x", 8, 3), cfg)

    def test_adjacent_rooms_open_door(self, world: GridWorld, cfg: ChatSettings) -> None:
        world.set_door("home", INNER_DOOR, True)
        assert can_communicate(world, "home", P(4, 3), make_character("x", 8, 3), cfg)

    def test_rooms_open_door_but_too_far(self, cfg: ChatSettings) -> None:
        world = GridWorld({"long": [
            "#######################",
            "#..........+.........#.",
            "#######################",
        ]})
        world.set_door("long", P(11, 1), True)
        far = make_character("x", 14, 1, map_id="long")
        assert not can_communicate(world, "long", P(1, 1), far, cfg)

    def test_unknown_map_is_not_eligible(self, world: GridWorld, cfg: ChatSettings) -> None:
        char = make_character("x", 2, 2, map_id="moon")
        assert not can_communicate(world, "moon", P(2, 2), char, cfg)

    def test_out_of_bounds_is_not_eligible(self, world: GridWorld, cfg: ChatSettings) -> None:
        assert not can_communicate(world, "home", P(2, 2), make_character("x", 99, 99), cfg)

    def test_missing_candidate(self, world: GridWorld, cfg: ChatSettings) -> None:
        assert not can_communicate(world, "home", P(2, 2), None, cfg)


class TestSymmetry:
    CELLS = [
        P(2, 2), P(5, 4), P(3, 3),          # room A
        P(7, 2), P(10, 4),                  # room B
        P(3, 0), P(0, 3), P(12, 3), P(14, 6), P(6, 7),  # outdoors
    ]

    @pytest.mark.parametrize("inner_open", [False, True])
    @pytest.mark.parametrize("outer_open", [False, True])
    def test_pairwise(self, world: GridWorld, cfg: ChatSettings, inner_open, outer_open) -> None:
        world.set_door("home", INNER_DOOR, inner_open)
        world.set_door("home", OUTER_DOOR, outer_open)
        for a, b in itertools.combinations(self.CELLS, 2):
            ca = make_character("a", a.x, a.z)
            cb = make_character("b", b.x, b.z)
            assert can_communicate_pair(world, ca, cb, cfg) == can_communicate_pair(world, cb, ca, cfg), (a, b)

    def test_pair_with_dead_character(self, world: GridWorld, cfg: ChatSettings) -> None:
        a = make_character("a", 2, 2)
        b = make_character("b", 3, 2, dead=True)
        assert not can_communicate_pair(world, a, b, cfg)


# ---------------------------------------------------------------------------
# Doors and room connections
# ---------------------------------------------------------------------------

class TestRoomConnections:
    def test_room_doors(self, world: GridWorld) -> None:
        assert set(room_doors(world, "home", ROOM_A)) == {OUTER_DOOR, INNER_DOOR}
        assert room_doors(world, "home", ROOM_B) == [INNER_DOOR]

    def test_shared_door_decides(self, world: GridWorld) -> None:
        assert not rooms_connected(world, "home", ROOM_A, ROOM_B)
        world.set_door("home", INNER_DOOR, True)
        assert rooms_connected(world, "home", ROOM_A, ROOM_B)
        assert rooms_connected(world, "home", ROOM_B, ROOM_A)

    def test_solid_wall_separates(self) -> None:
        world = GridWorld({"m": [
            "#########",
            "#...#...#",
            "#...#...#",
            "#########",
        ]})
        assert not rooms_connected(world, "m", "m:room1", "m:room2")

    def test_diagonal_gap_connects(self) -> None:
        # Floor cells touching only at a corner form two rooms that still hear each other
        world = GridWorld({"m": [
            "#####",
            "#.###",
            "##.##",
            "#####",
        ]})
        assert world.room_at("m", P(1, 1)) != world.room_at("m", P(2, 2))
        assert rooms_connected(world, "m", "m:room1", "m:room2")

    def test_direct_connection_stops_at_first_door(self, world: GridWorld) -> None:
        assert not has_direct_connection(world, "home", P(3, 0), P(3, 3))
        world.set_door("home", OUTER_DOOR, True)
        assert has_direct_connection(world, "home", P(3, 0), P(3, 3))
