"""Shared fixtures: a small two-room house and the people standing around it.

    x  0123456789012345678
  z 0  ...................      outdoors
    1  .##+########.......      (3,1) closed door to the outside
    2  .#....#....#.......
    3  .#....+....#.......      (6,3) closed door between room A and room B
    4  .#....#....#.......
    5  .###########.......
    6  ...................
    7  ...................

Room A (home:room1) spans x 2-5, room B (home:room2) x 7-10, both z 2-4.
"""

import pytest

from earshot.config import ChatSettings
from earshot.models import Character, Point
from earshot.storage import Storage
from earshot.world import GridWorld

HOUSE = [
    "...................",
    ".##+########.......",
    ".#....#....#.......",
    ".#....+....#.......",
    ".#....#....#.......",
    ".###########.......",
    "...................",
    "...................",
]

ROOM_A = "home:room1"
ROOM_B = "home:room2"
INNER_DOOR = Point(x=6, z=3)
OUTER_DOOR = Point(x=3, z=1)


def make_character(cid: str, x: int, z: int, **kwargs) -> Character:
    return Character(
        id=cid,
        name=kwargs.pop("name", cid.capitalize()),
        position=Point(x=x, z=z),
        map_id=kwargs.pop("map_id", "home"),
        **kwargs,
    )


@pytest.fixture
def world() -> GridWorld:
    return GridWorld(
        {"home": HOUSE},
        [
            make_character("alice", 2, 3, description="The colony's cook."),
            make_character("bob", 4, 3),
            make_character("carol", 5, 2),
            make_character("dave", 9, 4),            # room B, behind the closed door
            make_character("frank", 3, 0),           # outside the front door
            make_character("rex", 3, 4, humanlike=False),
        ],
        day=3,
    )


@pytest.fixture
def settings() -> ChatSettings:
    """Default limits with the pacing pauses switched off."""
    return ChatSettings(typing_pause=0, turn_pause=0, memory_pause=0, reply_timeout=0.5)


@pytest.fixture
def storage(tmp_path) -> Storage:
    return Storage(tmp_path)
