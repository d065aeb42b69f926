"""World view — read-only spatial queries the engine needs from its host.

The engine never reaches into global game state. Every component receives a
WorldView matching this protocol and treats each query as a fresh snapshot:
positions, rooms and doors may change between two calls.

Two things live here:

    WorldView  — the protocol (characters, rooms, doors, line of sight).
    GridWorld  — an in-memory tile world built from ASCII layouts. Used by
                 the HTTP host and by the tests.

Layout legend:

    #   wall (filled)
    +   closed door (filled while closed)
    /   open door
    .   floor (any other character is floor too)

Rooms are 4-connected floor regions enclosed by walls and doors. A region
that reaches the edge of the map is outdoors and has no room id. Door cells
belong to no room; they sit on the borders of the rooms they join.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from pathlib import Path
from typing import Any, Protocol

from earshot.models import Character, Door, Point

logger = logging.getLogger(__name__)

WALL = "#"
CLOSED_DOOR = "+"
OPEN_DOOR = "/"


class WorldError(LookupError):
    """Raised when a map, cell or character cannot be resolved."""


# ---------------------------------------------------------------------------
# Protocol — every world implementation must match these signatures
# ---------------------------------------------------------------------------

class WorldView(Protocol):
    def character(self, character_id: str) -> Character | None: ...

    def characters_on_map(self, map_id: str) -> list[Character]: ...

    def in_bounds(self, map_id: str, cell: Point) -> bool: ...

    def room_at(self, map_id: str, cell: Point) -> str | None: ...

    def room_border_cells(self, map_id: str, room_id: str) -> list[Point]: ...

    def door_at(self, map_id: str, cell: Point) -> Door | None: ...

    def is_filled(self, map_id: str, cell: Point) -> bool: ...

    def line_of_sight(self, map_id: str, a: Point, b: Point) -> bool: ...

    def line_cells(self, a: Point, b: Point) -> list[Point]: ...

    def current_day(self) -> int: ...


# ---------------------------------------------------------------------------
# Line rasterisation
# ---------------------------------------------------------------------------

def bresenham(a: Point, b: Point) -> list[Point]:
    """Cells on the line from a to b, both ends included.

    The walk always starts from the smaller endpoint, so the same set of
    cells is produced whichever way round the caller passes them.
    """
    if (b.x, b.z) < (a.x, a.z):
        a, b = b, a
    x0, z0, x1, z1 = a.x, a.z, b.x, b.z
    dx = abs(x1 - x0)
    dz = -abs(z1 - z0)
    sx = 1 if x0 < x1 else -1
    sz = 1 if z0 < z1 else -1
    err = dx + dz
    cells: list[Point] = []
    while True:
        cells.append(Point(x=x0, z=z0))
        if x0 == x1 and z0 == z1:
            break
        e2 = 2 * err
        if e2 >= dz:
            err += dz
            x0 += sx
        if e2 <= dx:
            err += dx
            z0 += sz
    return cells


# ---------------------------------------------------------------------------
# GridWorld
# ---------------------------------------------------------------------------

class GridMap:
    """One tile map: walls, doors and the rooms they enclose."""

    def __init__(self, map_id: str, rows: list[str]) -> None:
        if not rows:
            raise ValueError(f"Map {map_id!r} has no rows")
        self.map_id = map_id
        self.height = len(rows)
        self.width = max(len(r) for r in rows)
        self._walls: set[Point] = set()
        self._doors: dict[Point, bool] = {}
        for z, row in enumerate(rows):
            for x, ch in enumerate(row.ljust(self.width, ".")):
                cell = Point(x=x, z=z)
                if ch == WALL:
                    self._walls.add(cell)
                elif ch == CLOSED_DOOR:
                    self._doors[cell] = False
                elif ch == OPEN_DOOR:
                    self._doors[cell] = True
        self._room_of: dict[Point, str] = {}
        self._borders: dict[str, list[Point]] = {}
        self._build_rooms()

    def in_bounds(self, cell: Point) -> bool:
        return 0 <= cell.x < self.width and 0 <= cell.z < self.height

    def _is_floor(self, cell: Point) -> bool:
        return cell not in self._walls and cell not in self._doors

    def _neighbours4(self, cell: Point) -> list[Point]:
        out = []
        for dx, dz in ((1, 0), (-1, 0), (0, 1), (0, -1)):
            n = Point(x=cell.x + dx, z=cell.z + dz)
            if self.in_bounds(n):
                out.append(n)
        return out

    def _neighbours8(self, cell: Point) -> list[Point]:
        out = []
        for dx in (-1, 0, 1):
            for dz in (-1, 0, 1):
                if dx == 0 and dz == 0:
                    continue
                n = Point(x=cell.x + dx, z=cell.z + dz)
                if self.in_bounds(n):
                    out.append(n)
        return out

    def _on_edge(self, cell: Point) -> bool:
        return cell.x in (0, self.width - 1) or cell.z in (0, self.height - 1)

    def _build_rooms(self) -> None:
        seen: set[Point] = set()
        room_count = 0
        for z in range(self.height):
            for x in range(self.width):
                start = Point(x=x, z=z)
                if start in seen or not self._is_floor(start):
                    continue
                region: list[Point] = []
                outdoors = False
                queue = deque([start])
                seen.add(start)
                while queue:
                    cell = queue.popleft()
                    region.append(cell)
                    if self._on_edge(cell):
                        outdoors = True
                    for n in self._neighbours4(cell):
                        if n not in seen and self._is_floor(n):
                            seen.add(n)
                            queue.append(n)
                if outdoors:
                    continue
                room_count += 1
                room_id = f"{self.map_id}:room{room_count}"
                for cell in region:
                    self._room_of[cell] = room_id
                self._borders[room_id] = self._border_of(set(region))
        logger.debug("map %s: %d rooms", self.map_id, room_count)

    def _border_of(self, region: set[Point]) -> list[Point]:
        border: set[Point] = set()
        for cell in region:
            for n in self._neighbours8(cell):
                if n not in region:
                    border.add(n)
        return sorted(border, key=lambda p: (p.z, p.x))

    def room_at(self, cell: Point) -> str | None:
        return self._room_of.get(cell)

    def border_cells(self, room_id: str) -> list[Point]:
        try:
            return list(self._borders[room_id])
        except KeyError:
            raise WorldError(f"Unknown room {room_id!r} on map {self.map_id!r}") from None

    def door_at(self, cell: Point) -> Door | None:
        if cell not in self._doors:
            return None
        return Door(cell=cell, open=self._doors[cell])

    def set_door(self, cell: Point, open: bool) -> None:
        if cell not in self._doors:
            raise WorldError(f"No door at ({cell.x}, {cell.z}) on map {self.map_id!r}")
        self._doors[cell] = open

    def is_filled(self, cell: Point) -> bool:
        if cell in self._walls:
            return True
        return cell in self._doors and not self._doors[cell]


class GridWorld:
    """In-memory WorldView over one or more GridMaps."""

    def __init__(
        self,
        maps: dict[str, list[str]],
        characters: list[Character] | None = None,
        day: int = 0,
    ) -> None:
        self._maps = {map_id: GridMap(map_id, rows) for map_id, rows in maps.items()}
        self._characters: dict[str, Character] = {}
        for char in characters or []:
            self.add_character(char)
        self._day = day

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GridWorld:
        """Build from {"maps": {id: [rows]}, "characters": [...], "day": n}."""
        characters = [Character.model_validate(c) for c in data.get("characters", [])]
        return cls(data["maps"], characters, day=data.get("day", 0))

    @classmethod
    def from_json(cls, path: Path) -> GridWorld:
        return cls.from_dict(json.loads(path.read_text()))

    def _map(self, map_id: str) -> GridMap:
        try:
            return self._maps[map_id]
        except KeyError:
            raise WorldError(f"Unknown map {map_id!r}") from None

    def _cell(self, map_id: str, cell: Point) -> GridMap:
        grid = self._map(map_id)
        if not grid.in_bounds(cell):
            raise WorldError(f"Cell ({cell.x}, {cell.z}) is outside map {map_id!r}")
        return grid

    # ------------------------------------------------------------------
    # Mutation — the host moves the world; the engine only reads it
    # ------------------------------------------------------------------

    def add_character(self, character: Character) -> None:
        self._characters[character.id] = character

    def move_character(self, character_id: str, cell: Point, map_id: str | None = None) -> None:
        char = self._characters.get(character_id)
        if char is None:
            raise WorldError(f"Unknown character {character_id!r}")
        update: dict[str, Any] = {"position": cell}
        if map_id is not None:
            update["map_id"] = map_id
        self._characters[character_id] = char.model_copy(update=update)

    def kill_character(self, character_id: str) -> None:
        char = self._characters.get(character_id)
        if char is None:
            raise WorldError(f"Unknown character {character_id!r}")
        self._characters[character_id] = char.model_copy(update={"dead": True})

    def set_door(self, map_id: str, cell: Point, open: bool) -> None:
        self._map(map_id).set_door(cell, open)

    def advance_day(self, days: int = 1) -> None:
        self._day += days

    # ------------------------------------------------------------------
    # WorldView
    # ------------------------------------------------------------------

    def character(self, character_id: str) -> Character | None:
        return self._characters.get(character_id)

    def characters(self) -> list[Character]:
        return list(self._characters.values())

    def characters_on_map(self, map_id: str) -> list[Character]:
        return [c for c in self._characters.values() if c.map_id == map_id]

    def in_bounds(self, map_id: str, cell: Point) -> bool:
        grid = self._maps.get(map_id)
        return grid is not None and grid.in_bounds(cell)

    def room_at(self, map_id: str, cell: Point) -> str | None:
        return self._cell(map_id, cell).room_at(cell)

    def room_border_cells(self, map_id: str, room_id: str) -> list[Point]:
        return self._map(map_id).border_cells(room_id)

    def door_at(self, map_id: str, cell: Point) -> Door | None:
        return self._cell(map_id, cell).door_at(cell)

    def is_filled(self, map_id: str, cell: Point) -> bool:
        return self._cell(map_id, cell).is_filled(cell)

    def line_cells(self, a: Point, b: Point) -> list[Point]:
        return bresenham(a, b)

    def line_of_sight(self, map_id: str, a: Point, b: Point) -> bool:
        """True when no filled cell lies strictly between a and b.

        Endpoints are skipped and the rasterised line does not depend on
        argument order, so line_of_sight(a, b) == line_of_sight(b, a).
        """
        grid = self._cell(map_id, a)
        self._cell(map_id, b)
        for cell in bresenham(a, b)[1:-1]:
            if grid.is_filled(cell):
                return False
        return True

    def current_day(self) -> int:
        return self._day
