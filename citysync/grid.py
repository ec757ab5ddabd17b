import random
from typing import List, Optional
from citysync.models import Cell, Terrain, WorldState


def new_grid(width: int, height: int, water_ratio: float = 0.0, rng: Optional[random.Random] = None) -> List[List[Cell]]:
    # 大部分是草地，按比例灑一些水域 (水域永遠視為已佔用)
    rng = rng or random.Random()
    grid = []
    for y in range(height):
        row = []
        for x in range(width):
            terrain = Terrain.WATER if water_ratio > 0 and rng.random() < water_ratio else Terrain.GRASS
            row.append(Cell(x=x, y=y, terrain=terrain, occupied=(terrain == Terrain.WATER)))
        grid.append(row)
    return grid


def in_bounds(world: WorldState, x: int, y: int) -> bool:
    return 0 <= x < world.width and 0 <= y < world.height


def get_cell(world: WorldState, x: int, y: int) -> Optional[Cell]:
    if not in_bounds(world, x, y):
        return None
    return world.grid[y][x]


def iter_cells(grid: List[List[Cell]]):
    for row in grid:
        for cell in row:
            yield cell


def is_consistent(cell: Cell) -> bool:
    if cell.terrain == Terrain.WATER:
        return cell.occupied and cell.building is None
    return cell.occupied == (cell.building is not None)


def set_building(cell: Cell, kind_id: str):
    cell.building = kind_id
    cell.occupied = True


def clear_building(cell: Cell):
    # 水域不可還原成草地
    if cell.terrain == Terrain.WATER:
        return
    cell.building = None
    cell.occupied = False


def restore_cell(cell: Cell, before: Cell):
    cell.terrain = before.terrain
    cell.building = before.building
    cell.occupied = before.occupied
