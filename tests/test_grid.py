import random

from citysync.grid import clear_building, get_cell, in_bounds, is_consistent, iter_cells, new_grid, restore_cell, set_building
from citysync.models import Terrain


def test_new_grid_without_water_is_all_empty_grass():
    grid = new_grid(4, 3)
    assert len(grid) == 3 and all(len(row) == 4 for row in grid)
    for cell in iter_cells(grid):
        assert cell.terrain == Terrain.GRASS
        assert not cell.occupied and cell.building is None
        assert grid[cell.y][cell.x] is cell


def test_water_cells_are_always_occupied():
    grid = new_grid(5, 5, water_ratio=1.0, rng=random.Random(1))
    for cell in iter_cells(grid):
        assert cell.terrain == Terrain.WATER
        assert cell.occupied
        assert is_consistent(cell)


def test_bounds(make_world):
    world = make_world(width=2, height=3)
    assert in_bounds(world, 1, 2)
    assert not in_bounds(world, 2, 0)
    assert not in_bounds(world, 0, -1)
    assert get_cell(world, 5, 5) is None
    assert get_cell(world, 1, 2).x == 1


def test_set_and_clear_keep_cell_consistent(make_world):
    world = make_world()
    cell = get_cell(world, 1, 1)
    set_building(cell, "park")
    assert cell.occupied and cell.building == "park"
    assert is_consistent(cell)

    clear_building(cell)
    assert not cell.occupied and cell.building is None
    assert is_consistent(cell)


def test_clearing_water_does_nothing(make_world):
    world = make_world(water=[(0, 0)])
    cell = get_cell(world, 0, 0)
    clear_building(cell)
    assert cell.terrain == Terrain.WATER
    assert cell.occupied


def test_restore_cell_copies_previous_state(make_world):
    world = make_world()
    cell = get_cell(world, 0, 0)
    before = cell.model_copy()
    set_building(cell, "road")
    restore_cell(cell, before)
    assert cell == before
