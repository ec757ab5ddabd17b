from citysync.aggregate import aggregate
from citysync.grid import get_cell, set_building


def test_empty_grid(make_world):
    res = aggregate(make_world().grid)
    assert res.population == 0
    assert res.residential_capacity == 0
    assert res.jobs == 0
    assert res.power == 0 and res.water == 0
    assert res.happiness == 50
    assert res.net_income == 0
    assert res.buildings["total"] == 0


def test_sums_and_counts(make_world):
    world = make_world()
    set_building(get_cell(world, 0, 0), "residential_small")
    set_building(get_cell(world, 1, 0), "residential_small")
    set_building(get_cell(world, 2, 0), "commercial_small")
    set_building(get_cell(world, 0, 1), "power_plant")
    set_building(get_cell(world, 1, 1), "water_plant")

    res = aggregate(world.grid)
    assert res.residential_capacity == 8
    assert res.jobs == 5 + 20 + 10
    assert res.power_production == 1000
    assert res.power_consumption == 1 + 1 + 2 + 20
    assert res.power == 1000 - 24
    assert res.water_production == 1000
    assert res.water_consumption == 1 + 1 + 1 + 50
    assert res.buildings["residential"] == 2
    assert res.buildings["commercial"] == 1
    assert res.buildings["utility"] == 2
    assert res.buildings["total"] == 5

    # 人口 8、工作 35：全部就業，沒有赤字
    assert res.population == 8
    assert res.employed == 8 and res.unemployed == 0
    assert res.happiness == 50 + 1 + 1 + 1 - 5 + 0
    assert res.income == 80
    assert res.expenses == 40
    assert res.net_income == 40


def test_aggregation_is_idempotent(make_world):
    world = make_world()
    set_building(get_cell(world, 0, 0), "residential_medium")
    set_building(get_cell(world, 2, 2), "park")
    first = aggregate(world.grid, population=12)
    second = aggregate(world.grid, population=12)
    assert first == second


def test_penalties_and_clamping(make_world):
    world = make_world(width=1, height=1)
    set_building(get_cell(world, 0, 0), "residential_small")

    # 預設人口等於容量：全失業加上水電不足
    res = aggregate(world.grid)
    assert res.unemployed == 4
    assert res.power_deficit == 1 and res.water_deficit == 1
    assert res.happiness == 0

    res = aggregate(world.grid, population=0)
    assert res.happiness == 50 + 1 - 20 - 20
    assert res.income == 0


def test_happiness_capped_at_maximum(make_world):
    world = make_world(width=3, height=3)
    for y in range(3):
        for x in range(3):
            set_building(get_cell(world, x, y), "solar_plant")
    assert aggregate(world.grid).happiness == 50 + 9 * 5

    world = make_world(width=5, height=5)
    for y in range(5):
        for x in range(5):
            set_building(get_cell(world, x, y), "solar_plant")
    assert aggregate(world.grid).happiness == 100


def test_unknown_buildings_are_ignored(make_world):
    world = make_world()
    set_building(get_cell(world, 0, 0), "moon_base")
    res = aggregate(world.grid)
    assert res.buildings["total"] == 0
    assert res.happiness == 50
