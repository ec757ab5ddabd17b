from typing import List, Optional
from citysync.catalog import CATEGORIES, get_building_info
from citysync.grid import iter_cells
from citysync.models import Cell, ResourceSnapshot
import config


def aggregate(grid: List[List[Cell]], population: Optional[float] = None) -> ResourceSnapshot:
    """Derive the resource snapshot of a grid.

    Pure function of its inputs. When ``population`` is omitted the residential
    capacity stands in for it (the client's view); the simulation tick passes
    the world's damped population instead.
    """
    residents = 0
    jobs = 0
    power_production = 0
    power_consumption = 0
    water_production = 0
    water_consumption = 0
    building_happiness = 0
    counts = {c: 0 for c in CATEGORIES}
    counts["total"] = 0

    for cell in iter_cells(grid):
        if not cell.occupied or cell.building is None:
            continue
        info = get_building_info(cell.building)
        if not info:
            continue

        counts[info.category] = counts.get(info.category, 0) + 1
        counts["total"] += 1

        residents += info.residents
        jobs += info.workers
        building_happiness += info.happiness

        if info.power > 0:
            power_production += info.power
        else:
            power_consumption -= info.power

        if info.water > 0:
            water_production += info.water
        else:
            water_consumption -= info.water

    if population is None:
        population = residents

    power = power_production - power_consumption
    water = water_production - water_consumption
    power_deficit = max(0, -power)
    water_deficit = max(0, -water)

    employed = min(population, jobs)
    unemployed = max(0, population - jobs)

    happiness = config.BASE_HAPPINESS + building_happiness
    # 人口為 0 時失業率視為 0
    if population > 0:
        happiness -= config.UNEMPLOYMENT_PENALTY * (unemployed / population)
    if power_deficit > 0:
        happiness -= config.POWER_DEFICIT_PENALTY
    if water_deficit > 0:
        happiness -= config.WATER_DEFICIT_PENALTY
    happiness = max(config.HAPPINESS_MIN, min(config.HAPPINESS_MAX, happiness))

    income = population * config.INCOME_PER_RESIDENT
    expenses = population * config.EXPENSE_PER_RESIDENT

    return ResourceSnapshot(
        population=population,
        residential_capacity=residents,
        jobs=jobs,
        employed=employed,
        unemployed=unemployed,
        power=power,
        power_production=power_production,
        power_consumption=power_consumption,
        power_deficit=power_deficit,
        water=water,
        water_production=water_production,
        water_consumption=water_consumption,
        water_deficit=water_deficit,
        happiness=happiness,
        income=income,
        expenses=expenses,
        net_income=income - expenses,
        buildings=counts,
    )
