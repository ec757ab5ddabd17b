import asyncio

import pytest

import config
from citysync.errors import ValidationError
from citysync.grid import get_cell, set_building
from citysync.messages import MutationRequest
from citysync.models import ActionKind


def test_one_by_one_world_grows_toward_capacity(engine, make_world):
    async def scenario():
        world = engine.registry.add(make_world(width=1, height=1, treasury=1000))
        await engine.submit_mutation(world.id, ActionKind.PLACE, MutationRequest(action_id="a1", x=0, y=0, building_type="residential_small"))
        placed = (world.treasury, world.grid[0][0].occupied)
        await engine.tick()
        return world, placed

    world, placed = asyncio.run(scenario())

    assert placed == (900, True)
    assert 0 < world.population <= 4
    # 人口從 0 開始，第一次 tick 的收支為 0
    assert world.treasury == 900
    assert world.resources.population == world.population


def test_population_keeps_moving_toward_target(engine, make_world):
    world = make_world(width=2, height=2, treasury=100000)
    set_building(get_cell(world, 0, 0), "residential_medium")
    set_building(get_cell(world, 1, 0), "commercial_medium")
    set_building(get_cell(world, 0, 1), "power_plant")
    set_building(get_cell(world, 1, 1), "water_plant")
    engine.registry.add(world)

    async def scenario():
        history = []
        for _ in range(30):
            await engine.tick()
            history.append(world.population)
        return history

    history = asyncio.run(scenario())

    assert all(b >= a for a, b in zip(history, history[1:]))
    assert history[-1] <= 40
    assert world.treasury > 100000


def test_empty_world_stays_idle(engine, make_world):
    world = engine.registry.add(make_world(treasury=1234))
    updates = asyncio.run(engine.tick())
    assert updates[world.id].model_dump() == {"money": 1234, "population": 0, "happiness": 50, "power": 0, "water": 0, "jobs": 0}
    assert world.population == 0
    assert world.treasury == 1234


def test_viewers_receive_resource_deltas(engine, make_world, join, clock):
    world = engine.registry.add(make_world())
    viewer = join(engine, "u2", world_id=world.id)
    outsider = join(engine, "u3")

    asyncio.run(engine.tick())

    msgs = viewer.drain()
    assert len(msgs) == 1
    msg = msgs[0]
    assert msg["type"] == "simulationUpdate"
    assert msg["world_id"] == world.id
    assert msg["timestamp"] == clock.now
    assert set(msg["resources"]) == {"money", "population", "happiness", "power", "water", "jobs"}
    assert outsider.drain() == []


def test_tick_persists_worlds(engine, store, make_world):
    world = engine.registry.add(make_world())
    asyncio.run(engine.tick())
    assert store.world_writes == 1
    assert store.load_world(world.id).last_updated == engine.clock()


def test_failing_world_is_degraded_not_fatal(engine, make_world):
    good = engine.registry.add(make_world(world_id="good"))
    bad = engine.registry.add(make_world(world_id="bad", owner_id="u2"))
    real_simulate = engine.simulate_world

    def flaky(world, delta_seconds):
        if world.id == "bad":
            raise RuntimeError("corrupt grid")
        return real_simulate(world, delta_seconds)

    engine.simulate_world = flaky

    async def scenario():
        first = await engine.tick()
        second = await engine.tick()
        return first, second

    first, second = asyncio.run(scenario())

    assert set(first) == {"good"} and set(second) == {"good"}
    assert engine.registry.is_degraded("bad")
    assert "corrupt grid" in engine.registry.degraded["bad"]
    assert good.last_updated == engine.clock()
    assert bad.last_updated == 0.0

    assert engine.revive_world("bad")
    assert not engine.revive_world("bad")


def test_pause_and_resume(engine, make_world):
    world = engine.registry.add(make_world())
    engine.pause()
    assert asyncio.run(engine.tick()) == {}
    assert world.last_updated == 0.0
    engine.resume()
    assert world.id in asyncio.run(engine.tick())
    assert engine.events.entries[0].endswith("模擬已恢復")


def test_speed_scales_the_step(engine, make_world):
    slow = make_world(width=1, height=1)
    fast = make_world(world_id="w2", owner_id="u2", width=1, height=1)
    for world in (slow, fast):
        set_building(get_cell(world, 0, 0), "residential_small")

    engine.simulate_world(slow, 1.0)
    engine.set_speed(5)
    engine.simulate_world(fast, config.TICK_INTERVAL * engine.simulation_speed)
    assert fast.population == pytest.approx(slow.population * 5)

    with pytest.raises(ValidationError):
        engine.set_speed(0)
    with pytest.raises(ValidationError):
        engine.set_speed(11)


def test_growth_step_never_overshoots(engine, make_world):
    world = make_world(width=1, height=1)
    set_building(get_cell(world, 0, 0), "residential_small")
    engine.simulate_world(world, 3600)
    assert world.population <= 4
    assert world.population >= 0
    # 一步直接到達以當時幸福度算出的目標
    assert world.population == pytest.approx(4 * ((50 + 1 - 40) / 100))


def test_run_loop_ticks_until_stopped(engine):
    engine.tick_interval = 0.01
    calls = []

    async def counting_tick():
        calls.append(1)
        return {}

    engine.tick = counting_tick

    async def scenario():
        stop = asyncio.Event()
        task = asyncio.create_task(engine.run(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(scenario())
    assert len(calls) >= 2
