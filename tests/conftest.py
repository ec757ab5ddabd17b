import os
import random
import tempfile

import pytest

# 測試時不要寫進專案目錄
os.environ.setdefault("CITYSYNC_DATA_DIR", tempfile.mkdtemp(prefix="citysync-test-"))

from citysync.connections import Connection
from citysync.engine import CityEngine
from citysync.grid import new_grid
from citysync.models import Identity, Terrain, WorldState
from citysync.store import MemoryWorldStore


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryWorldStore()


@pytest.fixture
def engine(store, clock):
    return CityEngine(store=store, clock=clock, rng=random.Random(0))


@pytest.fixture
def make_world():
    def _make(world_id="w1", owner_id="u1", width=3, height=3, treasury=10000, water=()):
        grid = new_grid(width, height)
        for x, y in water:
            grid[y][x].terrain = Terrain.WATER
            grid[y][x].occupied = True
        return WorldState(
            id=world_id,
            owner_id=owner_id,
            name=f"City {world_id}",
            width=width,
            height=height,
            grid=grid,
            treasury=treasury,
        )
    return _make


@pytest.fixture
def join():
    """Connect a party to the engine's hub, optionally viewing a world."""
    def _join(engine, user_id, world_id=None, username=None):
        conn = engine.hub.connect(Connection(Identity(user_id=user_id, username=username or user_id)))
        if world_id is not None:
            engine.hub.watch(conn, world_id)
        return conn
    return _join
