import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Callable, Dict, List, Optional

from citysync.errors import TransientInfrastructureError, ValidationError
from citysync.models import WorldState
from citysync.store import WorldStore

logger = logging.getLogger(__name__)


class WorldRegistry:
    """Canonical, in-memory worlds keyed by id, each guarded by its own lock.

    Canonical state may only be changed while holding the world's lock, and
    never across an ``await``.
    """

    def __init__(self, store: WorldStore):
        self.store = store
        self._worlds: Dict[str, WorldState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._owned: Dict[str, str] = {}        # owner_id -> 最近啟用的 world_id
        self.degraded: Dict[str, str] = {}      # world_id -> 原因

    def __contains__(self, world_id: str) -> bool:
        return world_id in self._worlds

    def __len__(self) -> int:
        return len(self._worlds)

    def add(self, world: WorldState) -> WorldState:
        self._worlds[world.id] = world
        self._locks.setdefault(world.id, asyncio.Lock())
        self._owned.setdefault(world.owner_id, world.id)
        return world

    def bind_owner(self, world: WorldState):
        # 擁有者建立或親自載入的城市，就是之後交易用的城市
        self._owned[world.owner_id] = world.id

    async def activate(self, world_id: str) -> WorldState:
        world = self._worlds.get(world_id)
        if world is not None:
            return world
        loaded = await asyncio.to_thread(self.store.load_world, world_id)
        if loaded is None:
            raise ValidationError("WORLD_NOT_FOUND", f"City {world_id} not found")
        # 讀檔期間可能已被其他連線啟用
        if world_id in self._worlds:
            return self._worlds[world_id]
        logger.info("activated world %s (%s)", world_id, loaded.name)
        return self.add(loaded)

    async def deactivate(self, world_id: str, keep: Optional[Callable[[], bool]] = None) -> bool:
        """Save a world one last time and drop it from memory.

        ``keep`` is checked again after the save; the world stays active when it
        returns True or when the world changed while the save was running.
        """
        if world_id not in self._worlds:
            return False
        async with self.lock(world_id):
            snapshot = self._worlds[world_id].model_copy(deep=True)
        try:
            await asyncio.to_thread(self.store.save_world, snapshot)
        except (TransientInfrastructureError, OSError) as err:
            logger.warning("world %s stays active, final save failed: %s", world_id, err)
            raise TransientInfrastructureError("PERSISTENCE_FAILED", str(err)) from err

        if (keep is not None and keep()) or self._worlds.get(world_id) != snapshot:
            return False
        # _owned 保留，之後交易時可以再從存檔載入
        self._worlds.pop(world_id, None)
        self._locks.pop(world_id, None)
        self.degraded.pop(world_id, None)
        logger.info("deactivated world %s", world_id)
        return True

    def get(self, world_id: str) -> Optional[WorldState]:
        return self._worlds.get(world_id)

    def require(self, world_id: str) -> WorldState:
        world = self._worlds.get(world_id)
        if world is None:
            raise ValidationError("WORLD_NOT_ACTIVE", f"City {world_id} is not loaded")
        return world

    def active_ids(self) -> List[str]:
        return list(self._worlds.keys())

    def world_of(self, party_id: str) -> Optional[WorldState]:
        world_id = self._owned.get(party_id)
        return self._worlds.get(world_id) if world_id else None

    async def world_for(self, party_id: str) -> Optional[WorldState]:
        # 同 world_of，但已卸載的城市會從存檔重新載入
        world_id = self._owned.get(party_id)
        if world_id is None:
            return None
        try:
            return await self.activate(world_id)
        except ValidationError:
            self._owned.pop(party_id, None)
            return None

    def lock(self, world_id: str) -> asyncio.Lock:
        return self._locks.setdefault(world_id, asyncio.Lock())

    @asynccontextmanager
    async def locked(self, *world_ids: str):
        # 固定依 id 排序取鎖，避免兩筆交易互相卡死
        async with AsyncExitStack() as stack:
            for world_id in sorted(set(world_ids)):
                await stack.enter_async_context(self.lock(world_id))
            yield

    # --- 故障隔離 ---
    def mark_degraded(self, world_id: str, reason: str):
        self.degraded[world_id] = reason

    def is_degraded(self, world_id: str) -> bool:
        return world_id in self.degraded

    def revive(self, world_id: str) -> bool:
        return self.degraded.pop(world_id, None) is not None
