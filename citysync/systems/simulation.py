import asyncio
import logging
from typing import Dict, Optional

from citysync.aggregate import aggregate
from citysync.errors import ValidationError
from citysync.messages import ResourceDelta, resource_delta, simulation_update
from citysync.models import WorldState
import config

logger = logging.getLogger(__name__)

MAX_SIMULATION_SPEED = 10.0


class SimulationSystem:
    def simulate_world(self, world: WorldState, delta_seconds: float) -> ResourceDelta:
        # 先算完所有新數值再寫回，算到一半出錯時世界維持原狀
        current = aggregate(world.grid, population=world.population)
        target = current.residential_capacity * (current.happiness / 100)
        step = min(1.0, config.GROWTH_RATE * delta_seconds)
        population = max(0.0, world.population + (target - world.population) * step)
        treasury = world.treasury + current.net_income * delta_seconds
        resources = aggregate(world.grid, population=population)

        world.population = population
        world.treasury = treasury
        world.resources = resources
        world.touch(self.clock())
        return resource_delta(world)

    async def tick(self) -> Dict[str, ResourceDelta]:
        if self.paused:
            return {}

        now = self.clock()
        delta = self.tick_interval * self.simulation_speed
        updates: Dict[str, ResourceDelta] = {}

        for world_id in self.registry.active_ids():
            if self.registry.is_degraded(world_id):
                continue
            async with self.registry.lock(world_id):
                world = self.registry.get(world_id)
                if world is None:
                    continue
                try:
                    updates[world_id] = self.simulate_world(world, delta)
                except Exception as err:
                    # 單一城市壞掉只停掉它自己，不影響整個迴圈
                    logger.exception("world %s stopped ticking", world_id)
                    self.registry.mark_degraded(world_id, str(err))
                    self.events.log(f"[錯誤] 城市 {world.name} 模擬失敗，已暫停：{err}")
                    continue
                self.persistence.queue_world(world_id)
                # 持鎖時就排入廣播，確保與確認訊息的先後順序一致
                self.hub.broadcast_world(world_id, simulation_update(world_id, updates[world_id], now, self.simulation_speed))

        self.expire_offers(now)
        self.prune_offers(now)
        await self.persistence.flush(self.registry)
        await self.release_idle_worlds()
        self.last_tick = now
        return updates

    async def run(self, stop: Optional[asyncio.Event] = None):
        stop = stop or asyncio.Event()
        loop = asyncio.get_running_loop()
        logger.info("simulation loop started (interval %.2fs)", self.tick_interval)
        wait = self.tick_interval
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=wait)
                break
            except asyncio.TimeoutError:
                pass
            started = loop.time()
            try:
                await self.tick()
            except Exception:
                logger.exception("tick failed")
            # 扣掉 tick 本身花的時間，維持固定節奏
            wait = max(0.0, self.tick_interval - (loop.time() - started))
        logger.info("simulation loop stopped")

    # --- 管理操作 ---
    def pause(self):
        self.paused = True
        self.events.log("模擬已暫停")

    def resume(self):
        self.paused = False
        self.events.log("模擬已恢復")

    def set_speed(self, speed: float):
        if not (0 < speed <= MAX_SIMULATION_SPEED):
            raise ValidationError("BAD_SPEED", f"Simulation speed must be in (0, {MAX_SIMULATION_SPEED}]")
        self.simulation_speed = speed
        self.events.log(f"模擬速度調整為 x{speed}")

    def revive_world(self, world_id: str) -> bool:
        revived = self.registry.revive(world_id)
        if revived:
            self.events.log(f"城市 {world_id} 恢復模擬")
        return revived
