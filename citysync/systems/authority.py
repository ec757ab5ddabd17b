import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel

from citysync.aggregate import aggregate
from citysync.catalog import get_building_info
from citysync.connections import Connection
from citysync.errors import CityError, TransientInfrastructureError, ValidationError
from citysync.grid import clear_building, get_cell, new_grid, set_building
from citysync.messages import MutationRequest, mutation_confirmed, mutation_rejected, player_event, remote_mutation, world_message
from citysync.models import ActionKind, Identity, WorldState
from citysync.rules import check_placement, check_removal
import config

logger = logging.getLogger(__name__)

MAX_GRID_SIZE = 100


class MutationOutcome(BaseModel):
    action_id: str
    kind: ActionKind
    x: int
    y: int
    state: str                      # "confirmed" | "rejected"
    building_type: Optional[str] = None
    reason: Optional[str] = None


class AuthoritySystem:
    # --- 驗證 (只讀，不改動狀態) ---
    def validate_placement(self, world: WorldState, x: int, y: int, kind_id: str) -> Tuple[bool, str]:
        try:
            check_placement(world, x, y, kind_id)
        except ValidationError as err:
            return False, err.code
        return True, "OK"

    def validate_removal(self, world: WorldState, x: int, y: int) -> Tuple[bool, str]:
        try:
            check_removal(world, x, y)
        except ValidationError as err:
            return False, err.code
        return True, "OK"

    # --- 提交 (呼叫前必須已通過驗證，且持有該世界的鎖) ---
    def commit_placement(self, world: WorldState, x: int, y: int, kind_id: str, action_id: str = "") -> Dict[str, Any]:
        kind = get_building_info(kind_id)
        cell = get_cell(world, x, y)
        set_building(cell, kind.id)
        world.treasury -= kind.cost
        world.touch(self.clock())
        return mutation_confirmed("place", action_id, x, y, kind.id, kind.cost)

    def commit_removal(self, world: WorldState, x: int, y: int, action_id: str = "") -> Dict[str, Any]:
        cell = get_cell(world, x, y)
        clear_building(cell)
        world.touch(self.clock())
        return mutation_confirmed("remove", action_id, x, y)

    async def submit_mutation(self, world_id: str, kind: ActionKind, request: MutationRequest,
                              origin: Optional[Connection] = None) -> Dict[str, Any]:
        """Validate and commit one mutation against the canonical world.

        Raises ``ValidationError`` without touching state when the request is
        invalid. On success the confirmation goes to ``origin`` and an
        anonymous remote-mutation event to every other viewer.
        """
        async with self.registry.lock(world_id):
            world = self.registry.require(world_id)

            if kind == ActionKind.PLACE:
                check_placement(world, request.x, request.y, request.building_type)
                confirmation = self.commit_placement(world, request.x, request.y, request.building_type, request.action_id)
                result_building = request.building_type
            else:
                check_removal(world, request.x, request.y)
                confirmation = self.commit_removal(world, request.x, request.y, request.action_id)
                result_building = None

            # 先回覆發起者，再通知同一城市的其他人
            if origin is not None:
                origin.push(confirmation)
            self.hub.broadcast_world(world_id, remote_mutation(world_id, request.x, request.y, result_building), exclude=origin)
            self.persistence.queue_world(world_id)
        return confirmation

    async def handle_mutation(self, conn: Connection, kind: ActionKind, request: MutationRequest) -> MutationOutcome:
        outcome = MutationOutcome(action_id=request.action_id, kind=kind, x=request.x, y=request.y,
                                  state="received", building_type=request.building_type)
        world_id = conn.world_id
        try:
            if world_id is None:
                raise ValidationError("NO_ACTIVE_CITY", "No active city")
            await self.submit_mutation(world_id, kind, request, origin=conn)
        except CityError as err:
            conn.push(mutation_rejected(kind.value, request.action_id, request.x, request.y, err.code, err.message))
            logger.info("rejected %s %s from %s: %s", kind.value, request.action_id, conn.identity.username, err.code)
            outcome.state = "rejected"
            outcome.reason = err.code
            return outcome

        outcome.state = "confirmed"
        if kind == ActionKind.PLACE:
            self.events.log(f"{conn.identity.username} 建造 {request.building_type} @ ({request.x}, {request.y})")
        else:
            self.events.log(f"{conn.identity.username} 拆除 ({request.x}, {request.y})")
        return outcome

    # --- 城市生命週期 ---
    def create_world(self, owner: Identity, name: str, width: Optional[int] = None, height: Optional[int] = None,
                     conn: Optional[Connection] = None) -> WorldState:
        name = (name or "").strip()
        if not (config.CITY_NAME_MIN <= len(name) <= config.CITY_NAME_MAX):
            raise ValidationError("BAD_CITY_NAME", f"City name must be {config.CITY_NAME_MIN}-{config.CITY_NAME_MAX} characters")
        width = width or config.GRID_WIDTH
        height = height or config.GRID_HEIGHT
        if not (0 < width <= MAX_GRID_SIZE and 0 < height <= MAX_GRID_SIZE):
            raise ValidationError("BAD_GRID_SIZE", f"Grid must be between 1x1 and {MAX_GRID_SIZE}x{MAX_GRID_SIZE}")

        now = self.clock()
        grid = new_grid(width, height, config.WATER_RATIO, self.rng)
        world = WorldState(
            id=uuid.uuid4().hex,
            owner_id=owner.user_id,
            name=name,
            width=width,
            height=height,
            grid=grid,
            treasury=config.INITIAL_MONEY,
            resources=aggregate(grid, population=0),
            created_at=now,
            last_updated=now,
        )
        self.registry.add(world)
        self.registry.bind_owner(world)
        self.persistence.queue_world(world.id)

        if conn is not None:
            previous = conn.world_id
            self.hub.watch(conn, world.id)
            conn.push(world_message("cityCreated", world))
            if previous is not None:
                self.mark_idle(previous)
            self.hub.broadcast_all(player_event("playerJoined", owner.username, world.id, world.name), exclude=conn)
        self.events.log(f"{owner.username} 建立了城市 {name}")
        return world

    async def load_world(self, conn: Connection, world_id: str) -> WorldState:
        world = await self.registry.activate(world_id)
        if world.owner_id != conn.party_id and not world.is_public:
            raise ValidationError("ACCESS_DENIED", "City not found or access denied")

        if world.owner_id == conn.party_id:
            self.registry.bind_owner(world)

        previous = conn.world_id
        async with self.registry.lock(world_id):
            self.hub.watch(conn, world_id)
            conn.push(world_message("cityLoaded", world))
        self._idle_worlds.discard(world_id)
        if previous is not None and previous != world_id:
            self.mark_idle(previous)
        self.hub.broadcast_all(player_event("playerJoined", conn.identity.username, world.id, world.name), exclude=conn)
        self.events.log(f"{conn.identity.username} 進入城市 {world.name}")
        return world

    def leave(self, conn: Connection) -> Optional[str]:
        world_id = self.hub.disconnect(conn)
        self.hub.broadcast_all(player_event("playerLeft", conn.identity.username))
        if world_id is not None:
            self.mark_idle(world_id)
        return world_id

    # --- 閒置城市卸載 ---
    def mark_idle(self, world_id: str) -> bool:
        # 沒人在看的城市，下一次 tick 存檔後移出記憶體
        if self.hub.viewers(world_id) or world_id not in self.registry:
            return False
        self._idle_worlds.add(world_id)
        return True

    async def release_idle_worlds(self) -> List[str]:
        released = []
        for world_id in sorted(self._idle_worlds):
            self._idle_worlds.discard(world_id)
            if self.hub.viewers(world_id):
                continue
            try:
                done = await self.registry.deactivate(world_id, keep=lambda wid=world_id: bool(self.hub.viewers(wid)))
            except TransientInfrastructureError as err:
                logger.warning("world %s kept in memory: %s", world_id, err.message)
                self._idle_worlds.add(world_id)
                continue
            if done:
                released.append(world_id)
            elif world_id in self.registry and not self.hub.viewers(world_id):
                # 存檔期間又被改動，下次再試
                self._idle_worlds.add(world_id)
        return released
