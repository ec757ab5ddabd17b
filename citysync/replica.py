import logging
import time
import uuid
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from citysync.aggregate import aggregate
from citysync.errors import CityError, ConflictError, Rejection, TransientInfrastructureError
from citysync.grid import clear_building, get_cell, restore_cell, set_building
from citysync.messages import ResourceDelta
from citysync.models import ActionKind, PendingAction, WorldState
from citysync.rules import check_placement, check_removal
import config

logger = logging.getLogger(__name__)

ActionResult = Tuple[bool, Union[str, Rejection]]


class ClientReplica:
    """Local, optimistic copy of one world.

    Mutations land on the local grid immediately and are recorded as pending
    actions (the undo log) until the server confirms or rejects them.
    """

    def __init__(self, world: WorldState, emit: Optional[Callable[[Dict[str, Any]], None]] = None,
                 clock: Callable[[], float] = time.time, timeout: float = config.PENDING_TIMEOUT_SECONDS):
        self.world = world.model_copy(deep=True)
        self.emit = emit or (lambda msg: None)
        self.clock = clock
        self.timeout = timeout
        self.pending: "OrderedDict[str, PendingAction]" = OrderedDict()
        self._by_cell: Dict[Tuple[int, int], str] = {}
        self._refresh()

    # --- 樂觀操作 ---
    def place_building(self, x: int, y: int, kind_id: str) -> ActionResult:
        if (x, y) in self._by_cell:
            return False, ConflictError("ACTION_IN_FLIGHT", f"({x}, {y}) already has a pending action").to_rejection()
        try:
            kind = check_placement(self.world, x, y, kind_id)
        except CityError as err:
            return False, err.to_rejection()

        cell = get_cell(self.world, x, y)
        action = self._record(ActionKind.PLACE, x, y, cell, building=kind.id, cost=kind.cost)
        set_building(cell, kind.id)
        self.world.treasury -= kind.cost
        self._refresh()

        self.emit({
            "type": "placeBuilding",
            "action_id": action.action_id,
            "x": x,
            "y": y,
            "building_type": kind.id,
            "cost": kind.cost,
            "timestamp": action.issued_at,
        })
        return True, action.action_id

    def remove_building(self, x: int, y: int) -> ActionResult:
        if (x, y) in self._by_cell:
            return False, ConflictError("ACTION_IN_FLIGHT", f"({x}, {y}) already has a pending action").to_rejection()
        try:
            cell = check_removal(self.world, x, y)
        except CityError as err:
            return False, err.to_rejection()

        action = self._record(ActionKind.REMOVE, x, y, cell)
        clear_building(cell)
        self._refresh()

        self.emit({
            "type": "removeBuilding",
            "action_id": action.action_id,
            "x": x,
            "y": y,
            "timestamp": action.issued_at,
        })
        return True, action.action_id

    # --- 伺服器回覆 ---
    def confirm(self, action_id: str) -> bool:
        action = self.pending.pop(action_id, None)
        if action is None:
            return False
        self._by_cell.pop((action.x, action.y), None)
        return True

    def reject(self, action_id: str, reason: Optional[str] = None) -> bool:
        action = self.pending.pop(action_id, None)
        if action is None:
            return False
        self._by_cell.pop((action.x, action.y), None)

        # 只還原這一格，其他格子的變更不受影響
        cell = get_cell(self.world, action.x, action.y)
        if cell is not None:
            restore_cell(cell, action.cell_before)
        if action.kind == ActionKind.PLACE:
            self.world.treasury += action.cost
        self._refresh()

        logger.info("rolled back %s %s at (%s, %s): %s", action.kind.value, action_id, action.x, action.y, reason)
        return True

    def apply_remote_mutation(self, x: int, y: int, building_type: Optional[str]) -> bool:
        cell = get_cell(self.world, x, y)
        if cell is None:
            return False
        if building_type:
            set_building(cell, building_type)
        else:
            clear_building(cell)
        # 這格還有自己的動作在等回覆：之後若被拒絕，要還原成伺服器的結果
        pending_id = self._by_cell.get((x, y))
        if pending_id is not None:
            self.pending[pending_id].cell_before = cell.model_copy()
        self._refresh()
        return True

    def apply_authoritative_snapshot(self, delta: Union[ResourceDelta, Dict[str, Any]]):
        if isinstance(delta, dict):
            delta = ResourceDelta(**delta)
        # 仍在等待回覆的建造費用要繼續扣著，否則之後的退款會重複
        in_flight = sum(a.cost for a in self.pending.values() if a.kind == ActionKind.PLACE)
        self.world.treasury = delta.money - in_flight
        self.world.population = delta.population
        self.world.resources = self.world.resources.model_copy(update={
            "population": delta.population,
            "happiness": delta.happiness,
            "power": delta.power,
            "water": delta.water,
            "jobs": delta.jobs,
        })

    # --- 逾時與重連 ---
    def expire_overdue(self, now: Optional[float] = None) -> List[Tuple[str, Rejection]]:
        now = self.clock() if now is None else now
        overdue = [a.action_id for a in self.pending.values() if now - a.issued_at >= self.timeout]
        expired = []
        for action_id in overdue:
            self.reject(action_id, "TIMEOUT")
            err = TransientInfrastructureError("TIMEOUT", "No response from server, change was undone")
            expired.append((action_id, err.to_rejection()))
        if expired:
            logger.warning("watchdog rolled back %d pending action(s)", len(expired))
        return expired

    def reload(self, world: WorldState) -> List[str]:
        dropped = list(self.pending.keys())
        self.pending.clear()
        self._by_cell.clear()
        self.world = world.model_copy(deep=True)
        return dropped

    def handle_message(self, msg: Dict[str, Any]) -> bool:
        kind = msg.get("type")
        if kind in ("buildingConfirmed", "removalConfirmed"):
            return self.confirm(msg["action_id"])
        if kind in ("buildingRejected", "removalRejected"):
            return self.reject(msg["action_id"], msg.get("reason"))
        if kind in ("buildingPlaced", "buildingRemoved"):
            if msg.get("world_id") not in (None, self.world.id):
                return False
            return self.apply_remote_mutation(msg["x"], msg["y"], msg.get("building_type"))
        if kind == "simulationUpdate":
            if msg.get("world_id") != self.world.id:
                return False
            self.apply_authoritative_snapshot(msg["resources"])
            return True
        if kind in ("cityLoaded", "cityCreated"):
            self.reload(WorldState(**msg["city"]))
            return True
        return False

    # --- 內部 ---
    def _record(self, kind: ActionKind, x: int, y: int, cell, building: Optional[str] = None, cost: int = 0) -> PendingAction:
        action = PendingAction(
            action_id=uuid.uuid4().hex,
            kind=kind,
            x=x,
            y=y,
            building=building,
            cost=cost,
            cell_before=cell.model_copy(),
            issued_at=self.clock(),
        )
        self.pending[action.action_id] = action
        self._by_cell[(x, y)] = action.action_id
        return action

    def _refresh(self):
        self.world.resources = aggregate(self.world.grid, population=self.world.population)

    @property
    def treasury(self) -> float:
        return self.world.treasury

    @property
    def resources(self):
        return self.world.resources
