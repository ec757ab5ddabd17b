import logging
import random
import time
from typing import Any, Callable, Dict, Optional, Set
from pydantic import ValidationError as SchemaError

from citysync.connections import Connection, ConnectionHub
from citysync.errors import CityError
from citysync.event_log import EventLog
from citysync.messages import (
    CreateCityMessage,
    LoadCityMessage,
    MutationRequest,
    TradeCancelMessage,
    TradeOfferMessage,
    TradeResponseMessage,
    error_message,
    mutation_rejected,
)
from citysync.models import ActionKind, TradeOffer
from citysync.registry import WorldRegistry
from citysync.store import MemoryWorldStore, PersistenceQueue, WorldStore
from citysync.systems.authority import AuthoritySystem
from citysync.systems.simulation import SimulationSystem
from citysync.systems.trading import TradeSystem
import config

logger = logging.getLogger(__name__)


class CityEngine(AuthoritySystem, SimulationSystem, TradeSystem):
    def __init__(self, store: Optional[WorldStore] = None, clock: Callable[[], float] = time.time,
                 rng: Optional[random.Random] = None, tick_interval: float = config.TICK_INTERVAL,
                 simulation_speed: float = config.SIMULATION_SPEED):
        self.store = store if store is not None else MemoryWorldStore()
        self.registry = WorldRegistry(self.store)
        self.hub = ConnectionHub()
        self.persistence = PersistenceQueue(self.store)
        self.events = EventLog()
        self.clock = clock
        self.rng = rng or random.Random()

        # 模擬設定
        self.tick_interval = tick_interval
        self.simulation_speed = simulation_speed
        self.paused = False
        self.last_tick = clock()

        # 交易索引 (持久化的紀錄在 store)
        self.offers: Dict[str, TradeOffer] = {}
        self.trade_stats: Dict[str, int] = {}
        self._closed_at: Dict[str, float] = {}

        # 最後一位觀看者離開的城市，等下一次 tick 卸載
        self._idle_worlds: Set[str] = set()

    # --- WebSocket 訊息分派 ---
    async def dispatch(self, conn: Connection, msg: Dict[str, Any]):
        kind = msg.get("type")
        try:
            if kind == "createCity":
                data = CreateCityMessage(**msg)
                self.create_world(conn.identity, data.name, data.width, data.height, conn=conn)
            elif kind == "loadCity":
                data = LoadCityMessage(**msg)
                await self.load_world(conn, data.city_id)
            elif kind == "placeBuilding":
                await self.handle_mutation(conn, ActionKind.PLACE, MutationRequest(**msg))
            elif kind == "removeBuilding":
                await self.handle_mutation(conn, ActionKind.REMOVE, MutationRequest(**msg))
            elif kind == "tradeOffer":
                data = TradeOfferMessage(**msg)
                await self.create_offer(conn.identity, data.to, data.offer.money, data.request.money, data.message)
            elif kind == "tradeResponse":
                data = TradeResponseMessage(**msg)
                if data.accept:
                    await self.accept_offer(conn.identity, data.trade_id)
                else:
                    await self.reject_offer(conn.identity, data.trade_id, data.reason)
            elif kind == "tradeCancel":
                data = TradeCancelMessage(**msg)
                await self.cancel_offer(conn.identity, data.trade_id)
            elif kind == "timeSyncRequest":
                conn.push({"type": "timeSync", "server_time": self.clock()})
            else:
                conn.push(error_message("UNKNOWN_MESSAGE", f"Unknown message type: {kind}"))
        except SchemaError as err:
            action_id = msg.get("action_id")
            if kind in ("placeBuilding", "removeBuilding") and action_id:
                # 有 action_id 就回拒絕，讓客戶端還原那一格
                action = "place" if kind == "placeBuilding" else "remove"
                conn.push(mutation_rejected(action, action_id, msg.get("x"), msg.get("y"), "BAD_MESSAGE", str(err)))
            else:
                conn.push(error_message("BAD_MESSAGE", str(err), ref=kind))
        except CityError as err:
            conn.push(error_message(err.code, err.message, err.category, ref=kind))
