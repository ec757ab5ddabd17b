"""Persistence for worlds and trade offers.

The core only needs durable storage: ``load_world``/``save_world`` plus the
trade record equivalents. Writes go through :class:`PersistenceQueue`, which
coalesces repeated writes to the same record and re-queues failed ones.
"""

import asyncio
import json
import logging
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Protocol, Set

from citysync.errors import TransientInfrastructureError
from citysync.models import TradeOffer, WorldState

logger = logging.getLogger(__name__)


class WorldStore(Protocol):
    def load_world(self, world_id: str) -> Optional[WorldState]: ...
    def save_world(self, world: WorldState) -> None: ...
    def load_trade(self, trade_id: str) -> Optional[TradeOffer]: ...
    def save_trade(self, offer: TradeOffer) -> None: ...
    def list_trades(self) -> List[TradeOffer]: ...


class MemoryWorldStore:
    """Keeps serialized copies in dicts. Used by tests and local runs."""

    def __init__(self):
        self.worlds: Dict[str, str] = {}
        self.trades: Dict[str, str] = {}
        self.world_writes = 0
        self.trade_writes = 0

    def load_world(self, world_id: str) -> Optional[WorldState]:
        raw = self.worlds.get(world_id)
        return WorldState.model_validate_json(raw) if raw else None

    def save_world(self, world: WorldState) -> None:
        self.worlds[world.id] = world.model_dump_json()
        self.world_writes += 1

    def load_trade(self, trade_id: str) -> Optional[TradeOffer]:
        raw = self.trades.get(trade_id)
        return TradeOffer.model_validate_json(raw) if raw else None

    def save_trade(self, offer: TradeOffer) -> None:
        self.trades[offer.id] = offer.model_dump_json()
        self.trade_writes += 1

    def list_trades(self) -> List[TradeOffer]:
        return [TradeOffer.model_validate_json(raw) for raw in self.trades.values()]


class JsonWorldStore:
    """One JSON file per world / trade under a data directory."""

    def __init__(self, root_dir: Path):
        self._root = Path(root_dir)
        self._lock = Lock()
        (self._root / "worlds").mkdir(parents=True, exist_ok=True)
        (self._root / "trades").mkdir(parents=True, exist_ok=True)

    def load_world(self, world_id: str) -> Optional[WorldState]:
        raw = self._read(self._path("worlds", world_id))
        return WorldState.model_validate(raw) if raw is not None else None

    def save_world(self, world: WorldState) -> None:
        self._write(self._path("worlds", world.id), world.model_dump(mode="json"))

    def load_trade(self, trade_id: str) -> Optional[TradeOffer]:
        raw = self._read(self._path("trades", trade_id))
        return TradeOffer.model_validate(raw) if raw is not None else None

    def save_trade(self, offer: TradeOffer) -> None:
        self._write(self._path("trades", offer.id), offer.model_dump(mode="json"))

    def list_trades(self) -> List[TradeOffer]:
        offers = []
        for path in sorted((self._root / "trades").glob("*.json")):
            raw = self._read(path)
            if raw is not None:
                offers.append(TradeOffer.model_validate(raw))
        return offers

    def _path(self, kind: str, record_id: str) -> Path:
        return self._root / kind / f"{_sanitize_segment(record_id)}.json"

    def _read(self, path: Path):
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def _write(self, path: Path, payload) -> None:
        tmp = path.with_suffix(".tmp")
        try:
            with self._lock:
                with tmp.open("w", encoding="utf-8") as handle:
                    json.dump(payload, handle, ensure_ascii=False)
                tmp.replace(path)
        except OSError as err:
            raise TransientInfrastructureError("PERSISTENCE_FAILED", f"could not write {path.name}: {err}") from err


def _sanitize_segment(segment: str) -> str:
    return "".join(ch for ch in segment if ch.isalnum() or ch in {"-", "_"}) or "default"


class PersistenceQueue:
    """Fire-and-forget, coalesced writes.

    Queuing the same world several times before a flush results in a single
    write. Failed writes are put back on the queue for the next flush.
    """

    def __init__(self, store: WorldStore):
        self.store = store
        self._worlds: Set[str] = set()
        self._trades: Dict[str, TradeOffer] = {}

    def queue_world(self, world_id: str):
        self._worlds.add(world_id)

    def queue_trade(self, offer: TradeOffer):
        self._trades[offer.id] = offer.model_copy(deep=True)

    def __len__(self) -> int:
        return len(self._worlds) + len(self._trades)

    def is_queued(self, world_id: str) -> bool:
        return world_id in self._worlds

    async def flush(self, registry) -> int:
        if not self._worlds and not self._trades:
            return 0

        world_ids = sorted(self._worlds)
        self._worlds.clear()
        trades = list(self._trades.values())
        self._trades.clear()

        # 先同步拷貝，之後的 await 不會讀到改到一半的狀態
        snapshots = []
        for world_id in world_ids:
            world = registry.get(world_id)
            if world is not None:
                snapshots.append(world.model_copy(deep=True))

        written = 0
        for snapshot in snapshots:
            try:
                await asyncio.to_thread(self.store.save_world, snapshot)
                written += 1
            except (TransientInfrastructureError, OSError) as err:
                logger.warning("save of world %s failed, re-queued: %s", snapshot.id, err)
                self._worlds.add(snapshot.id)

        for offer in trades:
            try:
                await asyncio.to_thread(self.store.save_trade, offer)
                written += 1
            except (TransientInfrastructureError, OSError) as err:
                logger.warning("save of trade %s failed, re-queued: %s", offer.id, err)
                # 若期間已有較新的版本排入，保留新的
                self._trades.setdefault(offer.id, offer)

        return written
