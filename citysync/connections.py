import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from citysync.models import Identity

logger = logging.getLogger(__name__)


class Connection:
    """One client channel with a FIFO outbox.

    Messages are queued synchronously (so they can be pushed while a world
    lock is held) and written to the socket by :meth:`pump` in order.
    """

    def __init__(self, identity: Identity, conn_id: Optional[str] = None):
        self.id = conn_id or uuid.uuid4().hex[:8]
        self.identity = identity
        self.world_id: Optional[str] = None
        self.outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self.closed = False

    @property
    def party_id(self) -> str:
        return self.identity.user_id

    def push(self, msg: Dict[str, Any]):
        if self.closed:
            return
        self.outbox.put_nowait(msg)

    def drain(self) -> List[Dict[str, Any]]:
        msgs = []
        while not self.outbox.empty():
            msgs.append(self.outbox.get_nowait())
        return msgs

    async def pump(self, send: Callable[[Dict[str, Any]], Awaitable[None]]):
        while True:
            msg = await self.outbox.get()
            try:
                await send(msg)
            except Exception as err:
                # socket 已斷：停止寫出，之後的訊息直接丟掉
                logger.info("connection %s stopped sending: %s", self.id, err)
                self.closed = True
                return


class ConnectionHub:
    """Indexes live connections by party and by the world they view."""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._by_party: Dict[str, Set[str]] = {}
        self._viewers: Dict[str, Set[str]] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def connect(self, conn: Connection) -> Connection:
        self._connections[conn.id] = conn
        self._by_party.setdefault(conn.party_id, set()).add(conn.id)
        logger.info("player connected: %s (user: %s)", conn.id, conn.identity.username)
        return conn

    def disconnect(self, conn: Connection) -> Optional[str]:
        conn.closed = True
        self._connections.pop(conn.id, None)
        party = self._by_party.get(conn.party_id)
        if party is not None:
            party.discard(conn.id)
            if not party:
                del self._by_party[conn.party_id]
        world_id = conn.world_id
        self._leave(conn)
        logger.info("player disconnected: %s", conn.id)
        return world_id

    def watch(self, conn: Connection, world_id: str):
        self._leave(conn)
        conn.world_id = world_id
        self._viewers.setdefault(world_id, set()).add(conn.id)

    def viewers(self, world_id: str) -> List[Connection]:
        ids = self._viewers.get(world_id, set())
        return [self._connections[cid] for cid in sorted(ids) if cid in self._connections]

    def party_connections(self, party_id: str) -> List[Connection]:
        ids = self._by_party.get(party_id, set())
        return [self._connections[cid] for cid in sorted(ids) if cid in self._connections]

    def is_online(self, party_id: str) -> bool:
        return bool(self._by_party.get(party_id))

    def send_to_party(self, party_id: str, msg: Dict[str, Any]) -> int:
        conns = self.party_connections(party_id)
        for conn in conns:
            conn.push(msg)
        return len(conns)

    def broadcast_world(self, world_id: str, msg: Dict[str, Any], exclude: Optional[Connection] = None) -> int:
        sent = 0
        for conn in self.viewers(world_id):
            if exclude is not None and conn.id == exclude.id:
                continue
            conn.push(msg)
            sent += 1
        return sent

    def broadcast_all(self, msg: Dict[str, Any], exclude: Optional[Connection] = None) -> int:
        sent = 0
        for conn in list(self._connections.values()):
            if exclude is not None and conn.id == exclude.id:
                continue
            conn.push(msg)
            sent += 1
        return sent

    def _leave(self, conn: Connection):
        if conn.world_id is None:
            return
        viewers = self._viewers.get(conn.world_id)
        if viewers is not None:
            viewers.discard(conn.id)
            if not viewers:
                del self._viewers[conn.world_id]
        conn.world_id = None
