import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
from fastapi import FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import config
from citysync.catalog import BUILDINGS, get_building_categories, get_buildings_by_category
from citysync.connections import Connection
from citysync.engine import CityEngine
from citysync.errors import CityError, ValidationError
from citysync.messages import error_message, offers_payload, resource_delta
from citysync.models import Identity
from citysync.store import JsonWorldStore

logger = logging.getLogger("uvicorn.error")

# --- 全域引擎 ---
engine = CityEngine(store=JsonWorldStore(Path(config.DATA_DIR)))


@asynccontextmanager
async def lifespan(app: FastAPI):
    stop = asyncio.Event()
    loop_task = asyncio.create_task(engine.run(stop))
    yield
    stop.set()
    await loop_task
    await engine.persistence.flush(engine.registry)


app = FastAPI(title="CitySync", lifespan=lifespan)


# --- API Models ---
class TradeCreateModel(BaseModel): offered_to: str; offer_money: float = 0; request_money: float = 0; message: Optional[str] = None
class TradeRejectModel(BaseModel): reason: Optional[str] = None
class SpeedModel(BaseModel): speed: float


# --- 身分 (由外部驗證層提供，這裡直接信任) ---
def get_identity(user_id: Optional[str], username: Optional[str]) -> Identity:
    if not user_id:
        raise ValidationError("ACCESS_DENIED", "Missing identity")
    return Identity(user_id=user_id, username=username or user_id)


@app.exception_handler(CityError)
async def city_error_handler(request: Request, err: CityError):
    return JSONResponse(status_code=err.http_status, content={"status": "error", "code": err.code, "message": err.message})


@app.get("/")
async def home():
    return {
        "status": "running",
        "active_cities": len(engine.registry),
        "connections": len(engine.hub),
        "paused": engine.paused,
        "simulation_speed": engine.simulation_speed,
    }


@app.get("/api/buildings")
async def list_buildings():
    return {
        "categories": get_building_categories(),
        "buildings": {k: b.model_dump() for k, b in BUILDINGS.items()},
        "by_category": {c: [b.id for b in get_buildings_by_category(c)] for c in get_building_categories()},
    }


@app.get("/api/state")
async def get_state(world_id: Optional[str] = None):
    response = {
        "timestamp": engine.clock(),
        "simulation_speed": engine.simulation_speed,
        "cities": [
            {
                "id": w.id,
                "name": w.name,
                "owner_id": w.owner_id,
                "resources": resource_delta(w).model_dump(),
                "degraded": engine.registry.is_degraded(w.id),
            } for w in (engine.registry.get(wid) for wid in engine.registry.active_ids()) if w is not None
        ],
    }
    if world_id:
        world = engine.registry.require(world_id)
        response["city"] = world.model_dump(mode="json")
    return response


# --- 交易 ---
@app.get("/api/trades")
async def get_user_trades(status: str = "all", x_user_id: Optional[str] = Header(None), x_username: Optional[str] = Header(None)):
    party = get_identity(x_user_id, x_username)
    trades = await engine.list_offers(party, status)
    return {"success": True, "count": len(trades), "trades": offers_payload(trades)}


@app.get("/api/trades/{trade_id}")
async def get_trade(trade_id: str, x_user_id: Optional[str] = Header(None), x_username: Optional[str] = Header(None)):
    party = get_identity(x_user_id, x_username)
    trade = await engine.get_offer(party, trade_id)
    return {"success": True, "trade": trade.model_dump(mode="json")}


@app.post("/api/trades", status_code=201)
async def create_trade(data: TradeCreateModel, x_user_id: Optional[str] = Header(None), x_username: Optional[str] = Header(None)):
    party = get_identity(x_user_id, x_username)
    trade = await engine.create_offer(party, data.offered_to, data.offer_money, data.request_money, data.message)
    return {"success": True, "trade": trade.model_dump(mode="json")}


@app.post("/api/trades/{trade_id}/accept")
async def accept_trade(trade_id: str, x_user_id: Optional[str] = Header(None), x_username: Optional[str] = Header(None)):
    party = get_identity(x_user_id, x_username)
    trade = await engine.accept_offer(party, trade_id)
    return {"success": True, "message": "Trade completed successfully", "trade": trade.model_dump(mode="json")}


@app.post("/api/trades/{trade_id}/reject")
async def reject_trade(trade_id: str, data: Optional[TradeRejectModel] = None, x_user_id: Optional[str] = Header(None), x_username: Optional[str] = Header(None)):
    party = get_identity(x_user_id, x_username)
    trade = await engine.reject_offer(party, trade_id, data.reason if data else None)
    return {"success": True, "message": "Trade rejected", "trade": trade.model_dump(mode="json")}


@app.post("/api/trades/{trade_id}/cancel")
async def cancel_trade(trade_id: str, x_user_id: Optional[str] = Header(None), x_username: Optional[str] = Header(None)):
    party = get_identity(x_user_id, x_username)
    trade = await engine.cancel_offer(party, trade_id)
    return {"success": True, "message": "Trade canceled", "trade": trade.model_dump(mode="json")}


# --- Admin 專用 ---
@app.get("/admin/data")
async def get_admin_data():
    cities = []
    for wid in engine.registry.active_ids():
        w = engine.registry.get(wid)
        if w is None:
            continue
        cities.append({
            "id": w.id,
            "name": w.name,
            "owner_id": w.owner_id,
            "money": w.treasury,
            "population": w.population,
            "buildings": w.resources.buildings.get("total", 0),
            "degraded": engine.registry.degraded.get(wid),
            "online": engine.hub.is_online(w.owner_id),
        })
    # 依資金排序 (有錢的排前面)
    cities.sort(key=lambda c: c["money"], reverse=True)

    return {
        "paused": engine.paused,
        "simulation_speed": engine.simulation_speed,
        "cities": cities,
        "pending_trades": sum(1 for o in engine.offers.values() if o.status.value == "pending"),
        "trade_stats": engine.trade_stats,
        "logs": engine.events.entries,
    }


@app.post("/admin/pause")
async def pause_simulation():
    engine.pause()
    return {"status": "success", "paused": True}


@app.post("/admin/resume")
async def resume_simulation():
    engine.resume()
    return {"status": "success", "paused": False}


@app.post("/admin/speed")
async def set_simulation_speed(data: SpeedModel):
    engine.set_speed(data.speed)
    return {"status": "success", "simulation_speed": engine.simulation_speed}


@app.post("/admin/revive/{world_id}")
async def revive_world(world_id: str):
    if not engine.revive_world(world_id):
        raise ValidationError("WORLD_NOT_FOUND", f"City {world_id} is not degraded")
    return {"status": "success", "world_id": world_id}


# --- 即時連線 ---
@app.websocket("/ws")
async def game_socket(websocket: WebSocket, user_id: Optional[str] = None, username: Optional[str] = None):
    if not user_id:
        await websocket.close(code=4401)
        return
    await websocket.accept()

    conn = engine.hub.connect(Connection(Identity(user_id=user_id, username=username or user_id)))
    writer = asyncio.create_task(conn.pump(websocket.send_json))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except ValueError:
                conn.push(error_message("BAD_MESSAGE", "Message is not valid JSON"))
                continue
            if not isinstance(msg, dict):
                conn.push(error_message("BAD_MESSAGE", "Message must be a JSON object"))
                continue
            await engine.dispatch(conn, msg)
    except WebSocketDisconnect:
        pass
    finally:
        engine.leave(conn)
        writer.cancel()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
