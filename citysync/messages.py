from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from citysync.models import ResourceSnapshot, TradeOffer, TradeTerms, WorldState

# --- 客戶端送上來的訊息 ---
class CreateCityMessage(BaseModel): name: str; width: Optional[int] = None; height: Optional[int] = None
class LoadCityMessage(BaseModel): city_id: str
class MutationRequest(BaseModel): action_id: str; x: int; y: int; building_type: Optional[str] = None
class TradeOfferMessage(BaseModel): to: str; offer: TradeTerms = TradeTerms(); request: TradeTerms = TradeTerms(); message: Optional[str] = None
class TradeResponseMessage(BaseModel): trade_id: str; accept: bool; reason: Optional[str] = None
class TradeCancelMessage(BaseModel): trade_id: str


class ResourceDelta(BaseModel):
    # 每個 tick 廣播的最小集合，不含地圖
    money: float
    population: float
    happiness: float
    power: int
    water: int
    jobs: int


def resource_delta(world: WorldState) -> ResourceDelta:
    res: ResourceSnapshot = world.resources
    return ResourceDelta(
        money=world.treasury,
        population=world.population,
        happiness=res.happiness,
        power=res.power,
        water=res.water,
        jobs=res.jobs,
    )


# --- 伺服器送出的訊息 ---
def mutation_confirmed(kind: str, action_id: str, x: int, y: int, building_type: Optional[str] = None, cost: int = 0) -> Dict[str, Any]:
    msg = {"type": "buildingConfirmed" if kind == "place" else "removalConfirmed", "action_id": action_id, "x": x, "y": y}
    if kind == "place":
        msg["building_type"] = building_type
        msg["cost"] = cost
    return msg


def mutation_rejected(kind: str, action_id: str, x: int, y: int, code: str, message: str = "") -> Dict[str, Any]:
    return {
        "type": "buildingRejected" if kind == "place" else "removalRejected",
        "action_id": action_id,
        "x": x,
        "y": y,
        "reason": code,
        "message": message,
    }


def remote_mutation(world_id: str, x: int, y: int, building_type: Optional[str]) -> Dict[str, Any]:
    # 匿名化：只有座標與結果，不帶 action_id 與玩家
    return {
        "type": "buildingPlaced" if building_type else "buildingRemoved",
        "world_id": world_id,
        "x": x,
        "y": y,
        "building_type": building_type,
    }


def simulation_update(world_id: str, delta: ResourceDelta, now: float, speed: float) -> Dict[str, Any]:
    return {
        "type": "simulationUpdate",
        "timestamp": now,
        "simulation_speed": speed,
        "world_id": world_id,
        "resources": delta.model_dump(),
    }


def world_message(kind: str, world: WorldState) -> Dict[str, Any]:
    return {"type": kind, "city": world.model_dump(mode="json")}


def trade_event(kind: str, offer: TradeOffer, **extra) -> Dict[str, Any]:
    msg = {"type": kind, "trade_id": offer.id, "trade": offer.model_dump(mode="json")}
    msg.update(extra)
    return msg


def player_event(kind: str, username: str, world_id: Optional[str] = None, world_name: Optional[str] = None) -> Dict[str, Any]:
    return {"type": kind, "username": username, "world_id": world_id, "world_name": world_name}


def error_message(code: str, message: str, category: str = "validation", ref: Optional[str] = None) -> Dict[str, Any]:
    msg = {"type": "error", "category": category, "code": code, "message": message}
    if ref:
        msg["ref"] = ref
    return msg


def offers_payload(offers: List[TradeOffer]) -> List[Dict[str, Any]]:
    return [o.model_dump(mode="json") for o in offers]
