from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class Terrain(str, Enum):
    GRASS = "grass"
    WATER = "water"


class ActionKind(str, Enum):
    PLACE = "place"
    REMOVE = "remove"


class TradeStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELED = "canceled"


class Identity(BaseModel):
    user_id: str
    username: str


class BuildingKind(BaseModel):
    # 建築目錄：啟動時載入，執行期間不可修改
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: str       # residential, commercial, industrial, utility, special, ...
    cost: int
    upkeep: int = 0
    residents: int = 0
    workers: int = 0
    power: int = 0      # 正數 = 發電，負數 = 耗電
    water: int = 0
    happiness: int = 0
    description: str = ""


class Cell(BaseModel):
    x: int
    y: int
    terrain: Terrain = Terrain.GRASS
    building: Optional[str] = None   # BuildingKind.id
    occupied: bool = False


class ResourceSnapshot(BaseModel):
    population: float = 0
    residential_capacity: int = 0
    jobs: int = 0
    employed: float = 0
    unemployed: float = 0
    power: int = 0
    power_production: int = 0
    power_consumption: int = 0
    power_deficit: int = 0
    water: int = 0
    water_production: int = 0
    water_consumption: int = 0
    water_deficit: int = 0
    happiness: float = 50
    income: float = 0
    expenses: float = 0
    net_income: float = 0
    buildings: Dict[str, int] = {}


class WorldState(BaseModel):
    id: str
    owner_id: str
    name: str
    width: int
    height: int
    grid: List[List[Cell]]
    treasury: float
    population: float = 0
    resources: ResourceSnapshot = ResourceSnapshot()
    trading_enabled: bool = True
    is_public: bool = True
    created_at: float = 0.0
    last_updated: float = 0.0

    def touch(self, now: float):
        # lastUpdated 只能往前走
        self.last_updated = max(self.last_updated, now)


class PendingAction(BaseModel):
    action_id: str
    kind: ActionKind
    x: int
    y: int
    building: Optional[str] = None
    cost: int = 0
    cell_before: Cell
    issued_at: float


class TradeTerms(BaseModel):
    money: float = Field(default=0, ge=0)


class TradeOffer(BaseModel):
    id: str
    from_party: str
    to_party: str
    from_world: str
    to_world: str
    from_username: str = ""
    offer: TradeTerms = TradeTerms()
    request: TradeTerms = TradeTerms()
    status: TradeStatus = TradeStatus.PENDING
    created_at: float
    expires_at: float
    completed_at: Optional[float] = None
    message: Optional[str] = None

    def is_actionable(self, now: float) -> bool:
        return self.status == TradeStatus.PENDING and now < self.expires_at
