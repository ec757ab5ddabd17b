from typing import Dict, List, Optional
from citysync.models import BuildingKind
import config

# 建築目錄 (客戶端與伺服器共用的唯讀查表)
BUILDINGS: Dict[str, BuildingKind] = {
    kind_id: BuildingKind(id=kind_id, **entry) for kind_id, entry in config.BUILDINGS.items()
}

CATEGORIES = ["residential", "commercial", "industrial", "utility", "special", "transportation", "decorative"]


def get_building_info(kind_id: Optional[str]) -> Optional[BuildingKind]:
    if not kind_id:
        return None
    return BUILDINGS.get(kind_id)


def get_buildings_by_category(category: str) -> List[BuildingKind]:
    return [b for b in BUILDINGS.values() if b.category == category]


def get_building_categories() -> List[str]:
    seen = []
    for b in BUILDINGS.values():
        if b.category not in seen:
            seen.append(b.category)
    return seen
