from citysync.catalog import get_building_info
from citysync.errors import ValidationError
from citysync.grid import get_cell
from citysync.models import BuildingKind, Cell, Terrain, WorldState

# 客戶端副本與伺服器共用同一套建造規則


def check_placement(world: WorldState, x: int, y: int, kind_id: str) -> BuildingKind:
    cell = get_cell(world, x, y)
    if cell is None:
        raise ValidationError("OUT_OF_BOUNDS", f"({x}, {y}) is outside the {world.width}x{world.height} grid")
    if cell.terrain == Terrain.WATER:
        raise ValidationError("WATER_TILE", "Cannot build on water")
    if cell.occupied:
        raise ValidationError("CELL_OCCUPIED", f"({x}, {y}) is already occupied")
    kind = get_building_info(kind_id)
    if kind is None:
        raise ValidationError("UNKNOWN_BUILDING", f"Unknown building type: {kind_id}")
    if world.treasury < kind.cost:
        raise ValidationError("INSUFFICIENT_FUNDS", f"Not enough money (need ${kind.cost})")
    return kind


def check_removal(world: WorldState, x: int, y: int) -> Cell:
    cell = get_cell(world, x, y)
    if cell is None:
        raise ValidationError("OUT_OF_BOUNDS", f"({x}, {y}) is outside the {world.width}x{world.height} grid")
    if cell.terrain == Terrain.WATER:
        raise ValidationError("WATER_TILE", "Water cannot be cleared")
    if not cell.occupied:
        raise ValidationError("CELL_EMPTY", f"Nothing to remove at ({x}, {y})")
    return cell
