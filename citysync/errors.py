from typing import Optional
from pydantic import BaseModel


class Rejection(BaseModel):
    category: str   # "validation" | "conflict" | "transient"
    code: str
    message: str = ""


class CityError(Exception):
    category = "error"

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code
        self.message = message or code

    @property
    def http_status(self) -> int:
        return 400

    def to_rejection(self) -> Rejection:
        return Rejection(category=self.category, code=self.code, message=self.message)


class ValidationError(CityError):
    """Bad input from the originating party. Never retried."""
    category = "validation"

    @property
    def http_status(self) -> int:
        if self.code.endswith("NOT_FOUND") or self.code == "WORLD_NOT_ACTIVE":
            return 404
        if self.code == "ACCESS_DENIED":
            return 403
        return 400


class ConflictError(CityError):
    """Request raced with another change (same cell in flight, insolvent party, stale offer)."""
    category = "conflict"

    @property
    def http_status(self) -> int:
        return 409


class TransientInfrastructureError(CityError):
    """Persistence or transport failure, recovered by re-queue or reload."""
    category = "transient"

    @property
    def http_status(self) -> int:
        return 503
