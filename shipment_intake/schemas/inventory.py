from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class StockLevelOut(BaseModel):
    item_id: str
    current_stock: int


class StockReceiptCreate(BaseModel):
    quantity: int = Field(gt=0)
    note: str = ""


class StockAuditOut(BaseModel):
    item_id: str
    stored_stock: int
    derived_stock: int
    consistent: bool


class StockMovementOut(BaseModel):
    id: int
    item_id: str
    reservation_id: Optional[str] = None
    delta: int
    reason: str
    balance_after: int
    actor_id: str
    correlation_id: str
    note: str
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_validator("reason", mode="before")
    @classmethod
    def reason_value(cls, v):
        return v.value if hasattr(v, "value") else v
