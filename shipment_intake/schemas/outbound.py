import json
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, field_validator

from shipment_intake.models.outbound import OutboundStatus


class OutboundItemOut(BaseModel):
    id: str
    inventory_item_id: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal

    model_config = {"from_attributes": True}


class OutboundRecordOut(BaseModel):
    id: str
    record_number: str
    customer_id: str
    status: str
    items: list[OutboundItemOut]
    total_amount: Decimal
    shipment_date: Optional[date] = None
    created_by: str
    extracted_data_id: str
    document_hash: str
    review_task_id: Optional[str] = None
    status_history: list[dict] = []
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v):
        return v.value if hasattr(v, "value") else v

    @field_validator("status_history", mode="before")
    @classmethod
    def parse_history(cls, v):
        if isinstance(v, str):
            return json.loads(v) if v else []
        return v or []


class OutboundStatusUpdate(BaseModel):
    status: OutboundStatus
    note: str = ""
