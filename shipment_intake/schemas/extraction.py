from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator


class ExtractedItem(BaseModel):
    description_text: str = ""
    quantity_guess: int | None = None
    unit_price_guess: Decimal | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    inventory_item_id: str | None = None

    model_config = {"frozen": True, "from_attributes": True}


class ExtractedShipmentData(BaseModel):
    """Immutable structured evidence produced by the pipeline (or a reviewer).

    ``id`` is set once the version has been persisted.
    """

    id: str | None = None
    raw_text: str = ""
    customer_name_guess: str | None = None
    customer_name_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    shipment_date_guess: date | None = None
    shipment_date_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    items: tuple[ExtractedItem, ...] = ()
    total_amount_guess: Decimal | None = None
    total_amount_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    customer_id: str | None = None

    model_config = {"frozen": True, "from_attributes": True}


class CorrectedItem(BaseModel):
    inventory_item_id: str | None = None
    description: str = ""
    quantity: int = Field(gt=0)
    unit_price: Decimal | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def needs_item_reference(self):
        if not self.inventory_item_id and not self.description.strip():
            raise ValueError("Each item needs inventory_item_id or description")
        return self


class CorrectedShipmentData(BaseModel):
    """Reviewer-entered shipment data; supersedes the pipeline's confidence gate."""

    customer_id: str | None = None
    customer_name: str | None = None
    shipment_date: date | None = None
    total_amount: Decimal | None = Field(default=None, ge=0)
    items: list[CorrectedItem] = Field(min_length=1)
    note: str = ""

    @model_validator(mode="after")
    def needs_customer_reference(self):
        if not self.customer_id and not (self.customer_name or "").strip():
            raise ValueError("customer_id or customer_name is required")
        return self

    def to_extracted(self, raw_text: str = "") -> ExtractedShipmentData:
        items = tuple(
            ExtractedItem(
                description_text=i.description,
                quantity_guess=i.quantity,
                unit_price_guess=i.unit_price,
                confidence=1.0,
                inventory_item_id=i.inventory_item_id,
            )
            for i in self.items
        )
        return ExtractedShipmentData(
            raw_text=raw_text,
            customer_name_guess=self.customer_name,
            customer_name_confidence=1.0,
            shipment_date_guess=self.shipment_date,
            shipment_date_confidence=1.0,
            items=items,
            total_amount_guess=self.total_amount,
            total_amount_confidence=1.0,
            overall_confidence=1.0,
            customer_id=self.customer_id,
        )
