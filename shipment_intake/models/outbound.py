import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import Date, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shipment_intake.database import Base


class OutboundStatus(str, PyEnum):
    PENDING = "pending"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OutboundRecord(Base):
    __tablename__ = "outbound_records"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    record_number: Mapped[str] = mapped_column(String, unique=True, index=True)
    customer_id: Mapped[str] = mapped_column(String, ForeignKey("customers.id"), nullable=False, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    shipment_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[str] = mapped_column(
        Enum(OutboundStatus, values_callable=lambda x: [e.value for e in x]),
        default=OutboundStatus.PENDING,
    )
    status_history: Mapped[str] = mapped_column(Text, default="[]")  # JSON list of {status, timestamp, note, actor}

    created_by: Mapped[str] = mapped_column(String, default="")
    extracted_data_id: Mapped[str] = mapped_column(String, ForeignKey("extracted_shipments.id"), nullable=False)
    # Idempotency key: one record per uploaded document
    document_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    reservation_id: Mapped[str] = mapped_column(String, ForeignKey("reservations.id"), nullable=False)
    review_task_id: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    items: Mapped[list["OutboundItem"]] = relationship(
        "OutboundItem", back_populates="record", cascade="all, delete-orphan"
    )


class OutboundItem(Base):
    __tablename__ = "outbound_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    record_id: Mapped[str] = mapped_column(String, ForeignKey("outbound_records.id"), nullable=False)
    inventory_item_id: Mapped[str] = mapped_column(String, ForeignKey("inventory_items.id"), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))

    record: Mapped["OutboundRecord"] = relationship("OutboundRecord", back_populates="items")
