import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shipment_intake.database import Base


class MovementReason(str, PyEnum):
    RECEIPT = "receipt"
    RESERVE = "reserve"
    COMMIT = "commit"
    RELEASE = "release"


class ReservationStatus(str, PyEnum):
    RESERVED = "reserved"
    COMMITTED = "committed"
    RELEASED = "released"


class InventoryItem(Base):
    __tablename__ = "inventory_items"
    __table_args__ = (CheckConstraint("current_stock >= 0", name="ck_inventory_items_stock_non_negative"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    sku: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    # Running sum of movement deltas; written only by the stock ledger
    current_stock: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class Reservation(Base):
    __tablename__ = "reservations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    correlation_id: Mapped[str] = mapped_column(String, index=True)
    actor_id: Mapped[str] = mapped_column(String, default="")
    status: Mapped[str] = mapped_column(
        Enum(ReservationStatus, values_callable=lambda x: [e.value for e in x]),
        default=ReservationStatus.RESERVED,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    movements: Mapped[list["StockMovement"]] = relationship("StockMovement", back_populates="reservation")


class StockMovement(Base):
    """Append-only stock change. Never updated or deleted; reversals are new rows."""

    __tablename__ = "stock_movements"

    # Insertion order; created_at alone ties within a second on SQLite
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(String, ForeignKey("inventory_items.id"), nullable=False, index=True)
    reservation_id: Mapped[str | None] = mapped_column(String, ForeignKey("reservations.id"), nullable=True, index=True)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)  # positive=in, negative=out
    reason: Mapped[str] = mapped_column(
        Enum(MovementReason, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    actor_id: Mapped[str] = mapped_column(String, default="")
    correlation_id: Mapped[str] = mapped_column(String, default="", index=True)
    note: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    reservation: Mapped["Reservation"] = relationship("Reservation", back_populates="movements")
