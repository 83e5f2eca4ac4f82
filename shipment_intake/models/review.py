import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from shipment_intake.database import Base


class ReviewStatus(str, PyEnum):
    OPEN = "open"
    RESOLVED = "resolved"


class ReviewTask(Base):
    __tablename__ = "review_tasks"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    document_hash: Mapped[str] = mapped_column(String, index=True)
    document_id: Mapped[str | None] = mapped_column(String, ForeignKey("document_uploads.id"), nullable=True)
    # Null when nothing usable could be extracted (manual entry from scratch)
    extracted_data_id: Mapped[str | None] = mapped_column(String, ForeignKey("extracted_shipments.id"), nullable=True)
    reason: Mapped[str] = mapped_column(String, nullable=False)
    detail: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(
        Enum(ReviewStatus, values_callable=lambda x: [e.value for e in x]),
        default=ReviewStatus.OPEN,
    )
    created_by: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    outbound_record_id: Mapped[str | None] = mapped_column(String, nullable=True)
