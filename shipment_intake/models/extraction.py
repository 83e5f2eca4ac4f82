import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import Date, DateTime, Enum, Float, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shipment_intake.database import Base


class DocumentState(str, PyEnum):
    UPLOADED = "Uploaded"
    TEXT_EXTRACTED = "TextExtracted"
    PARSED = "Parsed"
    VALIDATED = "Validated"
    AUTO_APPROVED = "AutoApproved"
    PENDING_REVIEW = "PendingReview"
    REJECTED = "Rejected"


class OutcomeReason(str, PyEnum):
    EXTRACTION_UNAVAILABLE = "ExtractionUnavailable"
    PARSE_FAILURE = "ParseFailure"
    VALIDATION_FAILURE = "ValidationFailure"
    LOW_CONFIDENCE = "LowConfidence"
    UNRESOLVED_ENTITY = "UnresolvedEntity"
    INSUFFICIENT_STOCK = "InsufficientStock"
    TIMEOUT = "Timeout"


class ExtractionSource(str, PyEnum):
    PIPELINE = "pipeline"
    REVIEW = "review"


class ExtractedShipment(Base):
    """One immutable version of extracted shipment data.

    Human corrections are stored as a new row pointing at ``parent_id``.
    """

    __tablename__ = "extracted_shipments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    document_hash: Mapped[str] = mapped_column(String, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    parent_id: Mapped[str | None] = mapped_column(String, ForeignKey("extracted_shipments.id"), nullable=True)
    source: Mapped[str] = mapped_column(
        Enum(ExtractionSource, values_callable=lambda x: [e.value for e in x]),
        default=ExtractionSource.PIPELINE,
    )

    raw_text: Mapped[str] = mapped_column(Text, default="")
    customer_name_guess: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_name_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    shipment_date_guess: Mapped[date | None] = mapped_column(Date, nullable=True)
    shipment_date_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    total_amount_guess: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    total_amount_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    overall_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    # Set only on reviewer corrections that name the customer directly
    customer_id: Mapped[str | None] = mapped_column(String, nullable=True)

    created_by: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    items: Mapped[list["ExtractedItemRow"]] = relationship(
        "ExtractedItemRow",
        back_populates="shipment",
        cascade="all, delete-orphan",
        order_by="ExtractedItemRow.line_no",
    )


class ExtractedItemRow(Base):
    __tablename__ = "extracted_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    shipment_id: Mapped[str] = mapped_column(String, ForeignKey("extracted_shipments.id"), nullable=False)
    line_no: Mapped[int] = mapped_column(Integer, default=1)
    description_text: Mapped[str] = mapped_column(String, default="")
    quantity_guess: Mapped[int | None] = mapped_column(Integer, nullable=True)
    unit_price_guess: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    # Set only on reviewer corrections that name the inventory item directly
    inventory_item_id: Mapped[str | None] = mapped_column(String, nullable=True)

    shipment: Mapped["ExtractedShipment"] = relationship("ExtractedShipment", back_populates="items")


class DocumentUpload(Base):
    """Audit row for one upload attempt and where the pipeline left it."""

    __tablename__ = "document_uploads"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    document_hash: Mapped[str] = mapped_column(String, index=True)
    blob_url: Mapped[str] = mapped_column(String, default="")
    content_type: Mapped[str] = mapped_column(String, default="")
    byte_size: Mapped[int] = mapped_column(Integer, default=0)
    state: Mapped[str] = mapped_column(
        Enum(DocumentState, values_callable=lambda x: [e.value for e in x]),
        default=DocumentState.UPLOADED,
    )
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    overall_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    extracted_data_id: Mapped[str | None] = mapped_column(String, ForeignKey("extracted_shipments.id"), nullable=True)
    transitions: Mapped[str] = mapped_column(Text, default="")  # e.g. "Uploaded>TextExtracted>Parsed"
    uploaded_by: Mapped[str] = mapped_column(String, default="")
    correlation_id: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())
