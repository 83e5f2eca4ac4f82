from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from shipment_intake.schemas.extraction import ExtractedShipmentData
from shipment_intake.schemas.outbound import OutboundRecordOut


class IntakeResult(BaseModel):
    status: str  # AutoApproved | PendingReview | Rejected
    outbound_record: Optional[OutboundRecordOut] = None
    review_task_id: Optional[str] = None
    confidence: float = 0.0
    reason: Optional[str] = None
    document_id: Optional[str] = None
    blob_url: str = ""
    replayed: bool = False


class ReviewTaskOut(BaseModel):
    id: str
    document_hash: str
    document_id: Optional[str] = None
    extracted_data_id: Optional[str] = None
    reason: str
    detail: str = ""
    status: str
    created_by: str = ""
    created_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    outbound_record_id: Optional[str] = None

    model_config = {"from_attributes": True}

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v):
        return v.value if hasattr(v, "value") else v


class ReviewTaskDetail(ReviewTaskOut):
    extracted: Optional[ExtractedShipmentData] = None
