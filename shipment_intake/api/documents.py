import logging

from fastapi import APIRouter, Depends, UploadFile

from shipment_intake.api.deps import get_engine, get_intake
from shipment_intake.api.session import get_context
from shipment_intake.context import RequestContext
from shipment_intake.models.extraction import ExtractedShipment
from shipment_intake.models.review import ReviewStatus
from shipment_intake.schemas.extraction import CorrectedShipmentData, ExtractedShipmentData
from shipment_intake.schemas.intake import IntakeResult, ReviewTaskDetail, ReviewTaskOut
from shipment_intake.schemas.outbound import OutboundRecordOut
from shipment_intake.services.intake_service import IntakeService
from shipment_intake.services.reconciliation_service import ReconciliationEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Intake"])


@router.post("/documents", response_model=IntakeResult)
async def upload_document(
    file: UploadFile,
    ctx: RequestContext = Depends(get_context),
    intake: IntakeService = Depends(get_intake),
):
    """Upload a shipping document image and run it through extraction and reconciliation."""
    data = await file.read()
    return await intake.submit(data, ctx)


@router.get("/reviews", response_model=list[ReviewTaskOut])
def list_reviews(
    status: ReviewStatus | None = ReviewStatus.OPEN,
    limit: int = 100,
    ctx: RequestContext = Depends(get_context),
    engine: ReconciliationEngine = Depends(get_engine),
):
    return engine.list_tasks(status=status, limit=limit)


@router.get("/reviews/{task_id}", response_model=ReviewTaskDetail)
def get_review(
    task_id: str,
    ctx: RequestContext = Depends(get_context),
    engine: ReconciliationEngine = Depends(get_engine),
):
    task = engine.get_task(task_id)
    detail = ReviewTaskDetail.model_validate(task)
    if task.extracted_data_id:
        row = engine.db.get(ExtractedShipment, task.extracted_data_id)
        if row is not None:
            detail = detail.model_copy(update={"extracted": ExtractedShipmentData.model_validate(row)})
    return detail


@router.post("/reviews/{task_id}/resolve", response_model=OutboundRecordOut)
def resolve_review(
    task_id: str,
    data: CorrectedShipmentData,
    ctx: RequestContext = Depends(get_context),
    engine: ReconciliationEngine = Depends(get_engine),
):
    record = engine.resolve_review(task_id, data, ctx)
    logger.info("Review task %s resolved by %s into %s", task_id, ctx.actor_id, record.record_number)
    return record
