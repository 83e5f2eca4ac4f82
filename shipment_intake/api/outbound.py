from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from shipment_intake.api.deps import get_cache, get_ledger
from shipment_intake.api.session import get_context
from shipment_intake.context import RequestContext
from shipment_intake.database import get_db
from shipment_intake.schemas.outbound import OutboundRecordOut, OutboundStatusUpdate
from shipment_intake.services import record_service
from shipment_intake.services.cache_service import CacheInvalidationCoordinator
from shipment_intake.services.ledger_service import StockLedger

router = APIRouter(tags=["Outbound"])


@router.get("/outbound/{record_id}", response_model=OutboundRecordOut)
def get_record(record_id: str, ctx: RequestContext = Depends(get_context), db: Session = Depends(get_db)):
    return record_service.get_record(db, record_id)


@router.post("/outbound/{record_id}/status", response_model=OutboundRecordOut)
def update_status(
    record_id: str,
    data: OutboundStatusUpdate,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    cache: CacheInvalidationCoordinator = Depends(get_cache),
):
    return record_service.advance_status(db, record_id, data.status, ctx, note=data.note, cache=cache)


@router.post("/outbound/{record_id}/cancel", response_model=OutboundRecordOut)
def cancel_record(
    record_id: str,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    ledger: StockLedger = Depends(get_ledger),
    cache: CacheInvalidationCoordinator = Depends(get_cache),
):
    return record_service.cancel_record(db, record_id, ledger, ctx, cache=cache)


@router.get("/customers/{customer_id}/records", response_model=list[OutboundRecordOut])
def customer_records(
    customer_id: str,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    cache: CacheInvalidationCoordinator = Depends(get_cache),
):
    return record_service.list_customer_records(db, customer_id, cache)
