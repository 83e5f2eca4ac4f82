import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from shipment_intake.context import RequestContext
from shipment_intake.exceptions import InvalidStatusTransition, RecordNotFound
from shipment_intake.models.outbound import OutboundRecord, OutboundStatus
from shipment_intake.schemas.outbound import OutboundRecordOut
from shipment_intake.services.cache_service import CUSTOMER_RECORDS, CacheInvalidationCoordinator, customer_records_key
from shipment_intake.services.ledger_service import StockLedger

# Allowed forward moves; cancellation is handled separately because it releases stock
_NEXT_STATUS = {
    OutboundStatus.PENDING: {OutboundStatus.SHIPPED},
    OutboundStatus.SHIPPED: {OutboundStatus.DELIVERED},
}


def generate_record_number() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    short = uuid.uuid4().hex[:6].upper()
    return f"OUT-{ts}-{short}"


def add_status_history(record: OutboundRecord, status: str, note: str = "", actor_id: str = "") -> None:
    history = json.loads(record.status_history) if record.status_history else []
    history.append({
        "status": status.value if hasattr(status, "value") else status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "note": note,
        "actor": actor_id,
    })
    record.status_history = json.dumps(history)


def get_record(db: Session, record_id: str) -> OutboundRecord:
    record = db.get(OutboundRecord, record_id)
    if not record:
        raise RecordNotFound(f"Outbound record {record_id} not found")
    return record


def get_record_by_hash(db: Session, document_hash: str) -> OutboundRecord | None:
    return db.execute(
        select(OutboundRecord).where(OutboundRecord.document_hash == document_hash)
    ).scalar_one_or_none()


def list_customer_records(db: Session, customer_id: str, cache: CacheInvalidationCoordinator | None = None) -> list[dict]:
    """The customer's record set as served to reporting, read through the cache."""

    def load() -> list[dict]:
        records = db.execute(
            select(OutboundRecord)
            .where(OutboundRecord.customer_id == customer_id)
            .order_by(OutboundRecord.created_at.desc())
        ).scalars().all()
        return [OutboundRecordOut.model_validate(r).model_dump(mode="json") for r in records]

    if cache is None:
        return load()
    return cache.read(CUSTOMER_RECORDS, customer_records_key(customer_id), load)


def advance_status(
    db: Session, record_id: str, status: OutboundStatus, ctx: RequestContext,
    note: str = "", cache: CacheInvalidationCoordinator | None = None,
) -> OutboundRecord:
    record = get_record(db, record_id)
    current = OutboundStatus(record.status)
    if status == OutboundStatus.CANCELLED:
        raise InvalidStatusTransition("Use cancel to cancel an outbound record")
    if status not in _NEXT_STATUS.get(current, set()):
        raise InvalidStatusTransition(f"Cannot move record from '{current.value}' to '{status.value}'")
    record.status = status
    add_status_history(record, status, note, ctx.actor_id)
    db.commit()
    db.refresh(record)
    if cache is not None:
        cache.invalidate(CUSTOMER_RECORDS, record.customer_id)
    return record


def cancel_record(
    db: Session, record_id: str, ledger: StockLedger, ctx: RequestContext,
    note: str = "", cache: CacheInvalidationCoordinator | None = None,
) -> OutboundRecord:
    """Cancel a pending record and give its stock back through a release movement."""
    record = get_record(db, record_id)
    current = OutboundStatus(record.status)
    if current == OutboundStatus.CANCELLED:
        return record
    if current != OutboundStatus.PENDING:
        raise InvalidStatusTransition(f"Cannot cancel record in '{current.value}' status")

    handle = ledger.load_handle(record.reservation_id)
    record.status = OutboundStatus.CANCELLED
    add_status_history(record, OutboundStatus.CANCELLED, note or "Record cancelled", ctx.actor_id)
    # The status change commits in the same transaction as the release movements
    ledger.release(handle, actor_id=ctx.actor_id, note=f"Cancelled record {record.record_number}")
    if OutboundStatus(record.status) != OutboundStatus.CANCELLED:
        # Reservation was already released, so release rolled back without writing
        record.status = OutboundStatus.CANCELLED
        add_status_history(record, OutboundStatus.CANCELLED, note or "Record cancelled", ctx.actor_id)
        db.commit()

    db.refresh(record)
    if cache is not None:
        cache.invalidate(CUSTOMER_RECORDS, record.customer_id)
    return record
