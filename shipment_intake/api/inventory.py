from fastapi import APIRouter, Depends

from shipment_intake.api.deps import get_ledger
from shipment_intake.api.session import get_context
from shipment_intake.context import RequestContext
from shipment_intake.schemas.inventory import StockAuditOut, StockLevelOut, StockMovementOut, StockReceiptCreate
from shipment_intake.services.ledger_service import StockLedger

router = APIRouter(prefix="/inventory", tags=["Inventory"])


@router.get("/{item_id}/stock", response_model=StockLevelOut)
def get_stock(item_id: str, ctx: RequestContext = Depends(get_context), ledger: StockLedger = Depends(get_ledger)):
    return StockLevelOut(item_id=item_id, current_stock=ledger.current_stock(item_id))


@router.post("/{item_id}/receipts", response_model=StockLevelOut, status_code=201)
def receive_stock(
    item_id: str,
    data: StockReceiptCreate,
    ctx: RequestContext = Depends(get_context),
    ledger: StockLedger = Depends(get_ledger),
):
    item = ledger.receive(item_id, data.quantity, actor_id=ctx.actor_id, correlation_id=ctx.correlation_id, note=data.note)
    return StockLevelOut(item_id=item.id, current_stock=item.current_stock)


@router.get("/{item_id}/movements", response_model=list[StockMovementOut])
def list_movements(
    item_id: str,
    limit: int = 100,
    ctx: RequestContext = Depends(get_context),
    ledger: StockLedger = Depends(get_ledger),
):
    return ledger.movements(item_id, limit=limit)


@router.get("/{item_id}/audit", response_model=StockAuditOut)
def audit_stock(item_id: str, ctx: RequestContext = Depends(get_context), ledger: StockLedger = Depends(get_ledger)):
    """Compare the stored stock figure with the sum of its movements."""
    stored, derived = ledger.audit(item_id)
    return StockAuditOut(item_id=item_id, stored_stock=stored, derived_stock=derived, consistent=stored == derived)
