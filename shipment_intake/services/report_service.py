from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from shipment_intake.models.customer import Customer
from shipment_intake.models.inventory import InventoryItem
from shipment_intake.models.outbound import OutboundRecord, OutboundStatus
from shipment_intake.services.cache_service import (
    DASHBOARD_KEY,
    INVENTORY_ITEM,
    SUMMARY,
    CacheInvalidationCoordinator,
    summary_key,
)

LOW_STOCK_LEVEL = 5


def dashboard_metrics(db: Session, cache: CacheInvalidationCoordinator | None = None) -> dict:
    """Headline numbers for the reporting dashboard.

    Cached under the aggregate key that every item and customer change drops.
    """

    def load() -> dict:
        items = db.query(InventoryItem).all()
        low_stock = [i for i in items if i.current_stock <= LOW_STOCK_LEVEL]
        return {
            "total_items": len(items),
            "total_units_in_stock": sum(i.current_stock for i in items),
            "total_inventory_value": str(sum((i.current_stock * i.unit_price for i in items), Decimal("0.00"))),
            "low_stock_items": [
                {"id": i.id, "sku": i.sku, "name": i.name, "current_stock": i.current_stock} for i in low_stock
            ],
            "customer_count": db.query(Customer).count(),
            "pending_records": db.query(OutboundRecord).filter(OutboundRecord.status == OutboundStatus.PENDING).count(),
        }

    if cache is None:
        return load()
    return cache.read(INVENTORY_ITEM, DASHBOARD_KEY, load)


def _period_bounds(period: str) -> tuple[datetime, datetime]:
    try:
        start = datetime.strptime(period, "%Y-%m")
    except ValueError as e:
        raise ValueError(f"Period must look like YYYY-MM, got '{period}'") from e
    end = start.replace(year=start.year + 1, month=1) if start.month == 12 else start.replace(month=start.month + 1)
    return start, end


def period_summary(db: Session, period: str, cache: CacheInvalidationCoordinator | None = None) -> dict:
    """Shipments created in one calendar month, by status.

    Summaries are only dropped by an explicit ``invalidate(SUMMARY, period)``.
    """
    start, end = _period_bounds(period)

    def load() -> dict:
        records = (
            db.query(OutboundRecord)
            .filter(OutboundRecord.created_at >= start, OutboundRecord.created_at < end)
            .all()
        )
        by_status: dict[str, int] = {}
        gross = Decimal("0.00")
        net = Decimal("0.00")
        for r in records:
            status_val = OutboundStatus(r.status).value
            by_status[status_val] = by_status.get(status_val, 0) + 1
            gross += r.total_amount
            if status_val != OutboundStatus.CANCELLED.value:
                net += r.total_amount
        return {
            "period": period,
            "record_count": len(records),
            "records_by_status": by_status,
            "gross_value": str(gross),
            "net_value": str(net),
        }

    if cache is None:
        return load()
    return cache.read(SUMMARY, summary_key(period), load)
