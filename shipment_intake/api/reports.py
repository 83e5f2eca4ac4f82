from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from shipment_intake.api.deps import get_cache
from shipment_intake.api.session import get_context
from shipment_intake.context import RequestContext
from shipment_intake.database import get_db
from shipment_intake.services import report_service
from shipment_intake.services.cache_service import CacheInvalidationCoordinator

router = APIRouter(prefix="/reports", tags=["Reports"])


@router.get("/dashboard")
def dashboard(
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    cache: CacheInvalidationCoordinator = Depends(get_cache),
):
    return report_service.dashboard_metrics(db, cache)


@router.get("/summaries/{period}")
def period_summary(
    period: str,
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
    cache: CacheInvalidationCoordinator = Depends(get_cache),
):
    try:
        return report_service.period_summary(db, period, cache)
    except ValueError as e:
        raise HTTPException(400, str(e))
