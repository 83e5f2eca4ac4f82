from fastapi import APIRouter, Depends, Query

from shipment_intake.api.deps import get_cache
from shipment_intake.api.session import get_context
from shipment_intake.context import RequestContext
from shipment_intake.services.cache_service import CacheInvalidationCoordinator

router = APIRouter(prefix="/cache", tags=["Cache"])


@router.get("/invalidations")
def invalidation_feed(
    after: int = Query(0, ge=0),
    limit: int = Query(500, ge=1, le=1000),
    ctx: RequestContext = Depends(get_context),
    cache: CacheInvalidationCoordinator = Depends(get_cache),
):
    """Invalidation events newer than ``after``, for reporting to drop its own copies."""
    events = cache.events_after(after, limit)
    return {
        "events": [e.to_dict() for e in events],
        "last_seq": events[-1].seq if events else after,
    }
