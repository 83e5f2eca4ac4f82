import logging
import pathlib
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from shipment_intake.api import cache, documents, inventory, outbound, reports
from shipment_intake.config import settings
from shipment_intake.database import init_db
from shipment_intake.exceptions import (
    ConcurrencyConflict,
    InsufficientStock,
    IntakeError,
    InvalidDocument,
    InvalidReservationState,
    InvalidStatusTransition,
    ItemNotFound,
    LedgerBusy,
    RecordNotFound,
    ReviewTaskNotFound,
    UnresolvedEntity,
)
from shipment_intake.services.cache_service import coordinator
from shipment_intake.services.webhook_service import InvalidationWebhookNotifier, configured_urls

logger = logging.getLogger(__name__)

# Most specific first; anything else derived from IntakeError is a 500
_STATUS_BY_ERROR = [
    (LedgerBusy, 503),
    (InvalidDocument, 400),
    (ItemNotFound, 404),
    (ReviewTaskNotFound, 404),
    (RecordNotFound, 404),
    (ConcurrencyConflict, 409),
    (InvalidReservationState, 409),
    (InvalidStatusTransition, 409),
    (InsufficientStock, 422),
    (UnresolvedEntity, 422),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    notifier = None
    urls = configured_urls()
    if urls:
        notifier = InvalidationWebhookNotifier(urls)
        coordinator.subscribe(notifier)
        logger.info("Pushing cache invalidations to %d reporting endpoint(s)", len(urls))
    yield
    if notifier is not None:
        notifier.shutdown()


app = FastAPI(
    title="Shipment Intake API",
    description="Shipping document intake, stock ledger reconciliation and human review",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(IntakeError)
async def intake_error_handler(request: Request, exc: IntakeError):
    status_code = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    if status_code >= 500 and not isinstance(exc, LedgerBusy):
        logger.error("Unhandled intake error: %s\n%s", exc, traceback.format_exc())
    headers = {"Retry-After": "1"} if isinstance(exc, LedgerBusy) else None
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code, "details": exc.details},
        headers=headers,
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return JSON for unhandled exceptions so clients can parse the error."""
    logger.error("Unhandled error: %s\n%s", exc, traceback.format_exc())
    return JSONResponse(status_code=500, content={"detail": str(exc)})


app.include_router(documents.router, prefix="/api/v1")
app.include_router(inventory.router, prefix="/api/v1")
app.include_router(outbound.router, prefix="/api/v1")
app.include_router(cache.router, prefix="/api/v1")
app.include_router(reports.router, prefix="/api/v1")


# Stored document images
_upload_dir = pathlib.Path(settings.UPLOAD_DIR)
_upload_dir.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=_upload_dir), name="uploads")


@app.get("/health")
def health():
    return {"status": "ok"}
