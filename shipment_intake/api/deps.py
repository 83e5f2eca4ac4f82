"""Service wiring for request handlers. Tests override these providers."""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from shipment_intake.database import get_db
from shipment_intake.services.blob_service import LocalBlobStore
from shipment_intake.services.cache_service import CacheInvalidationCoordinator, coordinator
from shipment_intake.services.extraction_client import HttpExtractionClient
from shipment_intake.services.intake_service import IntakeService
from shipment_intake.services.ledger_service import StockLedger
from shipment_intake.services.matcher_service import EntityMatcher
from shipment_intake.services.pipeline_service import ExtractionPipeline
from shipment_intake.services.reconciliation_service import ReconciliationEngine


def get_cache() -> CacheInvalidationCoordinator:
    return coordinator


@lru_cache
def get_pipeline() -> ExtractionPipeline:
    return ExtractionPipeline(HttpExtractionClient())


@lru_cache
def get_blob_store() -> LocalBlobStore:
    return LocalBlobStore()


def get_ledger(
    db: Session = Depends(get_db),
    cache: CacheInvalidationCoordinator = Depends(get_cache),
) -> StockLedger:
    return StockLedger(db, cache)


def get_engine(
    db: Session = Depends(get_db),
    ledger: StockLedger = Depends(get_ledger),
    cache: CacheInvalidationCoordinator = Depends(get_cache),
) -> ReconciliationEngine:
    return ReconciliationEngine(db, ledger, EntityMatcher(db), cache)


def get_intake(
    db: Session = Depends(get_db),
    pipeline: ExtractionPipeline = Depends(get_pipeline),
    blob_store: LocalBlobStore = Depends(get_blob_store),
    engine: ReconciliationEngine = Depends(get_engine),
) -> IntakeService:
    return IntakeService(db, pipeline, blob_store, engine)
