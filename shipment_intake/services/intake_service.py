"""Upload-to-outcome orchestration for a single document.

Validation, hashing and blob storage happen before any AI call so a bad file
costs nothing and a re-upload of known bytes is answered from the database.
"""

import logging

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from shipment_intake.context import RequestContext
from shipment_intake.models.extraction import DocumentState, DocumentUpload, OutcomeReason
from shipment_intake.models.outbound import OutboundRecord
from shipment_intake.models.review import ReviewTask
from shipment_intake.schemas.intake import IntakeResult
from shipment_intake.schemas.outbound import OutboundRecordOut
from shipment_intake.services.blob_service import BlobStore, document_hash, inspect_image
from shipment_intake.services.pipeline_service import ExtractionPipeline, PipelineOutcome
from shipment_intake.services.reconciliation_service import ReconciliationEngine
from shipment_intake.services.record_service import get_record_by_hash

logger = logging.getLogger(__name__)


def _result_for(outcome: OutboundRecord | ReviewTask, status: DocumentState, confidence: float, **extra) -> IntakeResult:
    if isinstance(outcome, OutboundRecord):
        return IntakeResult(
            status=DocumentState.AUTO_APPROVED.value,
            outbound_record=OutboundRecordOut.model_validate(outcome),
            confidence=confidence,
            **extra,
        )
    return IntakeResult(
        status=status.value,
        review_task_id=outcome.id,
        confidence=confidence,
        reason=outcome.reason,
        **extra,
    )


class IntakeService:
    def __init__(
        self,
        db: Session,
        pipeline: ExtractionPipeline,
        blob_store: BlobStore,
        engine: ReconciliationEngine,
    ):
        self.db = db
        self.pipeline = pipeline
        self.blob_store = blob_store
        self.engine = engine

    async def submit(self, data: bytes, ctx: RequestContext) -> IntakeResult:
        content_type, extension = inspect_image(data)
        doc_hash = document_hash(data)

        replay = await run_in_threadpool(self.replay, doc_hash)
        if replay is not None:
            return replay

        blob_url = await run_in_threadpool(self.blob_store.store, data, doc_hash, extension)
        logger.info(
            "Processing document %s (%s, %d bytes) for %s (correlation %s)",
            doc_hash[:12], content_type, len(data), ctx.actor_id, ctx.correlation_id,
        )
        outcome = await self.pipeline.run(data, ctx, content_type)
        return await run_in_threadpool(
            self.finish, outcome, doc_hash, blob_url, content_type, len(data), ctx
        )

    def replay(self, doc_hash: str) -> IntakeResult | None:
        """Answer a re-upload of known bytes without touching the AI capability."""
        record = get_record_by_hash(self.db, doc_hash)
        if record is not None:
            logger.info("Replay of document %s matched record %s", doc_hash[:12], record.record_number)
            return _result_for(record, DocumentState.AUTO_APPROVED, 1.0, replayed=True)
        task = self.engine.find_open_task(doc_hash)
        if task is not None:
            logger.info("Replay of document %s matched open review task %s", doc_hash[:12], task.id)
            return _result_for(task, DocumentState.PENDING_REVIEW, 0.0, document_id=task.document_id, replayed=True)
        return None

    def finish(
        self,
        outcome: PipelineOutcome,
        doc_hash: str,
        blob_url: str,
        content_type: str,
        byte_size: int,
        ctx: RequestContext,
    ) -> IntakeResult:
        upload = DocumentUpload(
            document_hash=doc_hash,
            blob_url=blob_url,
            content_type=content_type,
            byte_size=byte_size,
            state=outcome.state,
            reason=outcome.reason.value if outcome.reason else None,
            overall_confidence=outcome.confidence,
            transitions=">".join(s.value for s in outcome.transitions),
            uploaded_by=ctx.actor_id,
            correlation_id=ctx.correlation_id,
        )
        self.db.add(upload)
        self.db.commit()

        extracted = outcome.extracted
        if extracted is not None:
            extracted = self.engine.save_extracted(extracted, doc_hash, ctx)
            upload.extracted_data_id = extracted.id

        result = self.engine.reconcile(
            extracted, doc_hash, ctx,
            state=outcome.state, reason=outcome.reason, detail=outcome.detail, document_id=upload.id,
        )

        if isinstance(result, OutboundRecord):
            final_state = DocumentState.AUTO_APPROVED
        elif outcome.state == DocumentState.REJECTED:
            final_state = DocumentState.REJECTED
        else:
            final_state = DocumentState.PENDING_REVIEW

        if final_state != outcome.state:
            # Reconciliation overrode the pipeline's routing
            upload.transitions = f"{upload.transitions}>{final_state.value}"
            upload.reason = getattr(result, "reason", None)
        upload.state = final_state
        self.db.commit()

        if final_state == DocumentState.REJECTED:
            logger.warning(
                "Document %s rejected (%s): %s", doc_hash[:12],
                outcome.reason.value if outcome.reason else OutcomeReason.LOW_CONFIDENCE.value, outcome.detail,
            )
        return _result_for(
            result, final_state, outcome.confidence, document_id=upload.id, blob_url=blob_url,
        )
