"""Turns validated extraction output into a committed outbound record, or a review task.

The engine depends only on the ledger, matcher and cache handed to it; it
never looks other subsystems up itself.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shipment_intake.context import RequestContext
from shipment_intake.exceptions import (
    ConcurrencyConflict,
    InsufficientStock,
    ItemNotFound,
    ReviewTaskNotFound,
    UnresolvedEntity,
)
from shipment_intake.models.extraction import (
    DocumentState,
    ExtractedItemRow,
    ExtractedShipment,
    ExtractionSource,
    OutcomeReason,
)
from shipment_intake.models.inventory import InventoryItem
from shipment_intake.models.outbound import OutboundItem, OutboundRecord, OutboundStatus
from shipment_intake.models.review import ReviewStatus, ReviewTask
from shipment_intake.schemas.extraction import CorrectedShipmentData, ExtractedShipmentData
from shipment_intake.services.cache_service import CUSTOMER_RECORDS, INVENTORY_ITEM, CacheInvalidationCoordinator
from shipment_intake.services.ledger_service import KeyedLockRegistry, StockLedger
from shipment_intake.services.matcher_service import EntityMatcher
from shipment_intake.services.record_service import add_status_history, generate_record_number, get_record_by_hash

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

# One reconciliation per document hash at a time within this process
DOCUMENT_LOCKS = KeyedLockRegistry()


class ReconciliationEngine:
    def __init__(
        self,
        db: Session,
        ledger: StockLedger,
        matcher: EntityMatcher,
        cache: CacheInvalidationCoordinator | None = None,
        document_locks: KeyedLockRegistry = DOCUMENT_LOCKS,
    ):
        self.db = db
        self.ledger = ledger
        self.matcher = matcher
        self.cache = cache
        self.document_locks = document_locks

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def reconcile(
        self,
        extracted: ExtractedShipmentData | None,
        document_hash: str,
        ctx: RequestContext,
        state: DocumentState = DocumentState.AUTO_APPROVED,
        reason: OutcomeReason | None = None,
        detail: str = "",
        document_id: str | None = None,
    ) -> OutboundRecord | ReviewTask:
        with self.document_locks.hold([document_hash]):
            return self._reconcile_locked(extracted, document_hash, ctx, state, reason, detail, document_id)

    def _reconcile_locked(self, extracted, document_hash, ctx, state, reason, detail, document_id):
        existing = get_record_by_hash(self.db, document_hash)
        if existing is not None:
            logger.info("Idempotent replay of document %s -> record %s", document_hash[:12], existing.record_number)
            return existing
        open_task = self.find_open_task(document_hash)
        if open_task is not None:
            logger.info("Document %s already waiting in review task %s", document_hash[:12], open_task.id)
            return open_task

        if extracted is not None and extracted.id is None:
            extracted = self.save_extracted(extracted, document_hash, ctx)
        extracted_id = extracted.id if extracted is not None else None

        if state in (DocumentState.PENDING_REVIEW, DocumentState.REJECTED):
            return self._open_task(
                document_hash, extracted_id, reason or OutcomeReason.LOW_CONFIDENCE, detail, ctx, document_id
            )
        if state != DocumentState.AUTO_APPROVED or extracted is None:
            raise ValueError(f"Cannot reconcile a document in '{state.value}' state")

        try:
            return self._commit_shipment(extracted, document_hash, ctx)
        except (UnresolvedEntity, ItemNotFound) as e:
            return self._route_to_review(
                document_hash, extracted_id, OutcomeReason.UNRESOLVED_ENTITY, str(e), ctx, document_id
            )
        except InsufficientStock as e:
            return self._route_to_review(
                document_hash, extracted_id, OutcomeReason.INSUFFICIENT_STOCK, str(e), ctx, document_id
            )

    def resolve_review(self, task_id: str, corrected: CorrectedShipmentData, ctx: RequestContext) -> OutboundRecord:
        """Commit reviewer-corrected data. Confidence checks do not apply to human input.

        UnresolvedEntity / InsufficientStock are raised to the reviewer and the
        task stays open. If another reviewer closes the task first, raises
        ConcurrencyConflict and this attempt's reservation is released.
        """
        task = self.get_task(task_id)
        if ReviewStatus(task.status) != ReviewStatus.OPEN:
            raise ConcurrencyConflict(f"Review task {task_id} was already resolved", {"task_id": task_id})

        parent = self.db.get(ExtractedShipment, task.extracted_data_id) if task.extracted_data_id else None
        extracted = self.save_extracted(
            corrected.to_extracted(raw_text=parent.raw_text if parent else ""),
            task.document_hash,
            ctx,
            source=ExtractionSource.REVIEW,
            parent=parent,
        )
        return self._commit_shipment(extracted, task.document_hash, ctx, review_task_id=task.id)

    def get_task(self, task_id: str) -> ReviewTask:
        task = self.db.get(ReviewTask, task_id)
        if task is None:
            raise ReviewTaskNotFound(f"Review task {task_id} not found")
        return task

    def list_tasks(self, status: ReviewStatus | None = ReviewStatus.OPEN, limit: int = 100) -> list[ReviewTask]:
        q = select(ReviewTask)
        if status is not None:
            q = q.where(ReviewTask.status == status)
        return list(self.db.execute(q.order_by(ReviewTask.created_at.desc()).limit(limit)).scalars())

    def find_open_task(self, document_hash: str) -> ReviewTask | None:
        return self.db.execute(
            select(ReviewTask)
            .where(ReviewTask.document_hash == document_hash, ReviewTask.status == ReviewStatus.OPEN)
            .order_by(ReviewTask.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def save_extracted(
        self,
        extracted: ExtractedShipmentData,
        document_hash: str,
        ctx: RequestContext,
        source: ExtractionSource = ExtractionSource.PIPELINE,
        parent: ExtractedShipment | None = None,
    ) -> ExtractedShipmentData:
        """Persist one immutable version and return it with its id."""
        row = ExtractedShipment(
            document_hash=document_hash,
            version=(parent.version + 1) if parent else 1,
            parent_id=parent.id if parent else None,
            source=source,
            raw_text=extracted.raw_text,
            customer_name_guess=extracted.customer_name_guess,
            customer_name_confidence=extracted.customer_name_confidence,
            shipment_date_guess=extracted.shipment_date_guess,
            shipment_date_confidence=extracted.shipment_date_confidence,
            total_amount_guess=extracted.total_amount_guess,
            total_amount_confidence=extracted.total_amount_confidence,
            overall_confidence=extracted.overall_confidence,
            customer_id=extracted.customer_id,
            created_by=ctx.actor_id,
        )
        for n, item in enumerate(extracted.items, start=1):
            row.items.append(ExtractedItemRow(
                line_no=n,
                description_text=item.description_text,
                quantity_guess=item.quantity_guess,
                unit_price_guess=item.unit_price_guess,
                confidence=item.confidence,
                inventory_item_id=item.inventory_item_id,
            ))
        self.db.add(row)
        self.db.commit()
        return extracted.model_copy(update={"id": row.id})

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_entities(self, extracted: ExtractedShipmentData) -> tuple[str, list[tuple[str, int, Decimal | None]]]:
        unresolved = []

        customer_id = extracted.customer_id
        if customer_id:
            if not self.matcher.customer_exists(customer_id):
                unresolved.append(f"customer id {customer_id}")
        else:
            match = self.matcher.match_customer(extracted.customer_name_guess)
            if match is None:
                unresolved.append(f"customer '{extracted.customer_name_guess or ''}'")
            else:
                customer_id = match.entity_id

        lines = []
        for item in extracted.items:
            item_id = item.inventory_item_id
            if item_id:
                if not self.matcher.item_exists(item_id):
                    unresolved.append(f"item id {item_id}")
                    continue
            else:
                match = self.matcher.match_item(item.description_text)
                if match is None:
                    unresolved.append(f"item '{item.description_text}'")
                    continue
                item_id = match.entity_id
            lines.append((item_id, item.quantity_guess, item.unit_price_guess))

        if unresolved:
            raise UnresolvedEntity("Could not resolve " + ", ".join(unresolved), {"unresolved": unresolved})
        return customer_id, lines

    def _build_record(self, extracted, document_hash, customer_id, lines, handle, ctx, review_task_id) -> OutboundRecord:
        catalog_prices = dict(
            self.db.execute(
                select(InventoryItem.id, InventoryItem.unit_price).where(InventoryItem.id.in_([l[0] for l in lines]))
            ).all()
        )
        record = OutboundRecord(
            record_number=generate_record_number(),
            customer_id=customer_id,
            shipment_date=extracted.shipment_date_guess,
            status=OutboundStatus.PENDING,
            created_by=ctx.actor_id,
            extracted_data_id=extracted.id,
            document_hash=document_hash,
            reservation_id=handle.reservation_id,
            review_task_id=review_task_id,
        )
        total = Decimal("0.00")
        for item_id, quantity, unit_price in lines:
            # Document price wins; fall back to the catalog price when none was read
            price = Decimal(unit_price if unit_price is not None else catalog_prices.get(item_id) or 0).quantize(CENTS)
            line_total = price * quantity
            record.items.append(OutboundItem(
                inventory_item_id=item_id, quantity=quantity, unit_price=price, total_price=line_total,
            ))
            total += line_total
        record.total_amount = total
        add_status_history(
            record, OutboundStatus.PENDING,
            "Created from review" if review_task_id else "Created from document upload", ctx.actor_id,
        )
        return record

    def _commit_shipment(
        self,
        extracted: ExtractedShipmentData,
        document_hash: str,
        ctx: RequestContext,
        review_task_id: str | None = None,
    ) -> OutboundRecord:
        customer_id, lines = self._resolve_entities(extracted)

        # Sole point where InsufficientStock can occur; nothing is written on failure
        handle = self.ledger.reserve(
            [(item_id, quantity) for item_id, quantity, _ in lines], ctx.correlation_id, ctx.actor_id
        )

        try:
            record = self._build_record(extracted, document_hash, customer_id, lines, handle, ctx, review_task_id)
            self.db.add(record)
            self.db.flush()
            if review_task_id:
                self._close_task(review_task_id, record.id, ctx)
            # Record rows ride in the same transaction as the commit movements
            self.ledger.commit(handle, ctx.actor_id)
        except IntegrityError:
            self.db.rollback()
            self.ledger.release(handle, ctx.actor_id, note="Duplicate document, reservation released")
            existing = get_record_by_hash(self.db, document_hash)
            if existing is None or review_task_id:
                raise ConcurrencyConflict(f"Document {document_hash[:12]} was committed concurrently")
            logger.info("Concurrent duplicate of document %s resolved to %s", document_hash[:12], existing.record_number)
            return existing
        except Exception:
            self.db.rollback()
            self.ledger.release(handle, ctx.actor_id, note="Record not persisted, reservation released")
            raise

        self.db.refresh(record)
        logger.info(
            "Committed outbound record %s for customer %s, total %s (correlation %s)",
            record.record_number, customer_id, record.total_amount, ctx.correlation_id,
        )
        if self.cache is not None:
            self.cache.invalidate_many(INVENTORY_ITEM, sorted({item_id for item_id, _, _ in lines}))
            self.cache.invalidate(CUSTOMER_RECORDS, customer_id)
        return record

    def _close_task(self, task_id: str, record_id: str, ctx: RequestContext) -> None:
        # First committer wins: the loser's conditional update matches nothing
        result = self.db.execute(
            update(ReviewTask)
            .where(ReviewTask.id == task_id, ReviewTask.status == ReviewStatus.OPEN)
            .values(
                status=ReviewStatus.RESOLVED,
                resolved_by=ctx.actor_id,
                resolved_at=datetime.now(timezone.utc).replace(tzinfo=None),
                outbound_record_id=record_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrencyConflict(f"Review task {task_id} was resolved by someone else", {"task_id": task_id})

    def _route_to_review(self, document_hash, extracted_id, reason, detail, ctx, document_id):
        # Another process may have committed this document while we failed to reserve
        existing = get_record_by_hash(self.db, document_hash)
        if existing is not None:
            logger.info(
                "Document %s committed elsewhere as %s, not opening %s review",
                document_hash[:12], existing.record_number, reason.value,
            )
            return existing
        return self._open_task(document_hash, extracted_id, reason, detail, ctx, document_id)

    def _open_task(
        self,
        document_hash: str,
        extracted_id: str | None,
        reason: OutcomeReason,
        detail: str,
        ctx: RequestContext,
        document_id: str | None,
    ) -> ReviewTask:
        task = ReviewTask(
            document_hash=document_hash,
            document_id=document_id,
            extracted_data_id=extracted_id,
            reason=reason.value,
            detail=detail,
            status=ReviewStatus.OPEN,
            created_by=ctx.actor_id,
        )
        self.db.add(task)
        self.db.commit()
        self.db.refresh(task)
        logger.info("Opened review task %s (%s) for document %s", task.id, reason.value, document_hash[:12])
        return task
