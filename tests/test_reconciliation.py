from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from shipment_intake.exceptions import ConcurrencyConflict, InsufficientStock, ReviewTaskNotFound, UnresolvedEntity
from shipment_intake.models.extraction import DocumentState, ExtractedShipment, ExtractionSource, OutcomeReason
from shipment_intake.models.inventory import MovementReason, StockMovement
from shipment_intake.models.outbound import OutboundRecord, OutboundStatus
from shipment_intake.models.review import ReviewStatus, ReviewTask
from shipment_intake.schemas.extraction import CorrectedItem, CorrectedShipmentData
from shipment_intake.services.cache_service import CUSTOMER_RECORDS, INVENTORY_ITEM
from shipment_intake.services.pipeline_service import build_extracted

from conftest import shipment_payload


def acme_widgets(quantity=10, unit_price="12.50", customer="Acme Corp", description="Widget A"):
    items = [{"description": description, "quantity": quantity, "unit_price": unit_price, "confidence": 0.95}]
    return build_extracted("ACME CORP / Widget A x 10", shipment_payload(customer=customer, items=items, confidence=0.95))


def _reason_movements(db, item_id, reason):
    return db.execute(
        select(StockMovement).where(StockMovement.item_id == item_id, StockMovement.reason == reason)
    ).scalars().all()


class TestAutoApproved:
    def test_commits_record_and_deducts_stock(self, reconciler, ledger, db, seed, ctx):
        record = reconciler.reconcile(acme_widgets(), "hash-1", ctx)

        assert isinstance(record, OutboundRecord)
        assert record.customer_id == seed["acme"]
        assert record.status == OutboundStatus.PENDING
        assert record.shipment_date == date(2024, 3, 1)
        assert [(i.inventory_item_id, i.quantity) for i in record.items] == [(seed["widget"], 10)]
        assert ledger.current_stock(seed["widget"]) == 40

        reserves = _reason_movements(db, seed["widget"], MovementReason.RESERVE)
        commits = _reason_movements(db, seed["widget"], MovementReason.COMMIT)
        assert [m.delta for m in reserves] == [-10]
        assert [m.delta for m in commits] == [0]
        assert reserves[0].reservation_id == commits[0].reservation_id == record.reservation_id
        assert reserves[0].correlation_id == ctx.correlation_id
        assert reserves[0].actor_id == commits[0].actor_id == ctx.actor_id

    def test_money_round_trips_exactly(self, reconciler, db, seed, ctx):
        extracted = build_extracted("raw", shipment_payload(items=[
            {"description": "Widget A", "quantity": 3, "unit_price": "0.10", "confidence": 0.9},
            {"description": "Gadget B", "quantity": 7, "unit_price": "19.99", "confidence": 0.9},
        ]))

        record = reconciler.reconcile(extracted, "hash-money", ctx)
        db.expire_all()
        stored = db.get(OutboundRecord, record.id)

        assert stored.total_amount == Decimal("140.23")
        assert sorted(i.total_price for i in stored.items) == [Decimal("0.30"), Decimal("139.93")]

    def test_catalog_price_fills_missing_unit_price(self, reconciler, seed, ctx):
        extracted = build_extracted("raw", shipment_payload(items=[
            {"description": "Gadget B", "quantity": 2, "confidence": 0.9},
        ], total="8.00"))

        record = reconciler.reconcile(extracted, "hash-catalog", ctx)

        assert record.items[0].unit_price == Decimal("4.00")
        assert record.total_amount == Decimal("8.00")

    def test_saves_extracted_version(self, reconciler, db, seed, ctx):
        record = reconciler.reconcile(acme_widgets(), "hash-1", ctx)

        version = db.get(ExtractedShipment, record.extracted_data_id)
        assert version.version == 1
        assert version.source == ExtractionSource.PIPELINE
        assert version.items[0].description_text == "Widget A"

    def test_invalidates_items_and_customer(self, reconciler, cache, seed, ctx):
        reconciler.reconcile(acme_widgets(), "hash-1", ctx)

        touched = {(e.entity_type, e.entity_id) for e in cache.events_after(0)}
        assert (INVENTORY_ITEM, seed["widget"]) in touched
        assert (CUSTOMER_RECORDS, seed["acme"]) in touched


class TestIdempotence:
    def test_same_document_twice_yields_one_record(self, reconciler, ledger, db, seed, ctx):
        first = reconciler.reconcile(acme_widgets(), "hash-1", ctx)
        second = reconciler.reconcile(acme_widgets(), "hash-1", ctx)

        assert first.id == second.id
        assert ledger.current_stock(seed["widget"]) == 40
        assert len(db.execute(select(OutboundRecord)).scalars().all()) == 1

    def test_open_task_is_returned_for_same_document(self, reconciler, seed, ctx, set_stock):
        set_stock(seed["widget"], 5)

        first = reconciler.reconcile(acme_widgets(), "hash-1", ctx)
        second = reconciler.reconcile(acme_widgets(), "hash-1", ctx)

        assert isinstance(first, ReviewTask)
        assert first.id == second.id


class TestReviewRouting:
    def test_insufficient_stock_opens_task_and_leaves_stock(self, reconciler, ledger, db, seed, ctx, set_stock):
        set_stock(seed["widget"], 5)
        before = len(db.execute(select(StockMovement)).scalars().all())

        task = reconciler.reconcile(acme_widgets(quantity=10), "hash-1", ctx)

        assert isinstance(task, ReviewTask)
        assert task.reason == OutcomeReason.INSUFFICIENT_STOCK.value
        assert task.status == ReviewStatus.OPEN
        assert task.extracted_data_id is not None
        assert ledger.current_stock(seed["widget"]) == 5
        assert len(db.execute(select(StockMovement)).scalars().all()) == before

    def test_unknown_customer_opens_task(self, reconciler, ledger, seed, ctx):
        task = reconciler.reconcile(acme_widgets(customer="Initech"), "hash-1", ctx)

        assert task.reason == OutcomeReason.UNRESOLVED_ENTITY.value
        assert "Initech" in task.detail
        assert ledger.current_stock(seed["widget"]) == 50

    def test_every_unresolved_name_is_reported(self, reconciler, seed, ctx):
        task = reconciler.reconcile(acme_widgets(customer="Initech", description="Flux Capacitor"), "hash-1", ctx)

        assert "Initech" in task.detail
        assert "Flux Capacitor" in task.detail

    @pytest.mark.parametrize("state, reason", [
        (DocumentState.PENDING_REVIEW, OutcomeReason.LOW_CONFIDENCE),
        (DocumentState.REJECTED, OutcomeReason.PARSE_FAILURE),
    ])
    def test_pipeline_review_states_skip_the_ledger(self, reconciler, ledger, seed, ctx, state, reason):
        task = reconciler.reconcile(acme_widgets(), "hash-1", ctx, state=state, reason=reason)

        assert task.reason == reason.value
        assert ledger.current_stock(seed["widget"]) == 50

    def test_nothing_extracted_still_opens_task(self, reconciler, seed, ctx):
        task = reconciler.reconcile(
            None, "hash-1", ctx, state=DocumentState.REJECTED, reason=OutcomeReason.EXTRACTION_UNAVAILABLE,
        )

        assert task.extracted_data_id is None
        assert task.reason == OutcomeReason.EXTRACTION_UNAVAILABLE.value


class TestResolveReview:
    def _short_task(self, reconciler, seed, ctx, set_stock):
        set_stock(seed["widget"], 5)
        return reconciler.reconcile(acme_widgets(quantity=10), "hash-1", ctx)

    def test_reviewer_correction_commits_record(self, reconciler, ledger, db, seed, ctx, set_stock):
        task = self._short_task(reconciler, seed, ctx, set_stock)
        corrected = CorrectedShipmentData(
            customer_name="Acme Corp",
            items=[CorrectedItem(description="Widget A", quantity=5, unit_price=Decimal("12.50"))],
        )

        record = reconciler.resolve_review(task.id, corrected, ctx)

        assert ledger.current_stock(seed["widget"]) == 0
        assert record.review_task_id == task.id
        assert record.total_amount == Decimal("62.50")
        db.expire_all()
        closed = db.get(ReviewTask, task.id)
        assert closed.status == ReviewStatus.RESOLVED
        assert closed.outbound_record_id == record.id
        assert closed.resolved_by == ctx.actor_id

        version = db.get(ExtractedShipment, record.extracted_data_id)
        assert version.source == ExtractionSource.REVIEW
        assert version.version == 2
        assert version.parent_id == task.extracted_data_id
        assert version.overall_confidence == 1.0

    def test_explicit_ids_bypass_matching(self, reconciler, seed, ctx):
        task = reconciler.reconcile(acme_widgets(customer="Initech"), "hash-1", ctx)
        corrected = CorrectedShipmentData(
            customer_id=seed["globex"],
            items=[CorrectedItem(inventory_item_id=seed["gadget"], quantity=1)],
        )

        record = reconciler.resolve_review(task.id, corrected, ctx)

        assert record.customer_id == seed["globex"]
        assert record.items[0].inventory_item_id == seed["gadget"]

    def test_still_short_is_raised_and_task_stays_open(self, reconciler, ledger, db, seed, ctx, set_stock):
        task = self._short_task(reconciler, seed, ctx, set_stock)
        corrected = CorrectedShipmentData(
            customer_id=seed["acme"], items=[CorrectedItem(inventory_item_id=seed["widget"], quantity=6)],
        )

        with pytest.raises(InsufficientStock):
            reconciler.resolve_review(task.id, corrected, ctx)

        db.expire_all()
        assert db.get(ReviewTask, task.id).status == ReviewStatus.OPEN
        assert ledger.current_stock(seed["widget"]) == 5

    def test_unknown_explicit_id_is_raised(self, reconciler, seed, ctx):
        task = reconciler.reconcile(acme_widgets(customer="Initech"), "hash-1", ctx)
        corrected = CorrectedShipmentData(customer_id="nope", items=[CorrectedItem(description="Widget A", quantity=1)])

        with pytest.raises(UnresolvedEntity):
            reconciler.resolve_review(task.id, corrected, ctx)

    def test_second_resolution_conflicts(self, reconciler, ledger, seed, ctx, set_stock):
        task = self._short_task(reconciler, seed, ctx, set_stock)
        corrected = CorrectedShipmentData(
            customer_id=seed["acme"], items=[CorrectedItem(inventory_item_id=seed["widget"], quantity=2)],
        )
        reconciler.resolve_review(task.id, corrected, ctx)

        with pytest.raises(ConcurrencyConflict):
            reconciler.resolve_review(task.id, corrected, ctx)
        assert ledger.current_stock(seed["widget"]) == 3

    def test_unknown_task(self, reconciler, seed, ctx):
        corrected = CorrectedShipmentData(customer_id=seed["acme"], items=[CorrectedItem(description="Widget A", quantity=1)])
        with pytest.raises(ReviewTaskNotFound):
            reconciler.resolve_review("missing", corrected, ctx)

    def test_list_open_tasks(self, reconciler, seed, ctx, set_stock):
        task = self._short_task(reconciler, seed, ctx, set_stock)

        assert [t.id for t in reconciler.list_tasks()] == [task.id]
        assert reconciler.list_tasks(status=ReviewStatus.RESOLVED) == []
