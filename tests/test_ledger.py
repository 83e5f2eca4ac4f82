import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from shipment_intake.exceptions import InsufficientStock, InvalidReservationState, ItemNotFound, LedgerBusy
from shipment_intake.models.inventory import MovementReason, Reservation, ReservationStatus, StockMovement
from shipment_intake.services import ledger_service
from shipment_intake.services.cache_service import stock_key
from shipment_intake.services.ledger_service import StockLedger


def _movements(db, item_id):
    return db.execute(
        select(StockMovement).where(StockMovement.item_id == item_id).order_by(StockMovement.id)
    ).scalars().all()


def _assert_invariant(ledger, item_id):
    stored, derived = ledger.audit(item_id)
    assert stored == derived
    assert stored >= 0


class TestReserve:
    def test_reserve_deducts_every_item(self, ledger, seed):
        handle = ledger.reserve([(seed["widget"], 10), (seed["gadget"], 5)], correlation_id="c1", actor_id="u1")

        assert ledger.current_stock(seed["widget"]) == 40
        assert ledger.current_stock(seed["gadget"]) == 15
        assert dict(handle.lines) == {seed["widget"]: 10, seed["gadget"]: 5}
        _assert_invariant(ledger, seed["widget"])
        _assert_invariant(ledger, seed["gadget"])

    def test_duplicate_lines_are_combined(self, ledger, seed):
        handle = ledger.reserve([(seed["widget"], 3), (seed["widget"], 4)], correlation_id="c1")

        assert handle.lines == ((seed["widget"], 7),)
        assert ledger.current_stock(seed["widget"]) == 43

    def test_all_or_nothing_on_insufficient_stock(self, ledger, db, seed):
        before = len(_movements(db, seed["widget"]))

        with pytest.raises(InsufficientStock) as exc:
            ledger.reserve([(seed["widget"], 10), (seed["gadget"], 21)], correlation_id="c1")

        assert exc.value.item_id == seed["gadget"]
        assert exc.value.requested == 21
        assert exc.value.available == 20
        assert ledger.current_stock(seed["widget"]) == 50
        assert ledger.current_stock(seed["gadget"]) == 20
        assert len(_movements(db, seed["widget"])) == before
        assert db.execute(select(Reservation)).scalars().all() == []

    def test_unknown_item(self, ledger, seed):
        with pytest.raises(ItemNotFound):
            ledger.reserve([(seed["widget"], 1), ("missing-item", 1)], correlation_id="c1")
        assert ledger.current_stock(seed["widget"]) == 50

    @pytest.mark.parametrize("quantity", [0, -3])
    def test_rejects_non_positive_quantity(self, ledger, seed, quantity):
        with pytest.raises(ValueError):
            ledger.reserve([(seed["widget"], quantity)], correlation_id="c1")

    def test_rejects_empty_request(self, ledger, seed):
        with pytest.raises(ValueError):
            ledger.reserve([], correlation_id="c1")


class TestCommitAndRelease:
    def test_commit_writes_zero_delta_movements(self, ledger, db, seed):
        handle = ledger.reserve([(seed["widget"], 10)], correlation_id="c1", actor_id="u1")
        ledger.commit(handle)

        reasons = sorted(
            (m.delta, m.reason) for m in _movements(db, seed["widget"]) if m.reservation_id == handle.reservation_id
        )
        assert reasons == [(-10, MovementReason.RESERVE), (0, MovementReason.COMMIT)]
        assert db.get(Reservation, handle.reservation_id).status == ReservationStatus.COMMITTED
        assert ledger.current_stock(seed["widget"]) == 40

    def test_commit_is_idempotent(self, ledger, db, seed):
        handle = ledger.reserve([(seed["widget"], 10)], correlation_id="c1")
        ledger.commit(handle)
        ledger.commit(handle)

        commits = [m for m in _movements(db, seed["widget"]) if m.reason == MovementReason.COMMIT]
        assert len(commits) == 1
        _assert_invariant(ledger, seed["widget"])

    def test_release_restores_stock_once(self, ledger, db, seed):
        handle = ledger.reserve([(seed["widget"], 10)], correlation_id="c1")
        ledger.release(handle, actor_id="u1")
        ledger.release(handle, actor_id="u1")

        assert ledger.current_stock(seed["widget"]) == 50
        releases = [m for m in _movements(db, seed["widget"]) if m.reason == MovementReason.RELEASE]
        assert len(releases) == 1
        _assert_invariant(ledger, seed["widget"])

    def test_release_after_commit(self, ledger, seed):
        handle = ledger.reserve([(seed["widget"], 5)], correlation_id="c1")
        ledger.commit(handle)
        ledger.release(handle)

        assert ledger.current_stock(seed["widget"]) == 50

    def test_cannot_commit_released_reservation(self, ledger, seed):
        handle = ledger.reserve([(seed["widget"], 5)], correlation_id="c1")
        ledger.release(handle)

        with pytest.raises(InvalidReservationState):
            ledger.commit(handle)

    def test_load_handle_round_trips_lines(self, ledger, seed):
        handle = ledger.reserve([(seed["gadget"], 2), (seed["widget"], 3)], correlation_id="c1")

        loaded = ledger.load_handle(handle.reservation_id)

        assert loaded.lines == handle.lines
        assert loaded.correlation_id == "c1"


class TestReceiptsAndReads:
    def test_receive_books_inbound_stock(self, ledger, db, seed):
        item = ledger.receive(seed["gadget"], 7, actor_id="u1", correlation_id="c9", note="Dock 2")

        assert item.current_stock == 27
        receipts = [m for m in _movements(db, seed["gadget"]) if m.note == "Dock 2"]
        assert len(receipts) == 1
        last = receipts[0]
        assert last.reason == MovementReason.RECEIPT
        assert last.delta == 7
        assert last.balance_after == 27
        _assert_invariant(ledger, seed["gadget"])

    def test_receive_unknown_item(self, ledger, seed):
        with pytest.raises(ItemNotFound):
            ledger.receive("missing-item", 1)

    def test_current_stock_is_cached_and_invalidated(self, ledger, cache, seed):
        assert ledger.current_stock(seed["widget"]) == 50
        assert stock_key(seed["widget"]) in cache.cache

        ledger.reserve([(seed["widget"], 1)], correlation_id="c1")

        assert stock_key(seed["widget"]) not in cache.cache
        assert ledger.current_stock(seed["widget"]) == 49

    def test_movements_lists_item_history(self, ledger, seed):
        ledger.reserve([(seed["widget"], 1)], correlation_id="c1")

        history = ledger.movements(seed["widget"], limit=10)

        assert len(history) == 2
        assert {m.reason for m in history} == {MovementReason.RECEIPT, MovementReason.RESERVE}

    def test_movements_come_back_newest_first(self, ledger, seed):
        handle = ledger.reserve([(seed["widget"], 4)], correlation_id="c1", actor_id="u1")
        ledger.commit(handle, actor_id="u1")
        ledger.release(handle, actor_id="u2")

        history = ledger.movements(seed["widget"], limit=10)

        assert [m.reason for m in history] == [
            MovementReason.RELEASE, MovementReason.COMMIT, MovementReason.RESERVE, MovementReason.RECEIPT,
        ]
        assert [m.balance_after for m in history] == [50, 46, 46, 50]

    def test_commit_movements_record_the_actor(self, ledger, db, seed):
        handle = ledger.reserve([(seed["widget"], 2)], correlation_id="c1", actor_id="u1")
        ledger.commit(handle, actor_id="u1")

        commits = [m for m in _movements(db, seed["widget"]) if m.reason == MovementReason.COMMIT]
        assert [m.actor_id for m in commits] == ["u1"]


def _locked_database(monkeypatch, ledger, failures):
    """Make row locking fail with a database lock error the first `failures` times."""
    real_lock_rows = ledger._lock_rows
    calls = {"count": 0}

    def lock_rows(item_ids):
        calls["count"] += 1
        if calls["count"] <= failures:
            raise OperationalError("SELECT ... FOR UPDATE", {}, Exception("database is locked"))
        return real_lock_rows(item_ids)

    monkeypatch.setattr(ledger, "_lock_rows", lock_rows)
    return calls


class TestContention:
    @pytest.fixture
    def sleeps(self, monkeypatch):
        delays = []
        monkeypatch.setattr(ledger_service.time, "sleep", delays.append)
        return delays

    def test_retries_with_backoff_then_succeeds(self, monkeypatch, db, cache, locks, seed, sleeps):
        ledger = StockLedger(db, cache, locks=locks, max_retries=2, retry_backoff=0.1)
        calls = _locked_database(monkeypatch, ledger, failures=2)

        handle = ledger.reserve([(seed["widget"], 3)], correlation_id="c1", actor_id="u1")

        assert calls["count"] == 3
        assert sleeps == pytest.approx([0.1, 0.2])
        assert db.get(Reservation, handle.reservation_id).status == ReservationStatus.RESERVED
        assert ledger.current_stock(seed["widget"]) == 47
        _assert_invariant(ledger, seed["widget"])

    def test_gives_up_as_busy_without_writing(self, monkeypatch, db, cache, locks, seed, sleeps):
        ledger = StockLedger(db, cache, locks=locks, max_retries=2, retry_backoff=0.1)
        before = len(_movements(db, seed["widget"]))
        calls = _locked_database(monkeypatch, ledger, failures=3)

        with pytest.raises(LedgerBusy) as exc_info:
            ledger.reserve([(seed["widget"], 3)], correlation_id="c-busy", actor_id="u1")

        assert calls["count"] == 3
        assert len(sleeps) == 2
        assert exc_info.value.details == {"correlation_id": "c-busy", "attempts": 3}
        assert len(_movements(db, seed["widget"])) == before
        assert db.execute(select(Reservation).where(Reservation.correlation_id == "c-busy")).first() is None
        assert ledger.current_stock(seed["widget"]) == 50
        _assert_invariant(ledger, seed["widget"])

    def test_receipts_also_surface_busy(self, monkeypatch, db, cache, locks, seed, sleeps):
        ledger = StockLedger(db, cache, locks=locks, max_retries=0, retry_backoff=0.1)
        _locked_database(monkeypatch, ledger, failures=1)

        with pytest.raises(LedgerBusy):
            ledger.receive(seed["gadget"], 5)

        assert sleeps == []
        assert ledger.current_stock(seed["gadget"]) == 20
