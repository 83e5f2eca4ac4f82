"""Stock ledger: the only code that changes inventory quantities.

Every quantity change is an appended ``StockMovement``; ``InventoryItem.current_stock``
is the running sum of those deltas, maintained in the same transaction.

Reservation model: ``reserve`` applies the deduction immediately (delta -q) in
its own transaction, ``commit`` appends delta-0 ``commit`` rows marking the
deduction final, ``release`` appends +q ``release`` rows. So for every item
``current_stock == sum(delta)`` at all times.

Overlapping reservations are serialized by per-item locks taken in ascending
item id order, backed by ``SELECT ... FOR UPDATE`` in the same order on
databases that support row locks.
"""

import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from shipment_intake.config import settings
from shipment_intake.exceptions import InsufficientStock, InvalidReservationState, ItemNotFound, LedgerBusy
from shipment_intake.models.inventory import InventoryItem, MovementReason, Reservation, ReservationStatus, StockMovement
from shipment_intake.services.cache_service import INVENTORY_ITEM, CacheInvalidationCoordinator, stock_key

logger = logging.getLogger(__name__)


class KeyedLockRegistry:
    """Process-wide mutexes keyed by id, always acquired in ascending key order."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, keys):
        acquired = []
        try:
            for key in sorted(set(keys)):
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


ITEM_LOCKS = KeyedLockRegistry()


@dataclass(frozen=True)
class ReservationHandle:
    reservation_id: str
    correlation_id: str
    # (item_id, quantity) in ascending item id order
    lines: tuple[tuple[str, int], ...]

    @property
    def item_ids(self) -> list[str]:
        return [item_id for item_id, _ in self.lines]


def _canonical_lines(items) -> tuple[tuple[str, int], ...]:
    totals: dict[str, int] = defaultdict(int)
    for item_id, quantity in items:
        if quantity <= 0:
            raise ValueError(f"Quantity for item {item_id} must be positive, got {quantity}")
        totals[item_id] += quantity
    if not totals:
        raise ValueError("Reservation requires at least one item")
    return tuple(sorted(totals.items()))


class StockLedger:
    def __init__(
        self,
        db: Session,
        cache: CacheInvalidationCoordinator | None = None,
        locks: KeyedLockRegistry = ITEM_LOCKS,
        max_retries: int | None = None,
        retry_backoff: float | None = None,
    ):
        self.db = db
        self.cache = cache
        self.locks = locks
        self.max_retries = settings.LEDGER_MAX_RETRIES if max_retries is None else max_retries
        self.retry_backoff = settings.LEDGER_RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def reserve(self, items, correlation_id: str, actor_id: str = "") -> ReservationHandle:
        """Deduct every requested quantity or none of them.

        Raises ItemNotFound / InsufficientStock naming the first offending item
        in ascending id order. Neither is retried.
        """
        lines = _canonical_lines(items)
        item_ids = [item_id for item_id, _ in lines]

        with self.locks.hold(item_ids):
            reservation = self._with_contention_retry(
                lambda: self._reserve_once(lines, correlation_id, actor_id), correlation_id
            )

        logger.info(
            "Reserved %s for correlation %s (reservation %s)",
            ", ".join(f"{i}x{q}" for i, q in lines), correlation_id, reservation.id,
        )
        self._invalidate(item_ids)
        return ReservationHandle(reservation.id, correlation_id, lines)

    def commit(self, handle: ReservationHandle, actor_id: str = "") -> None:
        """Mark a reservation final. Idempotent.

        Commits the session: caller rows pending in the same session (e.g. the
        outbound record) are committed atomically with the commit movements.
        """
        result = self.db.execute(
            update(Reservation)
            .where(Reservation.id == handle.reservation_id, Reservation.status == ReservationStatus.RESERVED)
            .values(status=ReservationStatus.COMMITTED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            status = self._reservation_status(handle)
            if status == ReservationStatus.COMMITTED:
                logger.debug("Reservation %s already committed", handle.reservation_id)
                self.db.commit()
                return
            raise InvalidReservationState(
                f"Cannot commit reservation {handle.reservation_id} in '{getattr(status, 'value', status)}' status",
                {"reservation_id": handle.reservation_id},
            )

        balances = dict(
            self.db.execute(
                select(InventoryItem.id, InventoryItem.current_stock).where(InventoryItem.id.in_(handle.item_ids))
            ).all()
        )
        for item_id, quantity in handle.lines:
            self.db.add(StockMovement(
                item_id=item_id,
                reservation_id=handle.reservation_id,
                delta=0,
                reason=MovementReason.COMMIT,
                balance_after=balances.get(item_id, 0),
                actor_id=actor_id,
                correlation_id=handle.correlation_id,
                note=f"Committed reservation of {quantity}",
            ))
        self.db.commit()
        logger.info("Committed reservation %s", handle.reservation_id)

    def release(self, handle: ReservationHandle, actor_id: str = "", note: str = "") -> None:
        """Return reserved (or committed) stock. Idempotent."""
        with self.locks.hold(handle.item_ids):
            released = self._with_contention_retry(
                lambda: self._release_once(handle, actor_id, note), handle.correlation_id
            )
        if released:
            logger.info("Released reservation %s", handle.reservation_id)
            self._invalidate(handle.item_ids)

    def receive(self, item_id: str, quantity: int, actor_id: str = "", correlation_id: str = "", note: str = "") -> InventoryItem:
        """Book inbound stock."""
        if quantity <= 0:
            raise ValueError("Received quantity must be positive")
        with self.locks.hold([item_id]):
            item = self._with_contention_retry(
                lambda: self._receive_once(item_id, quantity, actor_id, correlation_id, note), correlation_id
            )
        self._invalidate([item_id])
        return item

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def current_stock(self, item_id: str) -> int:
        def load() -> int:
            stock = self.db.execute(
                select(InventoryItem.current_stock).where(InventoryItem.id == item_id)
            ).scalar_one_or_none()
            if stock is None:
                raise ItemNotFound(item_id)
            return stock

        if self.cache is None:
            return load()
        return self.cache.read(INVENTORY_ITEM, stock_key(item_id), load)

    def movements(self, item_id: str, limit: int = 100) -> list[StockMovement]:
        return list(
            self.db.execute(
                select(StockMovement)
                .where(StockMovement.item_id == item_id)
                .order_by(StockMovement.id.desc())
                .limit(limit)
            ).scalars()
        )

    def audit(self, item_id: str) -> tuple[int, int]:
        """Return (stored current_stock, sum of movement deltas)."""
        stored = self.db.execute(
            select(InventoryItem.current_stock).where(InventoryItem.id == item_id)
        ).scalar_one_or_none()
        if stored is None:
            raise ItemNotFound(item_id)
        derived = self.db.execute(
            select(func.coalesce(func.sum(StockMovement.delta), 0)).where(StockMovement.item_id == item_id)
        ).scalar_one()
        return stored, int(derived)

    def load_handle(self, reservation_id: str) -> ReservationHandle:
        reservation = self.db.get(Reservation, reservation_id)
        if reservation is None:
            raise InvalidReservationState(f"Reservation {reservation_id} not found")
        lines = self.db.execute(
            select(StockMovement.item_id, StockMovement.delta)
            .where(StockMovement.reservation_id == reservation_id, StockMovement.reason == MovementReason.RESERVE)
        ).all()
        return ReservationHandle(
            reservation.id,
            reservation.correlation_id,
            tuple(sorted((item_id, -delta) for item_id, delta in lines)),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_rows(self, item_ids: list[str]) -> dict[str, InventoryItem]:
        rows = self.db.execute(
            select(InventoryItem)
            .where(InventoryItem.id.in_(item_ids))
            .order_by(InventoryItem.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        return {row.id: row for row in rows}

    def _reserve_once(self, lines, correlation_id: str, actor_id: str) -> Reservation:
        rows = self._lock_rows([item_id for item_id, _ in lines])
        try:
            for item_id, quantity in lines:
                item = rows.get(item_id)
                if item is None:
                    raise ItemNotFound(item_id)
                if item.current_stock - quantity < 0:
                    raise InsufficientStock(item_id, quantity, item.current_stock)
        except (ItemNotFound, InsufficientStock):
            self.db.rollback()
            raise

        reservation = Reservation(correlation_id=correlation_id, actor_id=actor_id, status=ReservationStatus.RESERVED)
        self.db.add(reservation)
        self.db.flush()
        for item_id, quantity in lines:
            item = rows[item_id]
            item.current_stock -= quantity
            self.db.add(StockMovement(
                item_id=item_id,
                reservation_id=reservation.id,
                delta=-quantity,
                reason=MovementReason.RESERVE,
                balance_after=item.current_stock,
                actor_id=actor_id,
                correlation_id=correlation_id,
                note=f"Reserved {quantity} of {item.sku}",
            ))
        self.db.commit()
        return reservation

    def _release_once(self, handle: ReservationHandle, actor_id: str, note: str) -> bool:
        result = self.db.execute(
            update(Reservation)
            .where(
                Reservation.id == handle.reservation_id,
                Reservation.status.in_([ReservationStatus.RESERVED, ReservationStatus.COMMITTED]),
            )
            .values(status=ReservationStatus.RELEASED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            logger.debug("Reservation %s already released", handle.reservation_id)
            return False

        rows = self._lock_rows(handle.item_ids)
        for item_id, quantity in handle.lines:
            item = rows[item_id]
            item.current_stock += quantity
            self.db.add(StockMovement(
                item_id=item_id,
                reservation_id=handle.reservation_id,
                delta=quantity,
                reason=MovementReason.RELEASE,
                balance_after=item.current_stock,
                actor_id=actor_id,
                correlation_id=handle.correlation_id,
                note=note or f"Released {quantity} of {item.sku}",
            ))
        self.db.commit()
        return True

    def _receive_once(self, item_id: str, quantity: int, actor_id: str, correlation_id: str, note: str) -> InventoryItem:
        item = self._lock_rows([item_id]).get(item_id)
        if item is None:
            self.db.rollback()
            raise ItemNotFound(item_id)
        item.current_stock += quantity
        self.db.add(StockMovement(
            item_id=item_id,
            delta=quantity,
            reason=MovementReason.RECEIPT,
            balance_after=item.current_stock,
            actor_id=actor_id,
            correlation_id=correlation_id,
            note=note or f"Received {quantity}",
        ))
        self.db.commit()
        self.db.refresh(item)
        return item

    def _with_contention_retry(self, operation, correlation_id: str):
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation()
            except OperationalError as e:
                self.db.rollback()
                if attempt > self.max_retries:
                    logger.error("Ledger busy after %d attempts (correlation %s): %s", attempt, correlation_id, e)
                    raise LedgerBusy(
                        "Stock ledger is busy, try again",
                        {"correlation_id": correlation_id, "attempts": attempt},
                    ) from e
                logger.warning("Ledger contention on attempt %d (correlation %s): %s", attempt, correlation_id, e)
                time.sleep(self.retry_backoff * (2 ** (attempt - 1)))

    def _reservation_status(self, handle: ReservationHandle) -> str | None:
        return self.db.execute(
            select(Reservation.status).where(Reservation.id == handle.reservation_id)
        ).scalar_one_or_none()

    def _invalidate(self, item_ids) -> None:
        if self.cache is not None:
            self.cache.invalidate_many(INVENTORY_ITEM, item_ids)
