# Overview: Inventory reservation ledger; every stock mutation is one conditional UPDATE.

"""
Inventory Reservation Ledger

Single source of truth for "can this sale proceed".

INVARIANTS:
- available = stock - reserved, never negative (also enforced by CHECK constraints)
- reserve succeeds only if available >= quantity at write time; the check and the
  increment are one UPDATE ... WHERE stock - reserved >= :q statement
- is_low_stock is recomputed in the same statement as the quantity change
- a reservation leaves HELD exactly once (commit/release are idempotent)
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import StockLevel, InventoryReservation, Sale
from ..validation import parse_positive_int, ValidationError
from crm.time_utils import utcnow
from .concurrency import conditional_update


class ReservationError(Exception):
    """Raised when a stock ledger operation cannot be applied."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class InsufficientStockError(ReservationError):
    """Requested quantity exceeds what is available at the store."""


def _stock_filter(product_id: int, store_id: int):
    return (StockLevel.product_id == product_id, StockLevel.store_id == store_id)


def get_stock_level(product_id: int, store_id: int) -> StockLevel | None:
    return db.session.query(StockLevel).filter_by(product_id=product_id, store_id=store_id).first()


def get_available(product_id: int, store_id: int) -> int:
    level = get_stock_level(product_id, store_id)
    if not level:
        return 0
    # Re-read in case a conditional UPDATE ran after the row was loaded
    db.session.refresh(level)
    return level.available


def get_availability(product_id: int, store_id: int) -> dict:
    level = get_stock_level(product_id, store_id)
    if not level:
        return {
            "product_id": product_id,
            "store_id": store_id,
            "stock": 0,
            "reserved": 0,
            "available": 0,
            "low_stock_threshold": None,
            "is_low_stock": True,
        }
    db.session.refresh(level)
    return level.to_dict()


def ensure_stock_level(product_id: int, store_id: int, *, low_stock_threshold: int | None = None) -> StockLevel:
    """Get or create the StockLevel row for (product, store)."""
    level = get_stock_level(product_id, store_id)
    if level:
        return level
    threshold = 5 if low_stock_threshold is None else low_stock_threshold
    try:
        with db.session.begin_nested():
            level = StockLevel(
                product_id=product_id,
                store_id=store_id,
                stock=0,
                reserved=0,
                low_stock_threshold=threshold,
                is_low_stock=True,
            )
            db.session.add(level)
    except IntegrityError:
        level = get_stock_level(product_id, store_id)
    return level


def reserve(product_id: int, store_id: int, quantity: int, *, commit: bool = True) -> InventoryReservation:
    """
    Hold `quantity` units of stock at a store.

    Raises InsufficientStockError (no state change) when fewer than
    `quantity` units are available. With commit=True the hold is committed
    immediately so concurrent requests observe it.
    """
    qty = parse_positive_int(quantity, "quantity")

    stmt = (
        update(StockLevel)
        .where(*_stock_filter(product_id, store_id))
        .where(StockLevel.stock - StockLevel.reserved >= qty)
        .values(
            reserved=StockLevel.reserved + qty,
            is_low_stock=(StockLevel.stock - StockLevel.reserved - qty) <= StockLevel.low_stock_threshold,
        )
    )
    if conditional_update(stmt) == 0:
        available = get_available(product_id, store_id)
        raise InsufficientStockError(
            f"Insufficient stock for product {product_id}",
            details={
                "product_id": product_id,
                "store_id": store_id,
                "requested": qty,
                "available": available,
            },
        )

    reservation = InventoryReservation(
        product_id=product_id,
        store_id=store_id,
        quantity=qty,
        status="HELD",
        created_at=utcnow(),
    )
    db.session.add(reservation)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return reservation


def commit(product_id: int, store_id: int, quantity: int) -> None:
    """Convert held units into a permanent decrement: stock -= q, reserved -= q."""
    qty = parse_positive_int(quantity, "quantity")
    stmt = (
        update(StockLevel)
        .where(*_stock_filter(product_id, store_id))
        .where(StockLevel.reserved >= qty, StockLevel.stock >= qty)
        .values(
            stock=StockLevel.stock - qty,
            reserved=StockLevel.reserved - qty,
            is_low_stock=(StockLevel.stock - StockLevel.reserved) <= StockLevel.low_stock_threshold,
        )
    )
    if conditional_update(stmt) == 0:
        raise ReservationError(
            "Cannot commit more units than are reserved",
            details={"product_id": product_id, "store_id": store_id, "quantity": qty},
        )


def release(product_id: int, store_id: int, quantity: int) -> None:
    """Drop a hold without touching stock: reserved -= q."""
    qty = parse_positive_int(quantity, "quantity")
    stmt = (
        update(StockLevel)
        .where(*_stock_filter(product_id, store_id))
        .where(StockLevel.reserved >= qty)
        .values(
            reserved=StockLevel.reserved - qty,
            is_low_stock=(StockLevel.stock - StockLevel.reserved + qty) <= StockLevel.low_stock_threshold,
        )
    )
    if conditional_update(stmt) == 0:
        raise ReservationError(
            "Cannot release more units than are reserved",
            details={"product_id": product_id, "store_id": store_id, "quantity": qty},
        )


def restock(product_id: int, store_id: int, quantity: int, *, low_stock_threshold: int | None = None) -> None:
    """Add units to a store's stock (receipt, cancellation or return)."""
    qty = parse_positive_int(quantity, "quantity")
    ensure_stock_level(product_id, store_id, low_stock_threshold=low_stock_threshold)
    stmt = (
        update(StockLevel)
        .where(*_stock_filter(product_id, store_id))
        .values(
            stock=StockLevel.stock + qty,
            is_low_stock=(StockLevel.stock - StockLevel.reserved + qty) <= StockLevel.low_stock_threshold,
        )
    )
    conditional_update(stmt)


def set_low_stock_threshold(product_id: int, store_id: int, threshold) -> StockLevel:
    if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 0:
        raise ValidationError(
            "low_stock_threshold must be a non-negative integer",
            [{"field": "low_stock_threshold", "message": "must be a non-negative integer"}],
        )
    level = ensure_stock_level(product_id, store_id)
    stmt = (
        update(StockLevel)
        .where(*_stock_filter(product_id, store_id))
        .values(
            low_stock_threshold=threshold,
            is_low_stock=(StockLevel.stock - StockLevel.reserved) <= threshold,
        )
    )
    conditional_update(stmt)
    db.session.commit()
    db.session.refresh(level)
    return level


def _resolve_reservation(reservation_id: int, target: str) -> InventoryReservation | None:
    """
    Move a reservation out of HELD. Returns the reservation when this call
    performed the move, None when it had already left HELD.
    """
    stmt = (
        update(InventoryReservation)
        .where(InventoryReservation.id == reservation_id, InventoryReservation.status == "HELD")
        .values(status=target, resolved_at=utcnow())
    )
    if conditional_update(stmt) == 0:
        return None
    reservation = db.session.get(InventoryReservation, reservation_id)
    db.session.refresh(reservation)
    return reservation


def commit_reservation(reservation_id: int, *, commit_tx: bool = False) -> bool:
    reservation = _resolve_reservation(reservation_id, "COMMITTED")
    if reservation is None:
        return False
    commit(reservation.product_id, reservation.store_id, reservation.quantity)
    if commit_tx:
        db.session.commit()
    return True


def release_reservation(reservation_id: int, *, commit_tx: bool = False) -> bool:
    reservation = _resolve_reservation(reservation_id, "RELEASED")
    if reservation is None:
        return False
    release(reservation.product_id, reservation.store_id, reservation.quantity)
    if commit_tx:
        db.session.commit()
    return True


def release_all(reservation_ids: list[int]) -> None:
    """Best-effort compensation for a failed sale; each release is committed."""
    for reservation_id in reservation_ids:
        try:
            release_reservation(reservation_id, commit_tx=True)
        except ReservationError:
            db.session.rollback()
            current_app.logger.exception("Failed to release reservation %s", reservation_id)


def sweep_stale_reservations(*, older_than_minutes: int | None = None, now=None) -> dict:
    """
    Reconcile HELD reservations older than the TTL.

    A reservation linked to a persisted, non-cancelled sale is committed
    (the crash happened after the sale was saved); anything else is released.
    """
    if older_than_minutes is None:
        older_than_minutes = current_app.config.get("RESERVATION_TTL_MINUTES", 15)
    cutoff = (now or utcnow()) - timedelta(minutes=older_than_minutes)

    stale = (
        db.session.query(InventoryReservation.id, InventoryReservation.sale_id, Sale.status)
        .outerjoin(Sale, Sale.id == InventoryReservation.sale_id)
        .filter(InventoryReservation.status == "HELD", InventoryReservation.created_at < cutoff)
        .order_by(InventoryReservation.id.asc())
        .all()
    )

    committed = 0
    released = 0
    for reservation_id, sale_id, sale_status in stale:
        if sale_id is not None and sale_status not in (None, "cancelled"):
            if commit_reservation(reservation_id):
                committed += 1
        else:
            if release_reservation(reservation_id):
                released += 1
        db.session.commit()

    if committed or released:
        current_app.logger.info(
            "Reservation sweep: committed=%s released=%s cutoff=%s", committed, released, cutoff
        )
    return {"committed": committed, "released": released}
