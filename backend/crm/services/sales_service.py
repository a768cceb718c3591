"""
Sales Service - sale transaction coordinator

create_sale is all-or-nothing with respect to stock:
1. resolve the customer
2. reserve every line (each hold committed so concurrent sales see it);
   any failure releases the holds taken so far
3. price the lines, compute subtotal / tax / total
4. persist the sale with its lines, linking each reservation
5. commit every reservation (stock decremented) in the same transaction
6. award loyalty points and queue the receipt

A crash between 2 and 4 leaves HELD reservations without a sale; the
reservation sweep releases them. A crash after 4 leaves HELD reservations
linked to a sale; the sweep commits them.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import Sale, SaleLine, SaleRefund, Product, Store, Customer, InventoryReservation
from ..models.sales import SALE_STATUSES, PAYMENT_METHODS
from ..validation import NotFoundError, ValidationError, parse_positive_int, parse_money_cents
from crm.time_utils import utcnow, parse_iso_datetime, parse_date_range_end
from . import reservation_service, notification_service
from .activity_service import append_activity
from .concurrency import lock_for_update, run_with_retry, conditional_update
from .customer_service import CustomerRef, resolve_customer_ref, record_purchase
from .document_service import next_document_number
from .reservation_service import ReservationError
from .store_service import tax_rate_bps_for_store


class SaleError(Exception):
    """Raised for sale operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer division rounding halves away from zero (non-negative inputs)."""
    return (2 * numerator + denominator) // (2 * denominator)


def line_total_cents(quantity: int, unit_price_cents: int, discount_bps: int) -> int:
    return round_half_up_div(quantity * unit_price_cents * (10000 - discount_bps), 10000)


def tax_cents_for(subtotal_cents: int, tax_rate_bps: int) -> int:
    return round_half_up_div(subtotal_cents * tax_rate_bps, 10000)


def loyalty_points_for(total_cents: int) -> int:
    """floor(total / 100) in currency units."""
    cents_per_point = int(current_app.config.get("LOYALTY_CENTS_PER_POINT", 10000))
    return max(total_cents, 0) // cents_per_point


def parse_sale_items(raw_items) -> list[dict]:
    """
    Boundary parser for sale lines.

    Each item: product_id, quantity, optional unit_price_cents and
    discount (percent, 0-100, may be fractional to two places).
    """
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Sale must have at least one item", [{"field": "items", "message": "At least one item is required"}])

    items = []
    errors = []
    for idx, raw in enumerate(raw_items):
        prefix = f"items[{idx}]"
        if not isinstance(raw, dict):
            errors.append({"field": prefix, "message": "Item must be an object"})
            continue
        try:
            product_id = parse_positive_int(raw.get("product_id", raw.get("product")), f"{prefix}.product_id")
            quantity = parse_positive_int(raw.get("quantity"), f"{prefix}.quantity")
            unit_price = raw.get("unit_price_cents")
            if unit_price is not None:
                unit_price = parse_money_cents(unit_price, f"{prefix}.unit_price_cents")
                if unit_price < 0:
                    raise ValidationError("unit price must be >= 0", [{"field": f"{prefix}.unit_price_cents", "message": "must be >= 0"}])
            discount = raw.get("discount", 0) or 0
            if isinstance(discount, bool) or not isinstance(discount, (int, float)) or not (0 <= discount <= 100):
                raise ValidationError("discount must be 0-100", [{"field": f"{prefix}.discount", "message": "must be a percentage between 0 and 100"}])
        except ValidationError as exc:
            errors.extend(exc.errors or [{"field": prefix, "message": str(exc)}])
            continue
        items.append({
            "product_id": product_id,
            "quantity": quantity,
            "unit_price_cents": unit_price,
            "discount_bps": int(round(discount * 100)),
        })

    if errors:
        message = errors[0]["message"] if len(errors) == 1 else "Validation failed"
        raise ValidationError(message, errors)
    return items


def _load_products(items: list[dict]) -> dict[int, Product]:
    ids = {item["product_id"] for item in items}
    products = {
        p.id: p
        for p in db.session.query(Product).filter(Product.id.in_(ids), Product.is_active.is_(True)).all()
    }
    missing = sorted(ids - products.keys())
    if missing:
        raise NotFoundError(f"Product not found: {missing[0]}")
    return products


def create_sale(
    *,
    store_id: int,
    customer_ref: CustomerRef,
    items: list[dict],
    payment_method: str = "cash",
    status: str | None = None,
    notes: str | None = None,
    user_id: int | None = None,
) -> tuple[Sale, list[int]]:
    """
    Create a sale atomically with respect to stock.

    Returns (sale, outbox_ids); the caller dispatches outbox ids after return.
    Raises InsufficientStockError naming the first line that could not be
    reserved; no stock changes remain in that case.
    """
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            "Invalid payment method",
            [{"field": "payment_method", "message": f"must be one of {', '.join(PAYMENT_METHODS)}"}],
        )
    status = status or current_app.config.get("DEFAULT_SALE_STATUS", "completed")
    if status not in ("pending", "completed"):
        raise ValidationError("New sales must be pending or completed", [{"field": "status", "message": "must be pending or completed"}])

    store = db.session.get(Store, store_id)
    if not store or not store.is_active:
        raise NotFoundError("Store not found")

    # 1. customer
    customer = resolve_customer_ref(customer_ref)
    customer_id = customer.id
    products = _load_products(items)
    db.session.commit()

    # 2. reservations, all or nothing
    reservation_ids: list[int] = []
    try:
        for item in items:
            reservation = reservation_service.reserve(item["product_id"], store_id, item["quantity"])
            reservation_ids.append(reservation.id)
    except Exception:
        db.session.rollback()
        reservation_service.release_all(reservation_ids)
        raise

    try:
        # 3. pricing
        tax_rate_bps = tax_rate_bps_for_store(store)
        lines = []
        subtotal = 0
        gross = 0
        for idx, (item, reservation_id) in enumerate(zip(items, reservation_ids), start=1):
            product = products[item["product_id"]]
            unit_price = item["unit_price_cents"] if item["unit_price_cents"] is not None else product.price_cents
            total = line_total_cents(item["quantity"], unit_price, item["discount_bps"])
            gross += item["quantity"] * unit_price
            subtotal += total
            lines.append(SaleLine(
                line_number=idx,
                product_id=product.id,
                quantity=item["quantity"],
                unit_price_cents=unit_price,
                discount_bps=item["discount_bps"],
                line_total_cents=total,
                reservation_id=reservation_id,
            ))
        tax = tax_cents_for(subtotal, tax_rate_bps)
        total_cents = subtotal + tax
        points = loyalty_points_for(total_cents) if status == "completed" else 0

        # 4. persist
        sale = Sale(
            sale_number=next_document_number(store_id=store_id, document_type="SALE", prefix="S"),
            customer_id=customer_id,
            store_id=store_id,
            payment_method=payment_method,
            status=status,
            subtotal_cents=subtotal,
            discount_cents=gross - subtotal,
            tax_rate_bps=tax_rate_bps,
            tax_cents=tax,
            total_cents=total_cents,
            refunded_cents=0,
            loyalty_points_awarded=points,
            notes=(notes or "").strip() or None,
            created_by_user_id=user_id,
        )
        db.session.add(sale)
        db.session.flush()
        for line in lines:
            line.sale_id = sale.id
            db.session.add(line)

        # 5. reservations become permanent in the same transaction
        for reservation_id in reservation_ids:
            conditional_update(
                update(InventoryReservation)
                .where(InventoryReservation.id == reservation_id)
                .values(sale_id=sale.id)
            )
            reservation_service.commit_reservation(reservation_id)

        # 6. loyalty + receipt
        customer = db.session.get(Customer, customer_id)
        if status == "completed":
            record_purchase(customer, total_cents=total_cents, points=points, at=utcnow())

        append_activity(
            event_type="sale.created",
            entity_type="sale",
            entity_id=sale.id,
            store_id=store_id,
            actor_user_id=user_id,
            note=f"Sale {sale.sale_number} {status} total {total_cents}",
        )
        outbox_ids = []
        if status == "completed":
            outbox_ids = [row.id for row in notification_service.enqueue_sale_receipt(sale)]

        db.session.commit()
    except Exception:
        db.session.rollback()
        reservation_service.release_all(reservation_ids)
        raise

    return sale, outbox_ids


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if not sale or not sale.is_active:
        raise NotFoundError("Sale not found")
    return sale


def get_sale_by_number(sale_number: str) -> Sale:
    sale = db.session.query(Sale).filter_by(sale_number=(sale_number or "").strip().upper(), is_active=True).first()
    if not sale:
        raise NotFoundError("Sale not found")
    return sale


def _cancel_locked(sale: Sale, reason: str | None, user_id: int | None) -> bool:
    """
    Flip the sale to cancelled and restock every un-returned unit.

    The status flip is a conditional UPDATE, so only one caller ever gets
    rowcount 1 and restocks; everyone else sees a no-op.
    """
    now = utcnow()
    previous = sale.status
    flipped = conditional_update(
        update(Sale)
        .where(Sale.id == sale.id, Sale.status != "cancelled")
        .values(status="cancelled", cancelled_at=now, version_id=Sale.version_id + 1)
    )
    if not flipped:
        return False

    for line in sale.lines:
        remaining = line.quantity - (line.returned_quantity or 0)
        if remaining > 0:
            reservation_service.restock(line.product_id, sale.store_id, remaining)

    # Pending sales never touched the customer's aggregates
    if previous != "pending" and sale.customer:
        customer = sale.customer
        customer.loyalty_points = max((customer.loyalty_points or 0) - sale.loyalty_points_awarded, 0)
        customer.total_purchases_cents = max((customer.total_purchases_cents or 0) - sale.total_cents, 0)

    append_activity(
        event_type="sale.cancelled",
        entity_type="sale",
        entity_id=sale.id,
        store_id=sale.store_id,
        actor_user_id=user_id,
        occurred_at=now,
        note=reason or f"Sale {sale.sale_number} cancelled",
    )
    return True


def update_status(
    sale_id: int, status: str, *, reason: str | None = None, user_id: int | None = None
) -> tuple[Sale, list[int]]:
    """
    Change a sale's status. Returns (sale, outbox_ids); the caller dispatches
    the ids once the commit has happened.

    - cancelled is terminal; cancelling again is a no-op
    - entering cancelled restores stock exactly once
    - refunded / partially_refunded are only reached through add_refund
    """
    if status not in SALE_STATUSES:
        raise ValidationError("Invalid status", [{"field": "status", "message": f"must be one of {', '.join(SALE_STATUSES)}"}])
    if status in ("refunded", "partially_refunded"):
        raise SaleError("Use the refund endpoint to refund a sale", details={"status": status})

    def _op():
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id, is_active=True)).first()
        if not sale:
            raise NotFoundError("Sale not found")

        if sale.status == "cancelled":
            if status == "cancelled":
                return sale, []
            raise SaleError("Cancelled sales cannot change status", details={"status": sale.status})

        if status == "cancelled":
            if _cancel_locked(sale, reason, user_id):
                if reason:
                    db.session.refresh(sale)
                    sale.notes = f"{sale.notes}\n{reason}" if sale.notes else reason
            db.session.commit()
            db.session.refresh(sale)
            return sale, []

        if sale.status in ("refunded", "partially_refunded"):
            raise SaleError(f"Cannot move a {sale.status} sale to {status}", details={"status": sale.status})

        previous = sale.status
        if previous == "pending" and status == "completed":
            points = loyalty_points_for(sale.total_cents)
            sale.loyalty_points_awarded = points
            record_purchase(sale.customer, total_cents=sale.total_cents, points=points, at=utcnow())
        elif previous == "completed" and status == "pending":
            raise SaleError("Completed sales cannot return to pending", details={"status": previous})

        sale.status = status
        if reason:
            sale.notes = f"{sale.notes}\n{reason}" if sale.notes else reason
        receipts = []
        if previous == "pending" and status == "completed":
            receipts = notification_service.enqueue_sale_receipt(sale)
        append_activity(
            event_type="sale.status_changed",
            entity_type="sale",
            entity_id=sale.id,
            store_id=sale.store_id,
            actor_user_id=user_id,
            note=f"{previous} -> {status}",
        )
        db.session.commit()
        return sale, [row.id for row in receipts]

    try:
        return run_with_retry(_op)
    except (SaleError, NotFoundError, ReservationError):
        db.session.rollback()
        raise


def _parse_refund_items(raw_items) -> list[dict]:
    if raw_items is None:
        return []
    if not isinstance(raw_items, list):
        raise ValidationError("items must be a list", [{"field": "items", "message": "must be a list"}])
    parsed = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError("Item must be an object", [{"field": f"items[{idx}]", "message": "Item must be an object"}])
        parsed.append({
            "product_id": parse_positive_int(raw.get("product_id"), f"items[{idx}].product_id"),
            "quantity": parse_positive_int(raw.get("quantity"), f"items[{idx}].quantity"),
        })
    return parsed


def add_refund(
    sale_id: int,
    *,
    amount_cents: int,
    reason: str,
    processed_by: str | None = None,
    user_id: int | None = None,
    items=None,
) -> Sale:
    """
    Record a refund against a sale.

    Allowed only while can_be_refunded(); the amount must be positive and
    at most the remaining refundable amount. Optional items restock returned
    units, bounded by what was sold minus what was already returned.
    Loyalty points already awarded are kept.
    """
    amount_cents = parse_money_cents(amount_cents, "amount_cents")
    if amount_cents < 1:
        raise ValidationError("Refund amount must be at least 0.01", [{"field": "amount_cents", "message": "must be at least 1"}])
    if not (reason or "").strip():
        raise ValidationError("Refund reason is required", [{"field": "reason", "message": "Refund reason is required"}])
    returned = _parse_refund_items(items)

    def _op():
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id, is_active=True)).first()
        if not sale:
            raise NotFoundError("Sale not found")
        if not sale.can_be_refunded():
            raise SaleError("This sale cannot be refunded", details={"status": sale.status, "refunded_cents": sale.refunded_cents})
        if amount_cents > sale.refundable_cents:
            raise SaleError(
                "Refund amount exceeds the refundable balance",
                details={"requested": amount_cents, "refundable": sale.refundable_cents},
            )

        lines_by_product: dict[int, list[SaleLine]] = {}
        for line in sale.lines:
            lines_by_product.setdefault(line.product_id, []).append(line)

        for item in returned:
            remaining_qty = item["quantity"]
            candidates = lines_by_product.get(item["product_id"], [])
            returnable = sum(l.quantity - l.returned_quantity for l in candidates)
            if remaining_qty > returnable:
                raise SaleError(
                    "Return quantity exceeds quantity sold",
                    details={"product_id": item["product_id"], "requested": remaining_qty, "returnable": returnable},
                )
            for line in candidates:
                take = min(line.quantity - line.returned_quantity, remaining_qty)
                if take <= 0:
                    continue
                line.returned_quantity += take
                remaining_qty -= take
                if remaining_qty == 0:
                    break
            reservation_service.restock(item["product_id"], sale.store_id, item["quantity"])

        refund = SaleRefund(
            sale_id=sale.id,
            amount_cents=amount_cents,
            reason=reason.strip(),
            processed_by=processed_by,
            processed_by_user_id=user_id,
            created_at=utcnow(),
        )
        db.session.add(refund)
        sale.refunded_cents += amount_cents
        sale.status = "refunded" if sale.refunded_cents >= sale.total_cents else "partially_refunded"

        append_activity(
            event_type="sale.refunded",
            entity_type="sale",
            entity_id=sale.id,
            store_id=sale.store_id,
            actor_user_id=user_id,
            note=f"Refund {amount_cents}: {reason.strip()}",
        )
        db.session.commit()
        return sale

    try:
        return run_with_retry(_op)
    except (SaleError, NotFoundError, ValidationError, ReservationError):
        db.session.rollback()
        raise


def list_sales(
    *,
    store_id: int | None = None,
    customer_id: int | None = None,
    status: str | None = None,
    payment_method: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    query = db.session.query(Sale).filter(Sale.is_active.is_(True))
    if store_id is not None:
        query = query.filter(Sale.store_id == store_id)
    if customer_id is not None:
        query = query.filter(Sale.customer_id == customer_id)
    if status:
        if status not in SALE_STATUSES:
            raise ValidationError("Invalid status", [{"field": "status", "message": f"must be one of {', '.join(SALE_STATUSES)}"}])
        query = query.filter(Sale.status == status)
    if payment_method:
        query = query.filter(Sale.payment_method == payment_method)
    try:
        start = parse_iso_datetime(start_date)
        end = parse_date_range_end(end_date)
    except ValueError:
        raise ValidationError("Dates must be ISO-8601", [{"field": "start_date", "message": "must be ISO-8601"}])
    if start:
        query = query.filter(Sale.created_at >= start)
    if end:
        query = query.filter(Sale.created_at < end)

    query = query.order_by(Sale.created_at.desc(), Sale.id.desc())
    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    sales = query.offset((page - 1) * per_page).limit(per_page).all()
    return {
        "items": [s.to_dict(include_lines=False) for s in sales],
        "count": len(sales),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }
