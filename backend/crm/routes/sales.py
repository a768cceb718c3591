# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

"""
Sales routes.

SECURITY: All routes require authentication. Non-admin users can only
create and read sales of their own store; cross-store access is 403.

Receipts queued by a sale are dispatched after the sale transaction has
committed; delivery problems never change the response.
"""
from flask import Blueprint, request, current_app, g

from ..services import activity_service, sales_service
from ..services.sales_service import SaleError
from ..services.reservation_service import InsufficientStockError, ReservationError
from ..services.customer_service import parse_customer_ref
from ..services.notification_service import dispatch_after_commit
from ..validation import ValidationError, NotFoundError, ConflictError, parse_pagination
from ..decorators import require_auth, require_roles, ensure_store_access, scoped_store_id
from ..responses import ok, fail

sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _sale_store_id(data: dict) -> int:
    raw = data.get("store_id")
    if raw is None:
        store_id = g.store_id if g.store_id is not None else g.current_user.store_id
        if store_id is None:
            raise ValidationError("Store is required", [{"field": "store_id", "message": "Store is required"}])
        return store_id
    if isinstance(raw, bool):
        raise ValidationError("store_id must be an integer", [{"field": "store_id", "message": "must be an integer"}])
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError("store_id must be an integer", [{"field": "store_id", "message": "must be an integer"}])


@sales_bp.get("")
@require_auth
def list_sales_route():
    """
    Query params: store_id, customer_id, status, payment_method,
    start_date, end_date (ISO-8601; a bare end date includes that day),
    page, per_page.
    """
    try:
        page, per_page = parse_pagination(request.args)
        result = sales_service.list_sales(
            store_id=scoped_store_id(request.args.get("store_id", type=int)),
            customer_id=request.args.get("customer_id", type=int),
            status=request.args.get("status"),
            payment_method=request.args.get("payment_method"),
            start_date=request.args.get("start_date"),
            end_date=request.args.get("end_date"),
            page=page,
            per_page=per_page,
        )
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    return ok(result)


@sales_bp.post("")
@require_auth
@require_roles("store manager", "sales")
def create_sale_route():
    """
    Create a sale.

    Body:
    - store_id (defaults to the session's store)
    - customer_id, or customer: id | {id} | {name, email, phone, address}
    - items: [{product_id, quantity, unit_price_cents?, discount?}]
    - payment_method, status (pending | completed), notes
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return fail("Invalid JSON payload", 400)

    try:
        store_id = _sale_store_id(data)
        ensure_store_access(store_id)
        customer_ref = parse_customer_ref(data)
        items = sales_service.parse_sale_items(data.get("items"))
        sale, outbox_ids = sales_service.create_sale(
            store_id=store_id,
            customer_ref=customer_ref,
            items=items,
            payment_method=data.get("payment_method") or "cash",
            status=data.get("status"),
            notes=data.get("notes"),
            user_id=g.current_user.id,
        )
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except InsufficientStockError as e:
        return fail(str(e), 400, details=e.details)
    except NotFoundError as e:
        return fail(str(e), 404)
    except ConflictError as e:
        return fail(str(e), 409)

    current_app.logger.info(
        "Sale %s created at store %s total=%s by user %s",
        sale.sale_number, store_id, sale.total_cents, g.current_user.id,
    )
    dispatch_after_commit(outbox_ids)
    return ok(sale.to_dict(), 201, message="Sale created successfully")


@sales_bp.get("/<int:sale_id>")
@require_auth
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
    except NotFoundError as e:
        return fail(str(e), 404)
    ensure_store_access(sale.store_id)
    data = sale.to_dict()
    data["activity"] = [
        ev.to_dict() for ev in activity_service.list_activity(entity_type="sale", entity_id=sale.id)
    ]
    return ok(data)


@sales_bp.get("/number/<sale_number>")
@require_auth
def get_sale_by_number_route(sale_number: str):
    try:
        sale = sales_service.get_sale_by_number(sale_number)
    except NotFoundError as e:
        return fail(str(e), 404)
    ensure_store_access(sale.store_id)
    return ok(sale.to_dict())


@sales_bp.put("/<int:sale_id>/status")
@require_auth
@require_roles("store manager", "sales")
def update_sale_status_route(sale_id: int):
    """Body: status, optional reason. Cancelling restores stock once."""
    data = request.get_json(silent=True) or {}
    try:
        ensure_store_access(sales_service.get_sale(sale_id).store_id)
        sale, outbox_ids = sales_service.update_status(
            sale_id,
            data.get("status"),
            reason=data.get("reason"),
            user_id=g.current_user.id,
        )
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except NotFoundError as e:
        return fail(str(e), 404)
    except (SaleError, ReservationError) as e:
        return fail(str(e), 400, details=e.details)

    dispatch_after_commit(outbox_ids)
    return ok(sale.to_dict(), message="Sale status updated")


@sales_bp.post("/<int:sale_id>/refund")
@require_auth
@require_roles("store manager")
def refund_sale_route(sale_id: int):
    """
    Body: amount_cents, reason, optional items [{product_id, quantity}] to
    put back into stock.
    """
    data = request.get_json(silent=True) or {}
    try:
        ensure_store_access(sales_service.get_sale(sale_id).store_id)
        sale = sales_service.add_refund(
            sale_id,
            amount_cents=data.get("amount_cents"),
            reason=data.get("reason"),
            processed_by=g.current_user.name,
            user_id=g.current_user.id,
            items=data.get("items"),
        )
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except NotFoundError as e:
        return fail(str(e), 404)
    except (SaleError, ReservationError) as e:
        return fail(str(e), 400, details=e.details)

    current_app.logger.info("Refund recorded on sale %s by user %s", sale.sale_number, g.current_user.id)
    return ok(sale.to_dict(), message="Refund processed successfully")
