# Overview: Flask API routes for per-store stock levels.

"""
Inventory routes.

Stock is read and adjusted per (product, store). Non-admin users only see
and adjust their own store.
"""
from flask import Blueprint, request, current_app, g

from ..extensions import db
from ..services import reservation_service, products_service, store_service
from ..services.activity_service import append_activity
from ..validation import ValidationError, NotFoundError
from ..decorators import require_auth, require_roles, ensure_store_access
from ..responses import ok, fail

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _check_target(product_id: int, store_id: int) -> None:
    ensure_store_access(store_id)
    products_service.get_product(product_id)
    store_service.get_store(store_id)


@inventory_bp.get("/<int:product_id>/stores/<int:store_id>")
@require_auth
def get_availability(product_id: int, store_id: int):
    try:
        _check_target(product_id, store_id)
    except NotFoundError as e:
        return fail(str(e), 404)
    return ok(reservation_service.get_availability(product_id, store_id))


@inventory_bp.post("/<int:product_id>/stores/<int:store_id>/restock")
@require_auth
@require_roles("store manager")
def restock_route(product_id: int, store_id: int):
    """Body: quantity (positive int), optional low_stock_threshold, optional note."""
    data = request.get_json(silent=True) or {}
    try:
        _check_target(product_id, store_id)
        quantity = data.get("quantity")
        reservation_service.restock(product_id, store_id, quantity)
        if data.get("low_stock_threshold") is not None:
            reservation_service.set_low_stock_threshold(product_id, store_id, data["low_stock_threshold"])
        append_activity(
            event_type="inventory.restocked",
            entity_type="product",
            entity_id=product_id,
            store_id=store_id,
            actor_user_id=g.current_user.id,
            note=data.get("note") or f"Restocked {quantity}",
        )
        db.session.commit()
    except ValidationError as e:
        db.session.rollback()
        return fail(str(e), 400, errors=e.errors)
    except NotFoundError as e:
        return fail(str(e), 404)

    current_app.logger.info("Restocked product %s at store %s by %s", product_id, store_id, quantity)
    return ok(reservation_service.get_availability(product_id, store_id), message="Stock updated")


@inventory_bp.put("/<int:product_id>/stores/<int:store_id>/threshold")
@require_auth
@require_roles("store manager")
def threshold_route(product_id: int, store_id: int):
    data = request.get_json(silent=True) or {}
    try:
        _check_target(product_id, store_id)
        level = reservation_service.set_low_stock_threshold(product_id, store_id, data.get("low_stock_threshold"))
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except NotFoundError as e:
        return fail(str(e), 404)
    return ok(level.to_dict(), message="Threshold updated")
