# Overview: Flask API routes for customer operations; parses input and returns JSON responses.

"""
Customer routes.

Customers are shared across stores; any authenticated staff member may
read and write them. DELETE is a soft delete.
"""
from flask import Blueprint, request, current_app

from ..models import Customer
from ..services import customer_service
from ..services.customer_service import flatten_profile
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_email,
    parse_pagination,
    ValidationError,
    ConflictError,
    NotFoundError,
)
from ..decorators import require_auth
from ..responses import ok, fail

CUSTOMER_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "email", "phone",
        "address_line1", "address_line2", "city", "state", "pincode",
        "notifications_opt_in",
    },
    required_on_create={"name"},
)

customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


def _customer_patch(payload: dict, partial: bool) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    patch = validate_payload(model=Customer, payload=flatten_profile(payload), policy=CUSTOMER_POLICY, partial=partial)
    enforce_rules_email(patch)
    return patch


@customers_bp.get("")
@require_auth
def list_customers():
    """
    Query params:
    - search: matches name, email or phone (phone compared on digits only)
    - include_inactive: "true" to include soft-deleted customers
    - page, per_page (max 100)
    """
    try:
        page, per_page = parse_pagination(request.args)
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)

    include_inactive = request.args.get("include_inactive", "").lower() == "true"
    query = customer_service.search_customers_query(
        request.args.get("search"), include_inactive=include_inactive
    )

    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    customers = query.offset((page - 1) * per_page).limit(per_page).all()

    return ok({
        "items": [c.to_dict() for c in customers],
        "count": len(customers),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    })


@customers_bp.post("")
@require_auth
def create_customer_route():
    payload = request.get_json(silent=True) or {}
    try:
        patch = _customer_patch(payload, partial=False)
        customer = customer_service.create_customer(patch)
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except ConflictError as e:
        return fail(str(e), 409)

    return ok(customer.to_dict(), 201, message="Customer created successfully")


@customers_bp.get("/<int:customer_id>")
@require_auth
def get_customer_route(customer_id: int):
    try:
        customer = customer_service.get_customer(customer_id)
    except NotFoundError as e:
        return fail(str(e), 404)
    return ok(customer.to_dict())


@customers_bp.put("/<int:customer_id>")
@require_auth
def update_customer_route(customer_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        patch = _customer_patch(payload, partial=True)
        customer = customer_service.update_customer(customer_id, patch)
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except NotFoundError as e:
        return fail(str(e), 404)
    except ConflictError as e:
        return fail(str(e), 409)

    return ok(customer.to_dict(), message="Customer updated successfully")


@customers_bp.delete("/<int:customer_id>")
@require_auth
def delete_customer_route(customer_id: int):
    try:
        customer_service.deactivate_customer(customer_id)
    except NotFoundError as e:
        return fail(str(e), 404)

    current_app.logger.info("Customer %s deactivated", customer_id)
    return ok(None, message="Customer deleted successfully")
