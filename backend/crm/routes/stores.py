# Overview: Flask API routes for stores operations; parses input and returns JSON responses.

"""
Store management routes.

Any authenticated user can list and read stores; create, update and
deactivate require the admin role.
"""
from flask import Blueprint, request, current_app, g

from ..models import Store
from ..services import store_service
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_email,
    ValidationError,
    ConflictError,
    NotFoundError,
)
from ..decorators import require_auth, require_admin
from ..responses import ok, fail

STORE_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "code", "street", "city", "state", "zip_code",
        "phone", "email", "manager_name", "tax_rate_bps", "is_active",
    },
    required_on_create={"name", "code"},
)

ADDRESS_FIELDS = ("street", "city", "state", "zip_code")

stores_bp = Blueprint("stores", __name__, url_prefix="/api/stores")


def _store_patch(payload: dict, partial: bool) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    payload = dict(payload)
    address = payload.pop("address", None)
    if isinstance(address, dict):
        for key in ADDRESS_FIELDS:
            if key in address:
                payload[key] = address[key]
    patch = validate_payload(model=Store, payload=payload, policy=STORE_POLICY, partial=partial)
    enforce_rules_email(patch)
    return patch


@stores_bp.get("")
@require_auth
def list_stores():
    include_inactive = request.args.get("include_inactive", "").lower() == "true"
    stores = store_service.list_stores(active_only=not include_inactive)
    return ok([s.to_dict() for s in stores])


@stores_bp.post("")
@require_auth
@require_admin
def create_store_route():
    payload = request.get_json(silent=True) or {}
    try:
        patch = _store_patch(payload, partial=False)
        store = store_service.create_store(patch)
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except ConflictError as e:
        return fail(str(e), 409)

    current_app.logger.info("Store %s (%s) created by user %s", store.id, store.code, g.current_user.id)
    return ok(store.to_dict(), 201, message="Store created successfully")


@stores_bp.get("/<int:store_id>")
@require_auth
def get_store_route(store_id: int):
    try:
        store = store_service.get_store(store_id)
    except NotFoundError as e:
        return fail(str(e), 404)
    return ok(store.to_dict())


@stores_bp.get("/code/<code>")
@require_auth
def get_store_by_code_route(code: str):
    try:
        store = store_service.get_store_by_code(code)
    except NotFoundError as e:
        return fail(str(e), 404)
    return ok(store.to_dict())


@stores_bp.put("/<int:store_id>")
@require_auth
@require_admin
def update_store_route(store_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        patch = _store_patch(payload, partial=True)
        store = store_service.update_store(store_id, patch)
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except NotFoundError as e:
        return fail(str(e), 404)
    except ConflictError as e:
        return fail(str(e), 409)

    return ok(store.to_dict(), message="Store updated successfully")


@stores_bp.delete("/<int:store_id>")
@require_auth
@require_admin
def delete_store_route(store_id: int):
    try:
        store_service.deactivate_store(store_id)
    except NotFoundError as e:
        return fail(str(e), 404)
    return ok(None, message="Store deactivated")
