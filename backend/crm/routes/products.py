# Overview: Flask API routes for products operations; parses input and returns JSON responses.

"""
Product catalogue routes.

SECURITY: All routes require authentication.
- Reads are open to every role
- Writes require admin or store manager
- Seeding stock for a store requires access to that store
"""
from flask import Blueprint, request, g

from ..models import Product
from ..services import products_service
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_price,
    parse_pagination,
    ValidationError,
    ConflictError,
    NotFoundError,
)
from ..decorators import require_auth, require_roles, ensure_store_access
from ..responses import ok, fail

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "sku", "barcode", "name", "brand", "model", "category",
        "description", "price_cents", "warranty_months", "is_active",
    },
    required_on_create={"name", "brand", "category", "price_cents"},
)

# Accepted on create next to the product columns
STOCK_FIELDS = ("store_id", "stock", "low_stock_threshold")

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
@require_auth
def list_products():
    """
    Query params:
    - search, category, brand
    - store_id: stock figures for one store only
    - low_stock: "true" to list products at or below threshold
    - page / per_page: paginate (omit page for everything)
    """
    store_id = request.args.get("store_id", type=int)
    page = request.args.get("page", type=int)
    if page is not None:
        try:
            page, per_page = parse_pagination(request.args)
        except ValidationError as e:
            return fail(str(e), 400, errors=e.errors)
    else:
        per_page = None

    result = products_service.list_products(
        search=request.args.get("search"),
        category=request.args.get("category"),
        brand=request.args.get("brand"),
        store_id=store_id,
        low_stock=request.args.get("low_stock", "").lower() == "true",
        page=page,
        per_page=per_page,
    )
    return ok(result)


@products_bp.post("")
@require_auth
@require_roles("store manager")
def create_product_route():
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        return fail("Invalid JSON payload", 400)
    stock_args = {k: payload.pop(k) for k in STOCK_FIELDS if k in payload}

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
        enforce_rules_price(patch)
        store_id = stock_args.get("store_id")
        if store_id is None and not g.current_user.is_admin:
            store_id = g.current_user.store_id
        ensure_store_access(store_id)
        product = products_service.create_product(
            patch=patch,
            store_id=store_id,
            stock=stock_args.get("stock"),
            low_stock_threshold=stock_args.get("low_stock_threshold"),
        )
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except NotFoundError as e:
        return fail(str(e), 404)
    except ConflictError as e:
        return fail(str(e), 409)

    return ok(products_service.product_to_dict(product), 201, message="Product created successfully")


@products_bp.get("/<int:product_id>")
@require_auth
def get_product_route(product_id: int):
    try:
        product = products_service.get_product(product_id)
    except NotFoundError as e:
        return fail(str(e), 404)
    return ok(products_service.product_to_dict(product, request.args.get("store_id", type=int)))


@products_bp.get("/barcode/<code>")
@require_auth
def get_product_by_barcode_route(code: str):
    """Scan lookup: barcode first, then SKU."""
    try:
        product = products_service.get_product_by_barcode(code)
    except NotFoundError as e:
        return fail(str(e), 404)
    return ok(products_service.product_to_dict(product, request.args.get("store_id", type=int)))


@products_bp.put("/<int:product_id>")
@require_auth
@require_roles("store manager")
def update_product_route(product_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
        enforce_rules_price(patch)
        product = products_service.update_product(product_id=product_id, patch=patch)
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except NotFoundError as e:
        return fail(str(e), 404)
    except ConflictError as e:
        return fail(str(e), 409)

    return ok(products_service.product_to_dict(product), message="Product updated successfully")


@products_bp.delete("/<int:product_id>")
@require_auth
@require_roles("store manager")
def delete_product_route(product_id: int):
    try:
        products_service.delete_product(product_id=product_id)
    except NotFoundError as e:
        return fail(str(e), 404)
    return ok(None, message="Product deleted successfully")
