# backend/crm/services/products_service.py
"""
Products Service

Catalogue CRUD. Products are shared across stores; per-store quantities are
kept by the reservation ledger (StockLevel) and are never written here
except for the optional opening stock on create.
"""
from __future__ import annotations

import random

from sqlalchemy import func, or_

from ..extensions import db
from ..models import Product, Store, StockLevel
from ..validation import ConflictError, NotFoundError, ValidationError
from . import reservation_service

PRODUCT_MUTABLE_FIELDS = {
    "sku", "barcode", "name", "brand", "model", "category", "description",
    "price_cents", "warranty_months", "is_active",
}

SKU_ATTEMPTS = 5


def apply_product_patch(p: Product, patch: dict) -> None:
    for k, v in patch.items():
        if k not in PRODUCT_MUTABLE_FIELDS:
            continue
        setattr(p, k, v)


def _normalize_codes(patch: dict) -> None:
    if patch.get("sku"):
        patch["sku"] = patch["sku"].strip().upper()
    if "barcode" in patch:
        patch["barcode"] = patch["barcode"].strip().upper() if patch["barcode"] else None


def generate_sku(brand: str, name: str) -> str:
    """Brand/name prefix plus a random 4-digit suffix, e.g. DELINS-4821."""
    prefix = "".join(ch for ch in f"{(brand or '')[:3]}{(name or '')[:3]}" if ch.isalnum()).upper() or "PRD"
    for _ in range(SKU_ATTEMPTS):
        sku = f"{prefix}-{random.randint(1000, 9999)}"
        if not db.session.query(Product.id).filter_by(sku=sku).first():
            return sku
    raise ConflictError("Could not generate a unique SKU, please supply one")


def _check_unique(patch: dict, exclude_id: int | None = None) -> None:
    if patch.get("sku"):
        q = db.session.query(Product).filter(Product.sku == patch["sku"])
        if exclude_id is not None:
            q = q.filter(Product.id != exclude_id)
        if q.first():
            raise ConflictError(f"SKU already exists: {patch['sku']}")
    if patch.get("barcode"):
        q = db.session.query(Product).filter(Product.barcode == patch["barcode"])
        if exclude_id is not None:
            q = q.filter(Product.id != exclude_id)
        if q.first():
            raise ConflictError(f"Barcode already exists: {patch['barcode']}")


def _require_store(store_id: int) -> Store:
    store = db.session.get(Store, store_id)
    if not store or not store.is_active:
        raise NotFoundError("Store not found")
    return store


def product_to_dict(product: Product, store_id: int | None = None) -> dict:
    data = product.to_dict()
    levels = product.stock_levels
    if store_id is not None:
        levels = [lvl for lvl in levels if lvl.store_id == store_id]
    data["stock_levels"] = [lvl.to_dict() for lvl in levels]
    data["total_stock"] = sum(lvl.stock for lvl in levels)
    data["total_available"] = sum(lvl.available for lvl in levels)
    data["is_low_stock"] = any(lvl.is_low_stock for lvl in levels) if levels else True
    return data


def list_products(
    *,
    search: str | None = None,
    category: str | None = None,
    brand: str | None = None,
    store_id: int | None = None,
    low_stock: bool = False,
    active_only: bool = True,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Catalogue listing with optional filters and pagination.

    store_id narrows stock figures (and, with low_stock, the product set)
    to one store.
    """
    query = db.session.query(Product)
    if active_only:
        query = query.filter(Product.is_active.is_(True))
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(or_(
            Product.name.ilike(like),
            Product.brand.ilike(like),
            Product.model.ilike(like),
            Product.sku.ilike(like),
            Product.barcode.ilike(like),
        ))
    if category:
        query = query.filter(func.lower(Product.category) == category.strip().lower())
    if brand:
        query = query.filter(func.lower(Product.brand) == brand.strip().lower())
    if store_id is not None or low_stock:
        level_q = db.session.query(StockLevel.product_id)
        if store_id is not None:
            level_q = level_q.filter(StockLevel.store_id == store_id)
        if low_stock:
            level_q = level_q.filter(StockLevel.is_low_stock.is_(True))
        query = query.filter(Product.id.in_(level_q))

    base_query = query.order_by(Product.name.asc(), Product.id.asc())

    if page is None:
        products = base_query.all()
        return {
            "items": [product_to_dict(p, store_id) for p in products],
            "count": len(products),
        }

    per_page = min(per_page or 20, 100)
    page = max(page, 1)

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    products = base_query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [product_to_dict(p, store_id) for p in products],
        "count": len(products),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def get_product(product_id: int, *, include_inactive: bool = False) -> Product:
    product = db.session.get(Product, product_id)
    if not product or (not product.is_active and not include_inactive):
        raise NotFoundError("Product not found")
    return product


def get_product_by_barcode(code: str) -> Product:
    """Scan lookup: barcode first, then SKU. Inactive products are not found."""
    normalized = (code or "").strip().upper()
    if not normalized:
        raise ValidationError("Barcode is required", [{"field": "barcode", "message": "Barcode is required"}])
    active = db.session.query(Product).filter(Product.is_active.is_(True))
    product = active.filter(Product.barcode == normalized).first()
    if not product:
        product = active.filter(Product.sku == normalized).first()
    if not product:
        raise NotFoundError("Product not found")
    return product


def create_product(
    *,
    patch: dict,
    store_id: int | None = None,
    stock: int | None = None,
    low_stock_threshold: int | None = None,
) -> Product:
    """
    Create product using a validated patch dict.

    With store_id, a StockLevel row is opened for that store, seeded with
    `stock` units when given.
    """
    patch = dict(patch)
    _normalize_codes(patch)
    if not patch.get("sku"):
        patch["sku"] = generate_sku(patch.get("brand"), patch.get("name"))
    _check_unique(patch)

    if store_id is not None:
        _require_store(store_id)
    if stock is not None and (isinstance(stock, bool) or not isinstance(stock, int) or stock < 0):
        raise ValidationError("stock must be a non-negative integer", [{"field": "stock", "message": "must be a non-negative integer"}])
    if low_stock_threshold is not None and (isinstance(low_stock_threshold, bool) or not isinstance(low_stock_threshold, int) or low_stock_threshold < 0):
        raise ValidationError(
            "low_stock_threshold must be a non-negative integer",
            [{"field": "low_stock_threshold", "message": "must be a non-negative integer"}],
        )

    p = Product(is_active=True)
    apply_product_patch(p, patch)
    db.session.add(p)
    db.session.flush()

    if store_id is not None:
        if stock:
            reservation_service.restock(p.id, store_id, stock, low_stock_threshold=low_stock_threshold)
        else:
            reservation_service.ensure_stock_level(p.id, store_id, low_stock_threshold=low_stock_threshold)

    db.session.commit()
    db.session.refresh(p)
    return p


def update_product(*, product_id: int, patch: dict) -> Product:
    p = get_product(product_id, include_inactive=True)
    patch = dict(patch)
    _normalize_codes(patch)
    if "sku" in patch and not patch["sku"]:
        raise ValidationError("sku cannot be blank", [{"field": "sku", "message": "cannot be blank"}])
    _check_unique(patch, exclude_id=p.id)

    apply_product_patch(p, patch)
    db.session.commit()
    return p


def delete_product(*, product_id: int) -> Product:
    """Soft delete: product disappears from listings and scans."""
    p = get_product(product_id)
    p.is_active = False
    db.session.commit()
    return p
