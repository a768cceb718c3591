# Overview: Store CRUD and per-store settings such as the tax rate.

from __future__ import annotations

import re

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Store
from ..validation import ConflictError, NotFoundError, ValidationError

STORE_MUTABLE_FIELDS = {
    "name", "code", "street", "city", "state", "zip_code",
    "phone", "email", "manager_name", "tax_rate_bps", "is_active",
}

CODE_RE = re.compile(r"^[A-Z0-9]{2,10}$")


def _normalize_code(patch: dict) -> None:
    if "code" in patch and patch["code"] is not None:
        code = patch["code"].strip().upper()
        if not CODE_RE.match(code):
            raise ValidationError(
                "Store code must be 2-10 letters or digits",
                [{"field": "code", "message": "must be 2-10 letters or digits"}],
            )
        patch["code"] = code
    if patch.get("tax_rate_bps") is not None and not (0 <= patch["tax_rate_bps"] <= 10000):
        raise ValidationError(
            "tax_rate_bps must be between 0 and 10000",
            [{"field": "tax_rate_bps", "message": "must be between 0 and 10000"}],
        )


def list_stores(*, active_only: bool = True) -> list[Store]:
    query = db.session.query(Store)
    if active_only:
        query = query.filter(Store.is_active.is_(True))
    return query.order_by(Store.name.asc(), Store.id.asc()).all()


def get_store(store_id: int, *, include_inactive: bool = False) -> Store:
    store = db.session.get(Store, store_id)
    if not store or (not store.is_active and not include_inactive):
        raise NotFoundError("Store not found")
    return store


def get_store_by_code(code: str) -> Store:
    store = db.session.query(Store).filter_by(code=(code or "").strip().upper(), is_active=True).first()
    if not store:
        raise NotFoundError("Store not found")
    return store


def create_store(patch: dict) -> Store:
    patch = dict(patch)
    _normalize_code(patch)
    if db.session.query(Store.id).filter_by(code=patch["code"]).first():
        raise ConflictError("Store with this code already exists")
    store = Store(is_active=True)
    for k, v in patch.items():
        if k in STORE_MUTABLE_FIELDS:
            setattr(store, k, v)
    db.session.add(store)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Store with this code already exists")
    return store


def update_store(store_id: int, patch: dict) -> Store:
    store = get_store(store_id, include_inactive=True)
    patch = dict(patch)
    _normalize_code(patch)
    if patch.get("code") and patch["code"] != store.code:
        if db.session.query(Store.id).filter(Store.code == patch["code"], Store.id != store.id).first():
            raise ConflictError("Store with this code already exists")
    for k, v in patch.items():
        if k in STORE_MUTABLE_FIELDS:
            setattr(store, k, v)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Store with this code already exists")
    return store


def deactivate_store(store_id: int) -> Store:
    store = get_store(store_id)
    store.is_active = False
    db.session.commit()
    return store


def tax_rate_bps_for_store(store: Store | None) -> int:
    if store is not None and store.tax_rate_bps is not None:
        return store.tax_rate_bps
    return int(current_app.config.get("SALES_TAX_RATE_BPS", 1800))
