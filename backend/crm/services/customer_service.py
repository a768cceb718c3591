# Overview: Customer records, find-or-create and the customer reference used by sales and repairs.

"""
Customer Service

Customers are identified by email (case-insensitive) or phone. Sales and
repair intake refer to a customer either by id or by an inline profile;
both forms are parsed once at the HTTP boundary into a CustomerRef and
resolved here into a concrete Customer before any other work happens.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Customer
from ..validation import (
    ConflictError,
    NotFoundError,
    ValidationError,
    EMAIL_RE,
    digits_only,
)


CUSTOMER_MUTABLE_FIELDS = {
    "name", "email", "phone",
    "address_line1", "address_line2", "city", "state", "pincode",
    "notifications_opt_in", "is_active",
}

ADDRESS_KEYS = {
    "line1": "address_line1",
    "line2": "address_line2",
    "street": "address_line1",
    "city": "city",
    "state": "state",
    "pincode": "pincode",
}


@dataclass(frozen=True)
class CustomerById:
    customer_id: int


@dataclass(frozen=True)
class InlineCustomer:
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    profile: dict = field(default_factory=dict)


CustomerRef = Union[CustomerById, InlineCustomer]


def digits_expr(column):
    """
    SQL expression stripping phone separators from a column.

    Handles space, "-", "(", ")", "+", "." and "/"; any other non-digit
    character stays in the compared value.
    """
    expr = column
    for ch in (" ", "-", "(", ")", "+", ".", "/"):
        expr = func.replace(expr, ch, "")
    return expr


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    email = str(email).strip().lower()
    return email or None


def normalize_phone(phone: str | None) -> str | None:
    if phone is None:
        return None
    phone = str(phone).strip()
    return phone or None


def flatten_profile(data: dict) -> dict:
    """
    Map an API customer object onto column names.

    Accepts either flat columns or a nested "address" object.
    """
    out: dict = {}
    for key in ("name", "email", "phone", "address_line1", "address_line2", "city", "state", "pincode", "notifications_opt_in"):
        if key in data:
            out[key] = data[key]
    address = data.get("address")
    if isinstance(address, dict):
        for api_key, col in ADDRESS_KEYS.items():
            if api_key in address and address[api_key] is not None:
                out[col] = address[api_key]
    return out


def parse_customer_ref(data: dict) -> CustomerRef:
    """
    Boundary parser for the customer part of a sale/repair payload.

    Accepted shapes:
      {"customer_id": 5}
      {"customer": 5}
      {"customer": {"id": 5}}
      {"customer": {"name": ..., "email": ..., "phone": ..., "address": {...}}}
    """
    if data.get("customer_id") is not None:
        raw_id = data["customer_id"]
    else:
        raw = data.get("customer")
        if raw is None:
            raise ValidationError("Customer is required", [{"field": "customer", "message": "Customer is required"}])
        if isinstance(raw, dict):
            if raw.get("id") is not None:
                raw_id = raw["id"]
            else:
                profile = flatten_profile(raw)
                name = profile.get("name")
                email = normalize_email(profile.get("email"))
                phone = normalize_phone(profile.get("phone"))
                if not email and not phone:
                    raise ValidationError(
                        "Customer email or phone is required",
                        [{"field": "customer", "message": "email or phone is required"}],
                    )
                if email and not EMAIL_RE.match(email):
                    raise ValidationError(
                        "Please provide a valid email address",
                        [{"field": "customer.email", "message": "Please provide a valid email address"}],
                    )
                return InlineCustomer(name=(name or "").strip() or None, email=email, phone=phone, profile=profile)
        else:
            raw_id = raw

    try:
        if isinstance(raw_id, bool):
            raise ValueError
        customer_id = int(raw_id)
    except (TypeError, ValueError):
        raise ValidationError("Invalid customer id", [{"field": "customer", "message": "Invalid customer id"}])
    return CustomerById(customer_id=customer_id)


def resolve_customer_ref(ref: CustomerRef) -> Customer:
    if isinstance(ref, CustomerById):
        return get_customer(ref.customer_id)
    return find_or_create_customer(ref.email, ref.phone, dict(ref.profile, name=ref.name))


def get_customer(customer_id: int, *, include_inactive: bool = False) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if not customer or (not customer.is_active and not include_inactive):
        raise NotFoundError("Customer not found")
    return customer


def _find_by_email(email: str) -> Customer | None:
    return db.session.query(Customer).filter(func.lower(Customer.email) == email.lower()).first()


def _find_by_phone(phone: str) -> Customer | None:
    digits = digits_only(phone)
    if not digits:
        return db.session.query(Customer).filter(Customer.phone == phone).first()
    return db.session.query(Customer).filter(digits_expr(Customer.phone) == digits).first()


def _merge_profile(customer: Customer, profile: dict) -> None:
    """Copy supplied non-empty fields onto an existing customer."""
    for key, value in profile.items():
        if key not in CUSTOMER_MUTABLE_FIELDS or key in ("email", "phone", "is_active"):
            continue
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        setattr(customer, key, value.strip() if isinstance(value, str) else value)


def find_or_create_customer(email: str | None, phone: str | None, profile: dict | None = None) -> Customer:
    """
    Look up a customer by email OR phone; create one when neither matches.

    - email match wins when email and phone point at different customers
    - a found customer gets the supplied non-empty profile fields merged in,
      plus whichever of email/phone it was missing
    - a soft-deleted match is reactivated
    """
    profile = dict(profile or {})
    email = normalize_email(email)
    phone = normalize_phone(phone)
    if not email and not phone:
        raise ValidationError("Customer email or phone is required", [{"field": "customer", "message": "email or phone is required"}])

    customer = _find_by_email(email) if email else None
    if customer is None and phone:
        customer = _find_by_phone(phone)

    try:
        if customer is not None:
            _merge_profile(customer, profile)
            if email and not customer.email and not _find_by_email(email):
                customer.email = email
            if phone and not customer.phone and not _find_by_phone(phone):
                customer.phone = phone
            if not customer.is_active:
                customer.is_active = True
            db.session.flush()
            return customer

        name = (profile.get("name") or "").strip()
        if not name:
            raise ValidationError("Customer name is required", [{"field": "customer.name", "message": "Customer name is required"}])

        customer = Customer(name=name, email=email, phone=phone, is_active=True)
        _merge_profile(customer, profile)
        db.session.add(customer)
        db.session.flush()
        return customer
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Customer with this email or phone already exists")


def _check_unique(email: str | None, phone: str | None, exclude_id: int | None = None) -> None:
    if email:
        other = _find_by_email(email)
        if other and other.id != exclude_id:
            raise ConflictError("Customer with this email already exists")
    if phone:
        other = _find_by_phone(phone)
        if other and other.id != exclude_id:
            raise ConflictError("Customer with this phone already exists")


def create_customer(patch: dict) -> Customer:
    patch = dict(patch)
    patch["email"] = normalize_email(patch.get("email"))
    patch["phone"] = normalize_phone(patch.get("phone"))
    if not patch["email"] and not patch["phone"]:
        raise ValidationError("Customer email or phone is required", [{"field": "email", "message": "email or phone is required"}])
    _check_unique(patch["email"], patch["phone"])

    customer = Customer(is_active=True)
    for k, v in patch.items():
        if k in CUSTOMER_MUTABLE_FIELDS:
            setattr(customer, k, v)
    db.session.add(customer)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Customer with this email or phone already exists")
    return customer


def update_customer(customer_id: int, patch: dict) -> Customer:
    customer = get_customer(customer_id)
    patch = dict(patch)
    if "email" in patch:
        patch["email"] = normalize_email(patch["email"])
    if "phone" in patch:
        patch["phone"] = normalize_phone(patch["phone"])
    _check_unique(patch.get("email"), patch.get("phone"), exclude_id=customer.id)

    for k, v in patch.items():
        if k in CUSTOMER_MUTABLE_FIELDS:
            setattr(customer, k, v)
    if not customer.email and not customer.phone:
        raise ValidationError("Customer email or phone is required", [{"field": "email", "message": "email or phone is required"}])
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Customer with this email or phone already exists")
    return customer


def deactivate_customer(customer_id: int) -> Customer:
    customer = get_customer(customer_id)
    customer.is_active = False
    db.session.commit()
    return customer


def search_customers_query(search: str | None = None, *, include_inactive: bool = False):
    query = db.session.query(Customer)
    if not include_inactive:
        query = query.filter(Customer.is_active.is_(True))
    if search:
        term = search.strip()
        like = f"%{term}%"
        clauses = [Customer.name.ilike(like), Customer.email.ilike(like)]
        digits = digits_only(term)
        if digits:
            clauses.append(digits_expr(Customer.phone).like(f"%{digits}%"))
        else:
            clauses.append(Customer.phone.ilike(like))
        query = query.filter(or_(*clauses))
    return query.order_by(Customer.name.asc(), Customer.id.asc())


def record_purchase(customer: Customer, *, total_cents: int, points: int, at) -> None:
    customer.loyalty_points = (customer.loyalty_points or 0) + points
    customer.total_purchases_cents = (customer.total_purchases_cents or 0) + total_cents
    customer.total_visits = (customer.total_visits or 0) + 1
    customer.last_visit_at = at
