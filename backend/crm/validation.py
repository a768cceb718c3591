from __future__ import annotations
import re
from datetime import datetime
from crm.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta


# Maximum price: 9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
# E.164: leading +, country code 1-9, up to 15 digits total
E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")


class ValidationError(ValueError):
    """400-level input problem, optionally carrying per-field errors."""

    def __init__(self, message: str, errors: list[dict] | None = None):
        super().__init__(message)
        self.errors = errors or []


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate email)."""


class NotFoundError(LookupError):
    """404-level: the referenced entity does not exist or is inactive."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer")
            if 'e' in stripped.lower():
                raise ValidationError(f"{col.key} must be a plain integer (scientific notation not allowed)")
            if '.' in stripped:
                raise ValidationError(f"{col.key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        if isinstance(value, float):
            raise ValidationError(f"{col.key} must be an integer, not a decimal")
        raise ValidationError(f"{col.key} must be an integer")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    Every offending field is collected; the raised ValidationError carries
    the full list in `errors` as {"field", "message"} dicts.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    errors: list[dict] = []
    cols = _columns_by_key(model)

    required = policy.required_on_create or set()
    if not partial:
        for f in sorted(required):
            if f not in payload:
                errors.append({"field": f, "message": f"{f} is required"})

    patch: dict = {}

    for k, raw in payload.items():
        if k not in policy.writable_fields:
            errors.append({"field": k, "message": f"Field not allowed: {k}"})
            continue
        if k not in cols:
            errors.append({"field": k, "message": f"Unknown field: {k}"})
            continue
        col = cols[k]

        if raw is None:
            if not col.nullable:
                errors.append({"field": k, "message": f"{k} cannot be null"})
            else:
                patch[k] = None
            continue

        try:
            val = _coerce_value(col, raw)
        except ValidationError as exc:
            errors.append({"field": k, "message": str(exc)})
            continue

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                errors.append({"field": k, "message": f"{k} cannot be blank"})
                continue

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                errors.append({"field": k, "message": f"{k} exceeds max length {col.type.length}"})
                continue

        patch[k] = val

    if errors:
        message = errors[0]["message"] if len(errors) == 1 else "Validation failed"
        raise ValidationError(message, errors)

    return patch


def enforce_rules_price(patch: dict, field: str = "price_cents") -> None:
    if field in patch and patch[field] is not None:
        price = patch[field]
        if price < 0:
            raise ValidationError(f"{field} must be >= 0", [{"field": field, "message": "must be >= 0"}])
        if price > MAX_PRICE_CENTS:
            raise ValidationError(
                f"{field} cannot exceed {MAX_PRICE_CENTS}",
                [{"field": field, "message": f"cannot exceed {MAX_PRICE_CENTS}"}],
            )


def enforce_rules_email(patch: dict, field: str = "email") -> None:
    """Lower-case and check an email field in place."""
    value = patch.get(field)
    if value:
        value = value.strip().lower()
        if not EMAIL_RE.match(value):
            raise ValidationError(
                "Please provide a valid email address",
                [{"field": field, "message": "Please provide a valid email address"}],
            )
        patch[field] = value


def parse_positive_int(value: Any, field: str) -> int:
    """Strict positive integer for quantities and ids taken from JSON."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a positive integer", [{"field": field, "message": "must be a positive integer"}])
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer", [{"field": field, "message": "must be a positive integer"}])
    return value


def parse_money_cents(value: Any, field: str) -> int:
    """
    Accept an integer number of cents.

    Floats are rejected; money crosses the API as integer cents only.
    """
    if isinstance(value, bool) or value is None or isinstance(value, float):
        raise ValidationError(f"{field} must be an integer number of cents", [{"field": field, "message": "must be an integer number of cents"}])
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped.lstrip("-").isdigit():
            raise ValidationError(f"{field} must be an integer number of cents", [{"field": field, "message": "must be an integer number of cents"}])
        value = int(stripped)
    if not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer number of cents", [{"field": field, "message": "must be an integer number of cents"}])
    return value


def digits_only(value: str | None) -> str:
    return re.sub(r"\D", "", value or "")


def parse_pagination(args) -> tuple[int, int]:
    try:
        page = max(int(args.get("page", 1)), 1)
        per_page = min(max(int(args.get("per_page", 20)), 1), 100)
    except (TypeError, ValueError):
        raise ValidationError("page and per_page must be integers")
    return page, per_page
