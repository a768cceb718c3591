# Overview: Repair ticket intake, status transitions, notes and public tracking.

"""
Repair State Machine

received -> diagnosed -> in_repair -> ready_for_pickup -> delivered
cancelled is reachable from any non-terminal status.

ALLOWED_TRANSITIONS is the single place that decides which moves are legal.
Non-terminal statuses may move to any allowed status (jumps are permitted,
including moving back); delivered and cancelled are terminal.

Notifications are queued in the outbox inside the transition transaction and
delivered after commit; a failed delivery never fails the transition.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Repair, RepairNote, Customer
from ..models.repairs import REPAIR_STATUSES, REPAIR_PRIORITIES
from ..validation import NotFoundError, ValidationError, EMAIL_RE, digits_only
from crm.time_utils import utcnow, parse_iso_datetime
from .activity_service import append_activity
from .concurrency import lock_for_update, run_with_retry
from .customer_service import CustomerRef, resolve_customer_ref, digits_expr
from .document_service import next_document_number
from . import notification_service


TERMINAL_STATUSES = frozenset({"delivered", "cancelled"})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    status: (frozenset() if status in TERMINAL_STATUSES else frozenset(REPAIR_STATUSES))
    for status in REPAIR_STATUSES
}


class RepairError(Exception):
    """Raised for repair operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class InvalidStatusError(RepairError):
    """Target status is not a repair status."""


class RepairClosedError(RepairError):
    """Repair is delivered or cancelled and can no longer change."""


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _cents(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer", [{"field": field, "message": "must be a non-negative integer"}])
    return value


def _apply_updates(repair: Repair, updates: dict) -> None:
    """Optional fields that may change together with a status transition."""
    if updates.get("diagnosis") is not None:
        repair.diagnosis = str(updates["diagnosis"]).strip() or repair.diagnosis
    if updates.get("technician") is not None:
        repair.technician = str(updates["technician"]).strip() or None
    if updates.get("parts_cost_cents") is not None:
        repair.parts_cost_cents = _cents(updates["parts_cost_cents"], "parts_cost_cents")
    if updates.get("labor_cost_cents") is not None:
        repair.labor_cost_cents = _cents(updates["labor_cost_cents"], "labor_cost_cents")
    if updates.get("priority") is not None:
        if updates["priority"] not in REPAIR_PRIORITIES:
            raise ValidationError("Invalid priority", [{"field": "priority", "message": f"must be one of {', '.join(REPAIR_PRIORITIES)}"}])
        repair.priority = updates["priority"]
    if "estimated_completion" in updates:
        raw = updates["estimated_completion"]
        try:
            repair.estimated_completion = parse_iso_datetime(raw) if isinstance(raw, str) else raw
        except ValueError:
            raise ValidationError(
                "estimated_completion must be an ISO-8601 datetime",
                [{"field": "estimated_completion", "message": "must be an ISO-8601 datetime"}],
            )
    repair.total_cost_cents = (repair.parts_cost_cents or 0) + (repair.labor_cost_cents or 0)


def _add_note(repair: Repair, message: str, author: str | None, from_status=None, to_status=None) -> RepairNote:
    note = RepairNote(
        repair_id=repair.id,
        message=message,
        author=author,
        from_status=from_status,
        to_status=to_status,
        created_at=utcnow(),
    )
    db.session.add(note)
    return note


def _validate_contact(whatsapp_number: str | None, notification_email: str | None) -> tuple[str | None, str | None]:
    whatsapp_number = (whatsapp_number or "").strip() or None
    notification_email = (notification_email or "").strip().lower() or None
    if notification_email and not EMAIL_RE.match(notification_email):
        raise ValidationError(
            "Please provide a valid email address",
            [{"field": "notification_email", "message": "Please provide a valid email address"}],
        )
    return whatsapp_number, notification_email


def _text(value, field_name: str, errors: list, *, required: str | None = None) -> str | None:
    """Stripped string or None; non-strings and missing required values land in errors."""
    if value is not None and not isinstance(value, str):
        errors.append({"field": field_name, "message": "must be a string"})
        return None
    text = (value or "").strip() or None
    if text is None and required:
        errors.append({"field": field_name, "message": required})
    return text


def create_repair(
    *,
    customer_ref: CustomerRef,
    device: dict,
    issue_description: str,
    store_id: int | None = None,
    priority: str = "medium",
    technician: str | None = None,
    estimated_completion=None,
    parts_cost_cents: int = 0,
    labor_cost_cents: int = 0,
    warranty_days: int = 30,
    notify_consent: bool = True,
    whatsapp_number: str | None = None,
    notification_email: str | None = None,
    created_by_user_id: int | None = None,
    author: str | None = None,
) -> Repair:
    """Repair intake. Resolves the customer, allocates the ticket number, status received."""
    errors = []
    if not isinstance(device, dict):
        device = {}
    brand = _text(device.get("brand"), "device.brand", errors, required="Device brand is required")
    model = _text(device.get("model"), "device.model", errors, required="Device model is required")
    issue = _text(issue_description, "issue_description", errors, required="Issue description is required")
    device_type = _text(device.get("type") or device.get("device_type"), "device.type", errors)
    serial_number = _text(device.get("serial_number"), "device.serial_number", errors)
    if priority not in REPAIR_PRIORITIES:
        errors.append({"field": "priority", "message": f"must be one of {', '.join(REPAIR_PRIORITIES)}"})
    if isinstance(warranty_days, bool) or not isinstance(warranty_days, int) or warranty_days < 0:
        errors.append({"field": "warranty_days", "message": "must be a non-negative integer"})
    if errors:
        message = errors[0]["message"] if len(errors) == 1 else "Validation failed"
        raise ValidationError(message, errors)

    whatsapp_number, notification_email = _validate_contact(whatsapp_number, notification_email)

    customer = resolve_customer_ref(customer_ref)
    # Default the contact override to the customer's own email
    if notification_email is None and customer.email:
        notification_email = customer.email

    now = utcnow()
    repair = Repair(
        ticket_number=next_document_number(store_id=store_id, document_type="REPAIR", prefix="R"),
        customer_id=customer.id,
        store_id=store_id,
        device_type=device_type or "laptop",
        brand=brand,
        model=model,
        serial_number=serial_number,
        issue_description=issue,
        diagnosis="Pending diagnosis",
        priority=priority,
        status="received",
        technician=technician,
        warranty_days=warranty_days,
        received_at=now,
        notify_consent=bool(notify_consent),
        whatsapp_number=whatsapp_number,
        notification_email=notification_email,
        created_by_user_id=created_by_user_id,
    )
    _apply_updates(repair, {
        "parts_cost_cents": parts_cost_cents,
        "labor_cost_cents": labor_cost_cents,
        **({"estimated_completion": estimated_completion} if estimated_completion is not None else {}),
    })
    db.session.add(repair)
    db.session.flush()

    _add_note(repair, "Repair created", author, to_status="received")
    append_activity(
        event_type="repair.created",
        entity_type="repair",
        entity_id=repair.id,
        store_id=store_id,
        actor_user_id=created_by_user_id,
        note=f"Repair {repair.ticket_number} created",
    )
    db.session.commit()
    return repair


def get_repair(repair_id: int) -> Repair:
    repair = db.session.get(Repair, repair_id)
    if not repair:
        raise NotFoundError("Repair not found")
    return repair


def transition(
    repair_id: int,
    target_status: str,
    *,
    note: str | None = None,
    author: str | None = None,
    actor_user_id: int | None = None,
    **updates,
) -> tuple[Repair, list[int]]:
    """
    Move a repair to target_status.

    Returns (repair, outbox_ids); the caller dispatches the outbox ids after
    this function has committed. The repair is untouched on any error.
    """
    if target_status not in REPAIR_STATUSES:
        raise InvalidStatusError(
            "Invalid status",
            details={"status": target_status, "allowed": list(REPAIR_STATUSES)},
        )

    def _op():
        repair = lock_for_update(db.session.query(Repair).filter_by(id=repair_id)).first()
        if not repair:
            raise NotFoundError("Repair not found")

        current = repair.status
        if current in TERMINAL_STATUSES:
            raise RepairClosedError(
                f"Repair is {current} and can no longer be changed",
                details={"status": current},
            )
        if not can_transition(current, target_status):
            raise InvalidStatusError(
                f"Cannot move repair from {current} to {target_status}",
                details={"from": current, "to": target_status},
            )

        _apply_updates(repair, updates)
        repair.status = target_status
        now = utcnow()

        message = f"Status changed from {current} to {target_status}"
        if note:
            message = f"{message}: {note.strip()}"
        _add_note(repair, message, author, from_status=current, to_status=target_status)

        if target_status == "delivered":
            repair.actual_completion = now
            _add_note(repair, "Repair delivered to customer", author, to_status="delivered")

        outbox_ids: list[int] = []
        notify_statuses = current_app.config.get("REPAIR_NOTIFY_STATUSES", ("ready_for_pickup", "delivered"))
        if target_status in notify_statuses:
            outbox_ids = [row.id for row in notification_service.enqueue_repair_status(repair)]

        append_activity(
            event_type="repair.status_changed",
            entity_type="repair",
            entity_id=repair.id,
            store_id=repair.store_id,
            actor_user_id=actor_user_id,
            note=message,
        )
        db.session.commit()
        return repair, outbox_ids

    try:
        return run_with_retry(_op)
    except (RepairError, ValidationError, NotFoundError):
        db.session.rollback()
        raise


def add_note(repair_id: int, message: str, author: str | None = None) -> RepairNote:
    if not (message or "").strip():
        raise ValidationError("Note message is required", [{"field": "message", "message": "Note message is required"}])
    repair = get_repair(repair_id)
    if repair.status in TERMINAL_STATUSES:
        raise RepairClosedError(f"Repair is {repair.status} and can no longer be changed", details={"status": repair.status})
    entry = _add_note(repair, message.strip(), author)
    db.session.commit()
    return entry


def update_contact(
    repair_id: int,
    *,
    notify_consent: bool | None = None,
    whatsapp_number: str | None = None,
    notification_email: str | None = None,
) -> Repair:
    repair = get_repair(repair_id)
    if repair.status in TERMINAL_STATUSES:
        raise RepairClosedError(f"Repair is {repair.status} and can no longer be changed", details={"status": repair.status})
    whatsapp_number, notification_email = _validate_contact(whatsapp_number, notification_email)
    if notify_consent is not None:
        repair.notify_consent = bool(notify_consent)
    if whatsapp_number is not None:
        repair.whatsapp_number = whatsapp_number
    if notification_email is not None:
        repair.notification_email = notification_email
    db.session.commit()
    return repair


def resend_notifications(repair_id: int) -> tuple[Repair, list[int]]:
    """Queue the current status message again on every consented channel."""
    repair = get_repair(repair_id)
    rows = notification_service.enqueue_repair_status(repair)
    if not rows:
        raise RepairError(
            "No notification channel available for this repair",
            details={"notify_consent": repair.notify_consent},
        )
    ids = [row.id for row in rows]
    db.session.commit()
    return repair, ids


def find_by_ticket_or_contact(
    *,
    ticket: str | None = None,
    phone: str | None = None,
    email: str | None = None,
) -> list[Repair]:
    """
    Public tracking lookup.

    - at least one filter is required
    - ticket matches the ticket number (case-insensitive) or the numeric id
    - phone: non-digits stripped from query and stored phone, substring match
    - email: case-folded exact match
    - filters combine with AND; no match raises NotFoundError
    """
    ticket = (ticket or "").strip()
    phone = (phone or "").strip()
    email = (email or "").strip().lower()

    if not (ticket or phone or email):
        raise ValidationError(
            "Please provide ticket number, phone, or email",
            [{"field": "ticket", "message": "ticket, phone or email is required"}],
        )
    if email and not EMAIL_RE.match(email):
        raise ValidationError("Please provide a valid email address", [{"field": "email", "message": "Please provide a valid email address"}])

    query = db.session.query(Repair).join(Customer, Customer.id == Repair.customer_id)

    if ticket:
        clauses = [func.upper(Repair.ticket_number) == ticket.upper()]
        if ticket.isdigit():
            clauses.append(Repair.id == int(ticket))
        query = query.filter(db.or_(*clauses))

    if phone:
        digits = digits_only(phone)
        if not digits:
            raise ValidationError("Phone must contain digits", [{"field": "phone", "message": "Phone must contain digits"}])
        query = query.filter(db.or_(
            digits_expr(Customer.phone).like(f"%{digits}%"),
            digits_expr(Repair.whatsapp_number).like(f"%{digits}%"),
        ))

    if email:
        query = query.filter(db.or_(
            func.lower(Customer.email) == email,
            func.lower(Repair.notification_email) == email,
        ))

    repairs = query.order_by(Repair.created_at.desc(), Repair.id.desc()).all()
    if not repairs:
        raise NotFoundError("No repairs found with the provided details")
    return repairs


def list_repairs(
    *,
    status: str | None = None,
    priority: str | None = None,
    store_id: int | None = None,
    customer_id: int | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    query = db.session.query(Repair)
    if status:
        if status not in REPAIR_STATUSES:
            raise InvalidStatusError("Invalid status", details={"status": status, "allowed": list(REPAIR_STATUSES)})
        query = query.filter(Repair.status == status)
    if priority:
        query = query.filter(Repair.priority == priority)
    if store_id is not None:
        query = query.filter(Repair.store_id == store_id)
    if customer_id is not None:
        query = query.filter(Repair.customer_id == customer_id)

    query = query.order_by(Repair.created_at.desc(), Repair.id.desc())
    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    repairs = query.offset((page - 1) * per_page).limit(per_page).all()
    return {
        "items": [r.to_dict() for r in repairs],
        "count": len(repairs),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }
