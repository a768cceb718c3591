# Overview: Flask API routes for repair tickets; parses input and returns JSON responses.

"""
Repair routes.

- Staff routes require authentication and are scoped to the user's store
- GET /track/status is public (customers look up their own tickets)
- Status notifications are dispatched after the transition has committed
"""
from flask import Blueprint, request, current_app, g

from ..services import repair_service, notification_service
from ..services.repair_service import RepairError
from ..services.customer_service import parse_customer_ref
from ..services.notification_service import dispatch_after_commit
from ..validation import ValidationError, NotFoundError, ConflictError, parse_pagination
from ..decorators import require_auth, require_roles, ensure_store_access, scoped_store_id
from ..responses import ok, fail

repairs_bp = Blueprint("repairs", __name__, url_prefix="/api/repairs")

TRANSITION_FIELDS = (
    "diagnosis", "technician", "parts_cost_cents", "labor_cost_cents",
    "priority", "estimated_completion",
)


def _load_repair(repair_id: int):
    repair = repair_service.get_repair(repair_id)
    ensure_store_access(repair.store_id)
    return repair


@repairs_bp.get("")
@require_auth
def list_repairs_route():
    """Query params: status, priority, store_id, customer_id, page, per_page."""
    try:
        page, per_page = parse_pagination(request.args)
        result = repair_service.list_repairs(
            status=request.args.get("status"),
            priority=request.args.get("priority"),
            store_id=scoped_store_id(request.args.get("store_id", type=int)),
            customer_id=request.args.get("customer_id", type=int),
            page=page,
            per_page=per_page,
        )
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except RepairError as e:
        return fail(str(e), 400, details=e.details)
    return ok(result)


@repairs_bp.post("")
@require_auth
def create_repair_route():
    """
    Repair intake.

    Body: customer_id | customer, device {type, brand, model, serial_number},
    issue_description, priority, technician, estimated_completion,
    parts_cost_cents, labor_cost_cents, warranty_days, notify_consent,
    whatsapp_number, notification_email, store_id (defaults to the
    session's store).
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return fail("Invalid JSON payload", 400)

    store_id = data.get("store_id")
    if store_id is None:
        store_id = g.store_id if g.store_id is not None else g.current_user.store_id

    try:
        if store_id is not None and (isinstance(store_id, bool) or not isinstance(store_id, int)):
            raise ValidationError("store_id must be an integer", [{"field": "store_id", "message": "must be an integer"}])
        ensure_store_access(store_id)
        customer_ref = parse_customer_ref(data)
        repair = repair_service.create_repair(
            customer_ref=customer_ref,
            device=data.get("device") or {},
            issue_description=data.get("issue_description"),
            store_id=store_id,
            priority=data.get("priority") or "medium",
            technician=data.get("technician"),
            estimated_completion=data.get("estimated_completion"),
            parts_cost_cents=data.get("parts_cost_cents") or 0,
            labor_cost_cents=data.get("labor_cost_cents") or 0,
            warranty_days=data.get("warranty_days", 30),
            notify_consent=data.get("notify_consent", True),
            whatsapp_number=data.get("whatsapp_number"),
            notification_email=data.get("notification_email"),
            created_by_user_id=g.current_user.id,
            author=g.current_user.name,
        )
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except NotFoundError as e:
        return fail(str(e), 404)
    except ConflictError as e:
        return fail(str(e), 409)

    current_app.logger.info("Repair %s created by user %s", repair.ticket_number, g.current_user.id)
    return ok(repair.to_dict(include_notes=True), 201, message="Repair created successfully")


@repairs_bp.get("/track/status")
def track_repair_route():
    """Public lookup by ticket, phone (digits compared) or email."""
    try:
        repairs = repair_service.find_by_ticket_or_contact(
            ticket=request.args.get("ticket"),
            phone=request.args.get("phone"),
            email=request.args.get("email"),
        )
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except NotFoundError as e:
        return fail(str(e), 404)
    return ok([r.to_tracking_dict() for r in repairs])


@repairs_bp.get("/<int:repair_id>")
@require_auth
def get_repair_route(repair_id: int):
    try:
        repair = _load_repair(repair_id)
    except NotFoundError as e:
        return fail(str(e), 404)
    data = repair.to_dict(include_notes=True)
    data["notifications"] = [row.to_dict() for row in notification_service.list_for_entity("repair", repair.id)]
    return ok(data)


@repairs_bp.put("/<int:repair_id>/status")
@require_auth
@require_roles("store manager", "engineer")
def update_repair_status_route(repair_id: int):
    """
    Body: status, optional note, plus any of diagnosis, technician,
    parts_cost_cents, labor_cost_cents, priority, estimated_completion.
    """
    data = request.get_json(silent=True) or {}
    updates = {k: data[k] for k in TRANSITION_FIELDS if k in data}
    try:
        _load_repair(repair_id)
        repair, outbox_ids = repair_service.transition(
            repair_id,
            data.get("status"),
            note=data.get("note"),
            author=g.current_user.name,
            actor_user_id=g.current_user.id,
            **updates,
        )
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except NotFoundError as e:
        return fail(str(e), 404)
    except RepairError as e:
        return fail(str(e), 400, details=e.details)

    dispatch_after_commit(outbox_ids)
    return ok(repair.to_dict(include_notes=True), message="Repair status updated")


@repairs_bp.post("/<int:repair_id>/notes")
@require_auth
def add_repair_note_route(repair_id: int):
    data = request.get_json(silent=True) or {}
    try:
        _load_repair(repair_id)
        note = repair_service.add_note(repair_id, data.get("message"), author=g.current_user.name)
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except NotFoundError as e:
        return fail(str(e), 404)
    except RepairError as e:
        return fail(str(e), 400, details=e.details)
    return ok(note.to_dict(), 201, message="Note added")


@repairs_bp.post("/<int:repair_id>/notify")
@require_auth
def notify_repair_route(repair_id: int):
    """
    Re-send the current status notification.

    Body (optional): notify_consent, whatsapp_number, notification_email to
    update the contact details first.
    """
    data = request.get_json(silent=True) or {}
    try:
        _load_repair(repair_id)
        if any(k in data for k in ("notify_consent", "whatsapp_number", "notification_email")):
            repair_service.update_contact(
                repair_id,
                notify_consent=data.get("notify_consent"),
                whatsapp_number=data.get("whatsapp_number"),
                notification_email=data.get("notification_email"),
            )
        repair, outbox_ids = repair_service.resend_notifications(repair_id)
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except NotFoundError as e:
        return fail(str(e), 404)
    except RepairError as e:
        return fail(str(e), 400, details=e.details)

    dispatch_after_commit(outbox_ids)
    return ok({"queued": len(outbox_ids), "repair": repair.to_dict()}, message="Notification queued")
