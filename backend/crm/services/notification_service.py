# Overview: Notification outbox, message templates and the post-commit dispatcher.

"""
Notification Service

Outbox flow:
1. Domain code calls enqueue_* inside its own transaction; rows are PENDING.
2. After the domain transaction commits, the route hands the new row ids to
   NotificationDispatcher.dispatch().
3. The dispatcher makes exactly one delivery attempt per row (background
   thread pool, or inline when NOTIFICATIONS_SYNC is set) and records
   SENT/FAILED on the row.

Delivery never raises into the caller. There is no automatic retry;
`flask notifications dispatch` re-drives PENDING (and optionally FAILED) rows.

Consent:
- repair.notify_consent False -> nothing is queued for the repair
- a channel without a contact (no WhatsApp number / no email) is skipped
- sale receipts require customer.notifications_opt_in and an email
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import NotificationOutbox, Repair, Sale
from crm.time_utils import utcnow
from .notification_channels import DeliveryResult, Message, build_channels


def format_status(status: str) -> str:
    """ready_for_pickup -> Ready For Pickup"""
    return " ".join(word[:1].upper() + word[1:] for word in (status or "").split("_"))


def _money(cents: int) -> str:
    return f"{(cents or 0) / 100:,.2f}"


def _store_identity(store) -> tuple[str, str]:
    name = (store.name if store else None) or current_app.config.get("STORE_NAME", "")
    phone = (store.phone if store else None) or current_app.config.get("STORE_PHONE", "")
    return name, phone


# =============================================================================
# Templates
# =============================================================================

def repair_status_whatsapp(repair: Repair) -> Message:
    store_name, store_phone = _store_identity(repair.store)
    lines = [
        f"Repair Update #{repair.ticket_number}",
        f"Status: {format_status(repair.status)}",
        f"Device: {repair.brand} {repair.model}",
        f"Issue: {repair.issue_description}",
    ]
    if repair.status == "ready_for_pickup" and repair.total_cost_cents:
        lines.append(f"Amount due: {_money(repair.total_cost_cents)}")
    lines.append("")
    lines.append(store_name)
    if store_phone:
        lines.append(store_phone)
    return Message(body="\n".join(lines))


def repair_status_email(repair: Repair) -> Message:
    store_name, store_phone = _store_identity(repair.store)
    customer_name = repair.customer.name if repair.customer else "Customer"
    status = format_status(repair.status)
    body = [
        f"Hello {customer_name},",
        "",
        "Your repair status has been updated:",
        "",
        f"Repair #{repair.ticket_number}",
        f"Status: {status}",
        f"Device: {repair.brand} {repair.model}",
        f"Issue: {repair.issue_description}",
    ]
    if repair.total_cost_cents:
        body.append(f"Total cost: {_money(repair.total_cost_cents)}")
    if repair.status == "delivered" and repair.warranty_days:
        body.append(f"Warranty: {repair.warranty_days} days")
    body += ["", store_name]
    if store_phone:
        body.append(store_phone)
    return Message(subject=f"Repair Update - {status} - #{repair.ticket_number}", body="\n".join(body))


def sale_receipt_email(sale: Sale) -> Message:
    store_name, store_phone = _store_identity(sale.store)
    body = [
        f"Hello {sale.customer.name},",
        "",
        f"Thank you for your purchase. Receipt {sale.sale_number}:",
        "",
    ]
    for line in sale.lines:
        name = line.product.name if line.product else f"Product {line.product_id}"
        body.append(f"{line.quantity} x {name} @ {_money(line.unit_price_cents)} = {_money(line.line_total_cents)}")
    body += [
        "",
        f"Subtotal: {_money(sale.subtotal_cents)}",
        f"Tax: {_money(sale.tax_cents)}",
        f"Total: {_money(sale.total_cents)}",
        f"Payment: {format_status(sale.payment_method)}",
        f"Loyalty points earned: {sale.loyalty_points_awarded}",
        "",
        store_name,
    ]
    if store_phone:
        body.append(store_phone)
    return Message(subject=f"Your receipt {sale.sale_number} - {store_name}", body="\n".join(body))


# =============================================================================
# Outbox
# =============================================================================

def enqueue(
    *,
    channel: str,
    recipient: str,
    message: Message,
    template: str,
    entity_type: str,
    entity_id: int,
) -> NotificationOutbox:
    """Queue one message in the caller's transaction (flushed, not committed)."""
    row = NotificationOutbox(
        channel=channel,
        recipient=recipient,
        subject=message.subject,
        body=message.body,
        template=template,
        entity_type=entity_type,
        entity_id=entity_id,
        status="PENDING",
        attempts=0,
        created_at=utcnow(),
    )
    db.session.add(row)
    db.session.flush()
    return row


def enqueue_repair_status(repair: Repair) -> list[NotificationOutbox]:
    """
    Queue the status message on every consented channel with a contact and
    raise the matching pending flags.
    """
    if not repair.notify_consent:
        return []
    rows = []
    if repair.whatsapp_number:
        rows.append(enqueue(
            channel="whatsapp",
            recipient=repair.whatsapp_number,
            message=repair_status_whatsapp(repair),
            template="repair_status",
            entity_type="repair",
            entity_id=repair.id,
        ))
        repair.whatsapp_pending = True
    if repair.notification_email:
        rows.append(enqueue(
            channel="email",
            recipient=repair.notification_email,
            message=repair_status_email(repair),
            template="repair_status",
            entity_type="repair",
            entity_id=repair.id,
        ))
        repair.email_pending = True
    return rows


def enqueue_sale_receipt(sale: Sale) -> list[NotificationOutbox]:
    customer = sale.customer
    if not customer or not customer.notifications_opt_in or not customer.email:
        return []
    return [enqueue(
        channel="email",
        recipient=customer.email,
        message=sale_receipt_email(sale),
        template="sale_receipt",
        entity_type="sale",
        entity_id=sale.id,
    )]


def get_channels() -> dict:
    channels = current_app.extensions.get("notification_channels")
    if channels is None:
        channels = build_channels(current_app.config)
        current_app.extensions["notification_channels"] = channels
    return channels


def _mark_repair_delivered(row: NotificationOutbox, at) -> None:
    # Plain UPDATE so the repair's version counter is untouched
    if row.channel == "whatsapp":
        values = {"whatsapp_pending": False, "whatsapp_sent_at": at}
    elif row.channel == "email":
        values = {"email_pending": False, "email_sent_at": at}
    else:
        return
    db.session.execute(
        update(Repair)
        .where(Repair.id == row.entity_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def deliver(outbox_id: int) -> DeliveryResult | None:
    """
    Make one delivery attempt for an outbox row and record the outcome.

    Returns None when the row is missing or already SENT.
    """
    row = db.session.get(NotificationOutbox, outbox_id)
    if row is None or row.status == "SENT":
        return None

    channel = get_channels().get(row.channel)
    row.attempts = (row.attempts or 0) + 1
    if channel is None:
        result = DeliveryResult(success=False, error=f"Unknown channel: {row.channel}")
    else:
        try:
            result = channel.send(row.recipient, Message(body=row.body, subject=row.subject))
        except Exception as exc:
            current_app.logger.exception("Notification %s raised in channel %s", row.id, row.channel)
            result = DeliveryResult(success=False, error=str(exc) or exc.__class__.__name__)

    now = utcnow()
    if result.success:
        row.status = "SENT"
        row.sent_at = now
        row.provider_message_id = result.provider_message_id
        row.error = None
        if row.entity_type == "repair":
            _mark_repair_delivered(row, now)
        current_app.logger.info(
            "Notification %s sent via %s (%s %s)", row.id, row.channel, row.entity_type, row.entity_id
        )
    else:
        row.status = "FAILED"
        row.error = (result.error or "Unknown error")[:2000]
        current_app.logger.warning(
            "Notification %s via %s failed (%s %s): %s",
            row.id, row.channel, row.entity_type, row.entity_id, row.error,
        )

    db.session.commit()
    return result


def deliver_many(outbox_ids: list[int]) -> dict:
    sent = 0
    failed = 0
    for outbox_id in outbox_ids:
        try:
            result = deliver(outbox_id)
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Failed to record delivery of notification %s", outbox_id)
            failed += 1
            continue
        if result is None:
            continue
        if result.success:
            sent += 1
        else:
            failed += 1
    return {"sent": sent, "failed": failed}


def dispatch_pending(*, include_failed: bool = False, limit: int | None = None) -> dict:
    statuses = ["PENDING", "FAILED"] if include_failed else ["PENDING"]
    query = (
        db.session.query(NotificationOutbox.id)
        .filter(NotificationOutbox.status.in_(statuses))
        .order_by(NotificationOutbox.id.asc())
    )
    if limit:
        query = query.limit(limit)
    ids = [row_id for (row_id,) in query.all()]
    return deliver_many(ids)


def list_for_entity(entity_type: str, entity_id: int) -> list[NotificationOutbox]:
    return (
        db.session.query(NotificationOutbox)
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(NotificationOutbox.id.asc())
        .all()
    )


class NotificationDispatcher:
    """
    Hands committed outbox rows to the channels.

    Background mode runs each batch on a small thread pool inside its own
    app context; NOTIFICATIONS_SYNC delivers inline in the caller's context.
    """

    def __init__(self, app=None):
        self._executor: ThreadPoolExecutor | None = None
        self._app = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        self._app = app
        app.extensions["notification_dispatcher"] = self
        app.extensions.setdefault("notification_channels", build_channels(app.config))

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            workers = int(self._app.config.get("NOTIFICATION_WORKERS", 2))
            self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify")
        return self._executor

    def _run(self, app, outbox_ids: list[int]) -> None:
        with app.app_context():
            try:
                deliver_many(outbox_ids)
            finally:
                db.session.remove()

    def dispatch(self, outbox_ids) -> None:
        ids = [i for i in (outbox_ids or []) if i is not None]
        if not ids:
            return
        app = self._app
        if not app.config.get("NOTIFICATIONS_ENABLED", True):
            app.logger.info("Notifications disabled; %s outbox rows left pending", len(ids))
            return
        if app.config.get("NOTIFICATIONS_SYNC"):
            deliver_many(ids)
            return
        self._get_executor().submit(self._run, app, ids)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None


def dispatch_after_commit(rows) -> None:
    """Route helper: pass outbox rows (or ids) to the app's dispatcher."""
    ids = [getattr(r, "id", r) for r in (rows or [])]
    dispatcher = current_app.extensions.get("notification_dispatcher")
    if dispatcher is None:
        current_app.logger.warning("No notification dispatcher registered; %s rows left pending", len(ids))
        return
    dispatcher.dispatch(ids)
