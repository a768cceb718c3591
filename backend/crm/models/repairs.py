from __future__ import annotations

from ..extensions import db
from crm.time_utils import to_utc_z


REPAIR_STATUSES = ("received", "diagnosed", "in_repair", "ready_for_pickup", "delivered", "cancelled")
REPAIR_PRIORITIES = ("low", "medium", "high")


class Repair(db.Model):
    """
    Repair ticket for a customer's device.

    The contact override (whatsapp_number / notification_email) and the
    notify_consent flag belong to the ticket, not the customer profile.
    """
    __tablename__ = "repairs"
    __table_args__ = (
        db.UniqueConstraint("ticket_number", name="uq_repairs_ticket_number"),
        db.Index("ix_repairs_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_number = db.Column(db.String(32), nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=True, index=True)

    device_type = db.Column(db.String(64), nullable=False, default="laptop")
    brand = db.Column(db.String(120), nullable=False)
    model = db.Column(db.String(120), nullable=False)
    serial_number = db.Column(db.String(120), nullable=True)

    issue_description = db.Column(db.Text, nullable=False)
    diagnosis = db.Column(db.Text, nullable=False, default="Pending diagnosis")

    parts_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    labor_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    priority = db.Column(db.String(16), nullable=False, default="medium")
    status = db.Column(db.String(24), nullable=False, default="received", index=True)
    technician = db.Column(db.String(120), nullable=True)
    warranty_days = db.Column(db.Integer, nullable=False, default=30)

    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    estimated_completion = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_completion = db.Column(db.DateTime(timezone=True), nullable=True)

    # Notification consent + contact override
    notify_consent = db.Column(db.Boolean, nullable=False, default=True)
    whatsapp_number = db.Column(db.String(32), nullable=True)
    notification_email = db.Column(db.String(255), nullable=True)

    # Pending flags are set by a notifying transition and cleared on delivery
    whatsapp_pending = db.Column(db.Boolean, nullable=False, default=False)
    email_pending = db.Column(db.Boolean, nullable=False, default=False)
    whatsapp_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    email_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("repairs", lazy=True))
    store = db.relationship("Store", backref=db.backref("repairs", lazy=True))
    notes = db.relationship("RepairNote", backref="repair", lazy=True, order_by="RepairNote.id")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_notes: bool = False) -> dict:
        data = {
            "id": self.id,
            "ticket_number": self.ticket_number,
            "customer_id": self.customer_id,
            "customer": self.customer.to_dict() if self.customer else None,
            "store_id": self.store_id,
            "device": {
                "type": self.device_type,
                "brand": self.brand,
                "model": self.model,
                "serial_number": self.serial_number,
            },
            "issue_description": self.issue_description,
            "diagnosis": self.diagnosis,
            "parts_cost_cents": self.parts_cost_cents,
            "labor_cost_cents": self.labor_cost_cents,
            "total_cost_cents": self.total_cost_cents,
            "priority": self.priority,
            "status": self.status,
            "technician": self.technician,
            "warranty_days": self.warranty_days,
            "received_at": to_utc_z(self.received_at),
            "estimated_completion": to_utc_z(self.estimated_completion) if self.estimated_completion else None,
            "actual_completion": to_utc_z(self.actual_completion) if self.actual_completion else None,
            "notify_consent": self.notify_consent,
            "contact": {
                "whatsapp_number": self.whatsapp_number,
                "notification_email": self.notification_email,
            },
            "whatsapp_pending": self.whatsapp_pending,
            "email_pending": self.email_pending,
            "whatsapp_sent_at": to_utc_z(self.whatsapp_sent_at) if self.whatsapp_sent_at else None,
            "email_sent_at": to_utc_z(self.email_sent_at) if self.email_sent_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_notes:
            data["notes"] = [note.to_dict() for note in self.notes]
        return data

    def to_tracking_dict(self) -> dict:
        """Public tracking view: no internal costs breakdown or staff fields."""
        customer = self.customer
        return {
            "ticket_number": self.ticket_number,
            "status": self.status,
            "device": {
                "type": self.device_type,
                "brand": self.brand,
                "model": self.model,
            },
            "issue_description": self.issue_description,
            "diagnosis": self.diagnosis,
            "total_cost_cents": self.total_cost_cents,
            "received_at": to_utc_z(self.received_at),
            "estimated_completion": to_utc_z(self.estimated_completion) if self.estimated_completion else None,
            "actual_completion": to_utc_z(self.actual_completion) if self.actual_completion else None,
            "customer": {
                "name": customer.name if customer else None,
                "phone": customer.phone if customer else None,
                "email": customer.email if customer else None,
            },
            "updated_at": to_utc_z(self.updated_at),
        }


class RepairNote(db.Model):
    """
    Append-only repair notes log.

    Status changes record from_status/to_status; free-form notes leave them NULL.
    """
    __tablename__ = "repair_notes"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    repair_id = db.Column(db.Integer, db.ForeignKey("repairs.id"), nullable=False, index=True)
    message = db.Column(db.Text, nullable=False)
    author = db.Column(db.String(120), nullable=True)
    from_status = db.Column(db.String(24), nullable=True)
    to_status = db.Column(db.String(24), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "repair_id": self.repair_id,
            "message": self.message,
            "author": self.author,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "created_at": to_utc_z(self.created_at),
        }
