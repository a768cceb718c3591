from __future__ import annotations

from ..extensions import db
from crm.time_utils import to_utc_z


class NotificationOutbox(db.Model):
    """
    Outbound notification queued with the state change that caused it.

    Rows are inserted inside the domain transaction and delivered only after
    commit. PENDING -> SENT or FAILED; one attempt per dispatch, no automatic
    retry.
    """
    __tablename__ = "notification_outbox"
    __table_args__ = (
        db.Index("ix_outbox_status_created", "status", "created_at"),
        db.Index("ix_outbox_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # whatsapp, email
    channel = db.Column(db.String(16), nullable=False)
    recipient = db.Column(db.String(255), nullable=False)
    subject = db.Column(db.String(255), nullable=True)
    body = db.Column(db.Text, nullable=False)
    template = db.Column(db.String(64), nullable=False)

    # repair, sale
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)

    # PENDING, SENT, FAILED
    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    provider_message_id = db.Column(db.String(128), nullable=True)
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel": self.channel,
            "recipient": self.recipient,
            "subject": self.subject,
            "template": self.template,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "status": self.status,
            "attempts": self.attempts,
            "provider_message_id": self.provider_message_id,
            "error": self.error,
            "created_at": to_utc_z(self.created_at),
            "sent_at": to_utc_z(self.sent_at) if self.sent_at else None,
        }
