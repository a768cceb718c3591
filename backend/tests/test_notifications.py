# Overview: Pytest coverage for notification channels, the outbox and the dispatcher.

"""
Notification tests.

- channels report failures as results, never as exceptions
- every outbox row records each attempt (SENT or FAILED)
- dispatch_pending retries what is left in the outbox
"""

import smtplib

import pytest
from twilio.base.exceptions import TwilioException

from crm.models import NotificationOutbox
from crm.services import notification_service, repair_service
from crm.services.customer_service import CustomerById
from crm.services.notification_channels import (
    EmailChannel,
    Message,
    WhatsAppChannel,
    normalize_whatsapp_number,
)


class FakeTwilioMessages:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return type("TwilioMessage", (), {"sid": "SM123"})()


class FakeTwilioClient:
    def __init__(self, error=None):
        self.messages = FakeTwilioMessages(error)


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.tls = False
        self.logged_in = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.tls = True

    def login(self, user, password):
        self.logged_in = user

    def send_message(self, msg):
        FakeSMTP.sent.append(msg)


class BrokenSMTP(FakeSMTP):
    def send_message(self, msg):
        raise smtplib.SMTPException("mailbox unavailable")


class NoTlsSMTP(FakeSMTP):
    closed = False

    def starttls(self):
        raise smtplib.SMTPNotSupportedError("STARTTLS extension not supported by server.")

    def close(self):
        NoTlsSMTP.closed = True


# =============================================================================
# CHANNELS
# =============================================================================


class TestWhatsAppChannel:
    @pytest.mark.parametrize("raw,expected", [
        ("whatsapp:+14155238886", "+14155238886"),
        ("+91 98765-43210", "+919876543210"),
        ("98765 43210", "9876543210"),
        (None, None),
    ])
    def test_normalize_number(self, raw, expected):
        assert normalize_whatsapp_number(raw) == expected

    def test_not_configured(self, app):
        channel = WhatsAppChannel(None, None, None)
        assert channel.configured is False
        result = channel.send("+919876543210", Message(body="hi"))
        assert result.success is False
        assert result.error == "WhatsApp channel not configured"

    def test_sends_via_client(self, app):
        client = FakeTwilioClient()
        channel = WhatsAppChannel("AC1", "secret", "+14155238886", client=client)

        result = channel.send("whatsapp:+919876543210", Message(body="Your laptop is ready"))

        assert result.success is True
        assert result.provider_message_id == "SM123"
        assert client.messages.calls == [{
            "body": "Your laptop is ready",
            "from_": "whatsapp:+14155238886",
            "to": "whatsapp:+919876543210",
        }]

    def test_rejects_non_e164_number(self, app):
        client = FakeTwilioClient()
        channel = WhatsAppChannel("AC1", "secret", "+14155238886", client=client)

        result = channel.send("9876543210", Message(body="hi"))
        assert result.success is False
        assert "E.164" in result.error
        assert client.messages.calls == []

    def test_provider_error_is_a_result(self, app):
        channel = WhatsAppChannel("AC1", "secret", "+14155238886", client=FakeTwilioClient(TwilioException("rate limited")))
        result = channel.send("+919876543210", Message(body="hi"))
        assert result.success is False
        assert "rate limited" in result.error


class TestEmailChannel:
    def test_not_configured(self, app):
        result = EmailChannel(host=None).send("ravi@example.com", Message(body="hi", subject="Hello"))
        assert result.success is False
        assert result.error == "Email channel not configured"

    def test_sends_with_starttls(self, app, monkeypatch):
        FakeSMTP.sent = []
        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
        channel = EmailChannel(host="smtp.test", port=587, username="crm@test.com", password="pw")

        result = channel.send("ravi@example.com", Message(body="Receipt body", subject="Your receipt"))

        assert result.success is True
        assert len(FakeSMTP.sent) == 1
        msg = FakeSMTP.sent[0]
        assert msg["To"] == "ravi@example.com"
        assert msg["From"] == "crm@test.com"
        assert msg["Subject"] == "Your receipt"
        assert result.provider_message_id == msg["Message-ID"]

    def test_smtp_error_is_a_result(self, app, monkeypatch):
        monkeypatch.setattr(smtplib, "SMTP", BrokenSMTP)
        channel = EmailChannel(host="smtp.test", from_address="crm@test.com")

        result = channel.send("ravi@example.com", Message(body="hi"))
        assert result.success is False
        assert result.error == "mailbox unavailable"

    def test_starttls_refusal_closes_connection(self, app, monkeypatch):
        NoTlsSMTP.closed = False
        monkeypatch.setattr(smtplib, "SMTP", NoTlsSMTP)
        channel = EmailChannel(host="smtp.test", from_address="crm@test.com")

        result = channel.send("ravi@example.com", Message(body="hi"))

        assert result.success is False
        assert "STARTTLS" in result.error
        assert NoTlsSMTP.closed is True

    def test_invalid_recipient(self, app):
        channel = EmailChannel(host="smtp.test", from_address="crm@test.com")
        assert channel.send("not-an-email", Message(body="hi")).success is False


# =============================================================================
# OUTBOX
# =============================================================================


@pytest.fixture
def ready_repair(db_session, store, customer):
    repair = repair_service.create_repair(
        customer_ref=CustomerById(customer.id),
        device={"brand": "Asus", "model": "VivoBook 15"},
        issue_description="Won't charge",
        store_id=store.id,
        whatsapp_number="+919876543210",
    )
    repair, outbox_ids = repair_service.transition(repair.id, "ready_for_pickup")
    return repair, outbox_ids


class TestOutbox:
    def test_enqueue_only_with_consent(self, db_session, store, customer):
        repair = repair_service.create_repair(
            customer_ref=CustomerById(customer.id),
            device={"brand": "Asus", "model": "VivoBook 15"},
            issue_description="Won't charge",
            store_id=store.id,
            notify_consent=False,
        )
        assert notification_service.enqueue_repair_status(repair) == []

    def test_unknown_channel_fails_row(self, db_session, ready_repair, channels):
        row = db_session.query(NotificationOutbox).filter_by(channel="email").first()
        row.channel = "sms"
        db_session.commit()

        result = notification_service.deliver(row.id)
        assert result.success is False
        db_session.refresh(row)
        assert row.status == "FAILED"
        assert row.error == "Unknown channel: sms"

    def test_channel_exception_recorded(self, db_session, ready_repair, channels):
        def explode(recipient, message):
            raise RuntimeError("socket closed")

        channels["whatsapp"].send = explode
        _, outbox_ids = ready_repair

        assert notification_service.deliver_many(outbox_ids) == {"sent": 1, "failed": 1}
        row = db_session.query(NotificationOutbox).filter_by(channel="whatsapp").one()
        assert row.status == "FAILED"
        assert row.error == "socket closed"

    def test_sent_rows_are_not_resent(self, db_session, ready_repair, channels):
        _, outbox_ids = ready_repair
        notification_service.deliver_many(outbox_ids)

        assert notification_service.deliver(outbox_ids[0]) is None
        assert len(channels["whatsapp"].sent) == 1

    def test_dispatch_pending_retries_failed(self, db_session, ready_repair, channels):
        channels["email"].fail = True
        _, outbox_ids = ready_repair
        notification_service.deliver_many(outbox_ids)

        channels["email"].fail = False
        assert notification_service.dispatch_pending() == {"sent": 0, "failed": 0}
        assert notification_service.dispatch_pending(include_failed=True) == {"sent": 1, "failed": 0}

        row = db_session.query(NotificationOutbox).filter_by(channel="email").one()
        assert row.status == "SENT"
        assert row.attempts == 2

        repair, _ = ready_repair
        db_session.refresh(repair)
        assert repair.email_pending is False

    def test_dispatcher_delivers_inline_when_sync(self, app, db_session, ready_repair, channels):
        _, outbox_ids = ready_repair
        app.extensions["notification_dispatcher"].dispatch(outbox_ids)

        statuses = [r.status for r in db_session.query(NotificationOutbox).order_by(NotificationOutbox.id)]
        assert statuses == ["SENT", "SENT"]

    def test_dispatcher_respects_disabled_flag(self, app, db_session, ready_repair, channels):
        _, outbox_ids = ready_repair
        app.config["NOTIFICATIONS_ENABLED"] = False
        try:
            app.extensions["notification_dispatcher"].dispatch(outbox_ids)
        finally:
            app.config["NOTIFICATIONS_ENABLED"] = True

        assert channels["whatsapp"].sent == []
        statuses = {r.status for r in db_session.query(NotificationOutbox).all()}
        assert statuses == {"PENDING"}


class TestHealth:
    def test_health_reports_database_and_channels(self, client, db_session):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json["data"]
        assert data["status"] == "healthy"
        assert data["database"]["status"] == "healthy"
        assert data["notification_channels"] == {"whatsapp": False, "email": False}
