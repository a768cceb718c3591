"""
Authentication tests.

Verifies:
- Login by email or phone; non-admin staff must select their own store
- Bad credentials and deactivated accounts return 401
- Session tokens expire, go idle and are revoked on logout
- Only administrators register staff
"""

from datetime import timedelta

import pytest

from crm.models import SessionToken, User
from crm.services import auth_service, session_service
from crm.services.auth_service import PasswordValidationError
from crm.validation import ConflictError, ValidationError


# =============================================================================
# LOGIN
# =============================================================================


class TestLogin:
    def test_login_with_email_and_store(self, client, sales_user, store):
        response = client.post(
            "/api/auth/login",
            json={"identifier": "SALES@crm.test", "password": "Password123!", "store_id": store.id},
        )

        assert response.status_code == 200
        body = response.json
        assert body["success"] is True
        assert body["message"] == "Login successful"
        assert len(body["data"]["token"]) == 64
        assert body["data"]["store_id"] == store.id
        assert body["data"]["user"]["role"] == "sales"
        assert "password_hash" not in body["data"]["user"]

    def test_login_with_phone(self, client, sales_user, store):
        response = client.post(
            "/api/auth/login",
            json={"phone": "9000000003", "password": "Password123!", "store_id": store.id},
        )
        assert response.status_code == 200

    def test_store_required_for_staff(self, client, sales_user):
        response = client.post("/api/auth/login", json={"identifier": "sales@crm.test", "password": "Password123!"})
        assert response.status_code == 400
        assert response.json["message"] == "Store selection is required"

    def test_wrong_store_is_403(self, client, sales_user, other_store):
        response = client.post(
            "/api/auth/login",
            json={"identifier": "sales@crm.test", "password": "Password123!", "store_id": other_store.id},
        )
        assert response.status_code == 403

    def test_admin_needs_no_store(self, client, admin_user):
        response = client.post("/api/auth/login", json={"identifier": "admin@crm.test", "password": "Password123!"})
        assert response.status_code == 200
        assert response.json["data"]["store_id"] is None

    def test_wrong_password_is_401(self, client, sales_user, store):
        response = client.post(
            "/api/auth/login",
            json={"identifier": "sales@crm.test", "password": "Wrong123!", "store_id": store.id},
        )
        assert response.status_code == 401
        assert response.json == {"success": False, "message": "Invalid credentials"}

    def test_unknown_user_is_401(self, client, db_session):
        response = client.post("/api/auth/login", json={"identifier": "ghost@crm.test", "password": "Password123!"})
        assert response.status_code == 401

    def test_deactivated_user_is_401(self, client, db_session, sales_user, store):
        sales_user.is_active = False
        db_session.commit()

        response = client.post(
            "/api/auth/login",
            json={"identifier": "sales@crm.test", "password": "Password123!", "store_id": store.id},
        )
        assert response.status_code == 401
        assert response.json["message"] == "Account is deactivated"

    def test_missing_fields_is_400(self, client, db_session):
        assert client.post("/api/auth/login", json={}).status_code == 400

    def test_login_updates_last_login(self, client, db_session, sales_user, store):
        client.post(
            "/api/auth/login",
            json={"identifier": "sales@crm.test", "password": "Password123!", "store_id": store.id},
        )
        db_session.refresh(sales_user)
        assert sales_user.last_login_at is not None


# =============================================================================
# SESSIONS
# =============================================================================


class TestSessions:
    def test_me(self, client, sales_headers, store):
        response = client.get("/api/auth/me", headers=sales_headers)
        assert response.status_code == 200
        assert response.json["data"]["user"]["email"] == "sales@crm.test"
        assert response.json["data"]["store_id"] == store.id

    def test_missing_or_bad_token_is_401(self, client, db_session):
        assert client.get("/api/auth/me").status_code == 401
        response = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401
        assert response.json["success"] is False

    def test_logout_revokes_token(self, client, sales_headers):
        assert client.post("/api/auth/logout", headers=sales_headers).status_code == 200
        assert client.get("/api/auth/me", headers=sales_headers).status_code == 401

    def test_token_stored_hashed(self, db_session, sales_user):
        session, token = session_service.create_session(sales_user.id)
        assert session.token_hash == session_service.hash_token(token)
        assert session.token_hash != token

    def test_staff_session_pinned_to_own_store(self, db_session, sales_user, store, other_store):
        session, _ = session_service.create_session(sales_user.id, store_id=other_store.id)
        assert session.store_id == store.id

    def test_idle_session_is_revoked(self, db_session, sales_user):
        session, token = session_service.create_session(sales_user.id)
        session.last_used_at = session.last_used_at - session_service.SESSION_IDLE_TIMEOUT - timedelta(minutes=1)
        db_session.commit()

        assert session_service.validate_session(token) is None
        db_session.refresh(session)
        assert session.is_revoked is True
        assert session.revoked_reason == "Idle timeout"

    def test_expired_session_rejected(self, db_session, sales_user):
        session, token = session_service.create_session(sales_user.id)
        session.expires_at = session.created_at - timedelta(seconds=1)
        db_session.commit()

        assert session_service.validate_session(token) is None

    def test_deactivated_user_session_revoked(self, client, db_session, sales_user, sales_headers):
        sales_user.is_active = False
        db_session.commit()

        assert client.get("/api/auth/me", headers=sales_headers).status_code == 401

    def test_revoke_all_and_cleanup(self, db_session, sales_user):
        session_service.create_session(sales_user.id)
        session_service.create_session(sales_user.id)

        assert session_service.revoke_all_user_sessions(sales_user.id) == 2
        assert session_service.cleanup_expired_sessions() == 0

        for session in db_session.query(SessionToken).all():
            session.created_at = session.created_at - timedelta(days=31)
        db_session.commit()
        assert session_service.cleanup_expired_sessions() == 2


# =============================================================================
# PASSWORDS AND REGISTRATION
# =============================================================================


class TestPasswords:
    @pytest.mark.parametrize("password", ["Short1!", "alllower123!", "ALLUPPER123!", "NoDigits!!", "NoSpecial123"])
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(PasswordValidationError):
            auth_service.validate_password_strength(password)

    def test_hash_and_verify(self):
        hashed = auth_service.hash_password("Str0ng!Pass")
        assert hashed.startswith("$2b$12$")
        assert auth_service.verify_password("Str0ng!Pass", hashed) is True
        assert auth_service.verify_password("wrong", hashed) is False
        assert auth_service.verify_password("Str0ng!Pass", "not-a-hash") is False


class TestRegistration:
    def _payload(self, store, **extra):
        payload = {
            "name": "New Engineer",
            "email": "new.engineer@crm.test",
            "phone": "9000000010",
            "password": "Password123!",
            "role": "engineer",
            "store_id": store.id,
        }
        payload.update(extra)
        return payload

    def test_admin_registers_staff(self, client, db_session, admin_headers, store):
        response = client.post("/api/auth/register", json=self._payload(store), headers=admin_headers)

        assert response.status_code == 201
        assert response.json["data"]["role"] == "engineer"
        assert response.json["data"]["store_id"] == store.id
        assert db_session.query(User).filter_by(email="new.engineer@crm.test").count() == 1

    def test_non_admin_cannot_register(self, client, manager_headers, store):
        response = client.post("/api/auth/register", json=self._payload(store), headers=manager_headers)
        assert response.status_code == 403

    def test_register_requires_auth(self, client, store):
        assert client.post("/api/auth/register", json=self._payload(store)).status_code == 401

    def test_weak_password_is_400(self, client, admin_headers, store):
        response = client.post(
            "/api/auth/register", json=self._payload(store, password="weak"), headers=admin_headers
        )
        assert response.status_code == 400
        assert response.json["errors"][0]["field"] == "password"

    def test_duplicate_email_is_409(self, client, admin_headers, store, sales_user):
        response = client.post(
            "/api/auth/register", json=self._payload(store, email="sales@crm.test"), headers=admin_headers
        )
        assert response.status_code == 409

    def test_staff_need_a_store(self, db_session):
        with pytest.raises(ValidationError) as exc:
            auth_service.register_user(
                name="No Store", email="nostore@crm.test", phone="9000000011",
                password="Password123!", role="sales",
            )
        assert exc.value.errors[0]["field"] == "store_id"

    def test_unknown_role(self, db_session, store):
        with pytest.raises(ValidationError):
            auth_service.register_user(
                name="X", email="x@crm.test", phone="9000000012",
                password="Password123!", role="cashier", store_id=store.id,
            )

    def test_duplicate_phone_conflicts(self, db_session, store, sales_user):
        with pytest.raises(ConflictError):
            auth_service.register_user(
                name="Dup", email="dup@crm.test", phone="9000000003",
                password="Password123!", role="sales", store_id=store.id,
            )
