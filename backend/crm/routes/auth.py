# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

"""
Authentication API routes

- Login by email or phone; non-admin staff must pick their own store
- Bearer session tokens (see session_service)
- Registration is restricted to administrators
"""

from flask import Blueprint, request, current_app, g

from ..services import auth_service
from ..services import session_service
from ..services.auth_service import PasswordValidationError, AuthError, ForbiddenError
from ..validation import ValidationError, ConflictError
from ..decorators import require_auth, require_admin
from ..responses import ok, fail


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _optional_int(value, field: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        if isinstance(value, bool):
            raise ValueError
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", [{"field": field, "message": "must be an integer"}])


@auth_bp.post("/register")
@require_auth
@require_admin
def register_route():
    """Create a staff account (admin only)."""
    data = request.get_json(silent=True) or {}
    try:
        user = auth_service.register_user(
            name=data.get("name"),
            email=data.get("email"),
            phone=data.get("phone"),
            password=data.get("password"),
            role=data.get("role") or "sales",
            store_id=_optional_int(data.get("store_id"), "store_id"),
        )
    except PasswordValidationError as e:
        return fail(str(e), 400, errors=[{"field": "password", "message": str(e)}])
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except ConflictError as e:
        return fail(str(e), 409)

    current_app.logger.info("User %s registered by %s", user.id, g.current_user.id)
    return ok(user.to_dict(), 201, message="User registered successfully")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate and create a session token.

    Body: identifier (or email / phone), password, store_id (required for
    non-admin users).
    """
    data = request.get_json(silent=True) or {}
    identifier = data.get("identifier") or data.get("email") or data.get("phone")

    try:
        store_id = _optional_int(data.get("store_id"), "store_id")
        user = auth_service.authenticate(identifier, data.get("password"), store_id)
    except ValidationError as e:
        return fail(str(e), 400, errors=e.errors)
    except AuthError as e:
        current_app.logger.info("Failed login for %s: %s", identifier, e)
        return fail(str(e), 401)
    except ForbiddenError as e:
        return fail(str(e), 403)

    session, token = session_service.create_session(
        user.id,
        store_id=store_id,
        user_agent=request.headers.get("User-Agent"),
        ip_address=request.remote_addr,
    )

    return ok({
        "token": token,
        "expires_at": session.to_dict()["expires_at"],
        "store_id": session.store_id,
        "user": user.to_dict(),
    }, message="Login successful")


@auth_bp.post("/logout")
@require_auth
def logout_route():
    session_service.revoke_session(g.token)
    return ok(None, message="Logged out")


@auth_bp.get("/me")
@require_auth
def me_route():
    return ok({
        "user": g.current_user.to_dict(),
        "store_id": g.store_id,
        "session": g.session_context.session.to_dict(),
    })
