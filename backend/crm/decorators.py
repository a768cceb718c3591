# Overview: Request authentication, role checks and store scoping for API routes.

from functools import wraps
from flask import request, g

from .responses import fail
from .services import session_service
from .services.auth_service import ForbiddenError


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user')


def require_auth(f):
    """
    Require a valid bearer token.

    Sets the following Flask g attributes:
    - g.current_user: The authenticated User object
    - g.store_id: Store chosen at login (None for admins without one)
    - g.session_context: The full SessionContext object

    Returns 401 for a missing, invalid, expired or revoked token, and for
    deactivated users.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return fail("Authentication required", 401)

        token = auth_header.split(" ", 1)[1].strip()
        context = session_service.validate_session(token)

        if not context:
            return fail("Invalid or expired token", 401)

        g.current_user = context.user
        g.store_id = context.store_id
        g.session_context = context
        g.token = token

        return f(*args, **kwargs)

    return decorated_function


def require_roles(*roles):
    """Allow only the listed roles. Admin always passes. Use after @require_auth."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return fail("Authentication required", 401)

            user = g.current_user
            if not user.is_admin and user.role not in roles:
                return fail("Permission denied", 403)

            return f(*args, **kwargs)

        return decorated_function
    return decorator


require_admin = require_roles("admin")


def ensure_store_access(store_id: int | None) -> None:
    """
    Raise ForbiddenError when a non-admin touches another store's data.

    Admins may act on any store.
    """
    user = g.current_user
    if user.is_admin or store_id is None:
        return
    if user.store_id != store_id:
        raise ForbiddenError("You don't have access to this store")


def scoped_store_id(requested: int | None) -> int | None:
    """
    Store filter for list endpoints.

    Non-admins are always scoped to their own store (asking for another one
    is forbidden); admins get what they asked for, which may be None.
    """
    user = g.current_user
    if user.is_admin:
        return requested
    ensure_store_access(requested)
    return user.store_id
