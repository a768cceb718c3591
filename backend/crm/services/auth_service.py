# Overview: Password hashing, staff registration and login checks.

"""
Authentication Service

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters, upper, lower, digit and special character required
- Session tokens managed separately (see session_service.py)
- Non-admin staff must log in against their own store
"""

import bcrypt
import re

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import User, Store
from ..models.auth import ROLES
from ..validation import ConflictError, ValidationError, EMAIL_RE
from crm.time_utils import utcnow


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


class AuthError(Exception):
    """401: missing or invalid credentials, or inactive account."""


class ForbiddenError(Exception):
    """403: authenticated but not allowed (e.g. another store's data)."""


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character (!@#$%^&*(),.'":{}|<>)

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt with cost factor 12.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Timing-safe bcrypt check; malformed hashes never match."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def register_user(
    *,
    name: str,
    email: str,
    phone: str,
    password: str,
    role: str = "sales",
    store_id: int | None = None,
) -> User:
    """
    Create a staff account.

    Non-admin roles require an existing, active store. Email/phone must be
    unique (ConflictError). Weak passwords raise PasswordValidationError.
    """
    errors = []
    name = (name or "").strip()
    email = (email or "").strip().lower()
    phone = (phone or "").strip()
    if not name:
        errors.append({"field": "name", "message": "Name is required"})
    if not email or not EMAIL_RE.match(email):
        errors.append({"field": "email", "message": "Please provide a valid email address"})
    if not phone:
        errors.append({"field": "phone", "message": "Phone is required"})
    if not password:
        errors.append({"field": "password", "message": "Password is required"})
    if role not in ROLES:
        errors.append({"field": "role", "message": f"must be one of {', '.join(ROLES)}"})
    if role != "admin" and store_id is None:
        errors.append({"field": "store_id", "message": "Store is required for non-admin users"})
    if errors:
        message = errors[0]["message"] if len(errors) == 1 else "Validation failed"
        raise ValidationError(message, errors)

    if store_id is not None:
        store = db.session.get(Store, store_id)
        if not store or not store.is_active:
            raise ValidationError("Invalid store", [{"field": "store_id", "message": "Invalid store"}])

    existing = db.session.query(User).filter(
        db.or_(User.email == email, User.phone == phone)
    ).first()
    if existing:
        raise ConflictError("User with this email or phone already exists")

    user = User(
        name=name,
        email=email,
        phone=phone,
        password_hash=hash_password(password),
        role=role,
        store_id=store_id,
        is_active=True,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("User with this email or phone already exists")
    return user


def authenticate(identifier: str, password: str, store_id: int | None = None) -> User:
    """
    Check credentials and the store rule.

    - identifier is an email or a phone number
    - unknown identifier / wrong password / inactive account -> AuthError
    - non-admin without store_id -> ValidationError
    - non-admin logging in to a store other than their own -> ForbiddenError

    Updates last_login_at on success.
    """
    identifier = (identifier or "").strip()
    if not identifier or not password:
        raise ValidationError(
            "Identifier and password are required",
            [{"field": "identifier", "message": "Email or phone and password are required"}],
        )

    user = db.session.query(User).filter(
        db.or_(User.email == identifier.lower(), User.phone == identifier)
    ).first()

    if not user or not verify_password(password, user.password_hash):
        raise AuthError("Invalid credentials")
    if not user.is_active:
        raise AuthError("Account is deactivated")

    if not user.is_admin:
        if store_id is None:
            raise ValidationError("Store selection is required", [{"field": "store_id", "message": "Store selection is required"}])
        if user.store_id != store_id:
            raise ForbiddenError("You don't have access to this store")

    user.last_login_at = utcnow()
    db.session.commit()
    return user
