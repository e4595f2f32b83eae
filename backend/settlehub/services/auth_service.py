# Overview: Service-layer operations for user accounts and credentials.

"""
Authentication Service

Users register with an email and a password; passwords are bcrypt hashed and
must meet the strength rules below. Login itself only verifies credentials;
bearer tokens are issued by session_service.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor from BCRYPT_ROUNDS, default 12)
- Minimum 8 characters, upper, lower, digit and special char required
- Emails are normalized to lowercase before storage and lookup
"""

import re

import bcrypt
from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import User
from ..models.auth import ROLE_USER, VALID_ROLES
from ..validation import ConflictError, ValidationError
from settlehub.time_utils import utcnow


EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9+_.-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""


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
    if not isinstance(password, str) or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def normalize_email(email: str | None) -> str:
    if not email or not isinstance(email, str) or not email.strip():
        raise ValidationError("Email cannot be empty")
    normalized = email.strip().lower()
    if not EMAIL_PATTERN.match(normalized):
        raise ValidationError("Invalid email format")
    return normalized


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    rounds = current_app.config.get("BCRYPT_ROUNDS", 12)
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """Verify password against bcrypt hash (bcrypt.checkpw is timing-safe)."""
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        # Malformed stored hash
        return False


def create_user(
    email: str,
    password: str,
    name: str | None = None,
    role: str = ROLE_USER,
) -> User:
    """
    Create new user with bcrypt password hashing.

    Args:
        email: Login identifier, unique across the platform
        password: Password meeting strength requirements
        name: Optional display name (reported as orderer name)
        role: USER or ADMIN

    Returns:
        Created User object

    Raises:
        ValidationError: Bad email / role / name
        PasswordValidationError: If password doesn't meet requirements
        ConflictError: If the email is already registered
    """
    email = normalize_email(email)

    if role not in VALID_ROLES:
        raise ValidationError(f"Invalid role: {role}. Must be one of {list(VALID_ROLES)}")

    if name is not None:
        name = str(name).strip() or None
        if name and len(name) > 100:
            raise ValidationError("name exceeds max length 100")

    if db.session.query(User).filter_by(email=email).first():
        raise ConflictError(f"Email already registered: {email}")

    user = User(
        email=email,
        name=name,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"Email already registered: {email}")

    return user


def authenticate(email: str, password: str) -> User | None:
    """
    Check credentials. Returns the user or None.

    Inactive users never authenticate. On success last_login_at is stamped.
    """
    try:
        email = normalize_email(email)
    except ValidationError:
        return None

    user = db.session.query(User).filter_by(email=email).first()
    if not user or not user.is_active:
        return None

    if not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user


def get_user(user_id: int) -> User | None:
    return db.session.get(User, user_id)
