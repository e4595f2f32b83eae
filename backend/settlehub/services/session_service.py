# Overview: Service-layer operations for bearer tokens and per-request session context.

"""
Session Token Service

Tokens are stateless HS256 JWTs signed with JWT_SECRET_KEY:
    {"sub": "<user id>", "email": ..., "role": ..., "iat": ..., "exp": ...}

Every authenticated request resolves its token into a SessionContext that
the require_auth decorator places on flask.g. Nothing about the caller is
kept in module state.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from flask import current_app
from jose import jwt, JWTError

from ..models import User
from .auth_service import get_user


@dataclass
class SessionContext:
    """
    Identity of the caller for one request.

    role comes from the current user row, not the token, so a demoted
    admin loses access before the token expires.
    """
    user: User
    role: str
    claims: dict = field(default_factory=dict)

    @property
    def user_id(self) -> int:
        return self.user.id

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"


def issue_token(user: User) -> tuple[str, datetime]:
    """
    Create a signed access token for the user.

    Returns (token, expires_at) with expires_at as aware UTC datetime.
    """
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(minutes=current_app.config["JWT_EXPIRES_MINUTES"])
    claims = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(
        claims,
        current_app.config["JWT_SECRET_KEY"],
        algorithm=current_app.config["JWT_ALGORITHM"],
    )
    return token, expires_at


def decode_token(token: str) -> dict | None:
    """Verify signature and expiry. Returns the claims or None."""
    try:
        return jwt.decode(
            token,
            current_app.config["JWT_SECRET_KEY"],
            algorithms=[current_app.config["JWT_ALGORITHM"]],
        )
    except JWTError:
        return None


def validate_session(token: str) -> SessionContext | None:
    """
    Resolve a bearer token to a SessionContext.

    Returns None when the token is invalid/expired, the subject is not a
    user id, or the user no longer exists or is deactivated.
    """
    claims = decode_token(token)
    if not claims:
        return None

    try:
        user_id = int(claims.get("sub"))
    except (TypeError, ValueError):
        return None

    user = get_user(user_id)
    if not user or not user.is_active:
        return None

    return SessionContext(user=user, role=user.role, claims=claims)
