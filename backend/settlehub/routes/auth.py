# Overview: Flask API routes for registration, login and the caller's profile.

# backend/settlehub/routes/auth.py
"""
Authentication API routes

- POST /users        register (always USER unless an ADMIN token is presented)
- POST /auth/login   exchange email/password for a bearer JWT
- GET  /auth/me      profile of the token's owner
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import auth_service
from ..services import session_service
from ..models.auth import ROLE_ADMIN, ROLE_USER
from ..validation import ConflictError, ValidationError
from ..decorators import require_auth
from settlehub.time_utils import to_utc_z


auth_bp = Blueprint("auth", __name__)


def _caller_is_admin() -> bool:
    header = request.headers.get("Authorization") or ""
    if not header.startswith("Bearer "):
        return False
    context = session_service.validate_session(header.split(" ", 1)[1].strip())
    return bool(context and context.is_admin)


@auth_bp.post("/users")
def register_route():
    """
    Create an account.

    Body: {"email", "password", "name"?, "role"?}
    Asking for role ADMIN requires an admin bearer token (403 otherwise).
    """
    data = request.get_json(silent=True) or {}
    role = str(data.get("role") or ROLE_USER).strip().upper()

    if role == ROLE_ADMIN and not _caller_is_admin():
        current_app.logger.warning("Forbidden: admin account requested without admin token, path=%s", request.path)
        return jsonify({"error": "Only an admin can create admin accounts"}), 403

    try:
        user = auth_service.create_user(
            email=data.get("email"),
            password=data.get("password"),
            name=data.get("name"),
            role=role,
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to create user")
        return jsonify({"error": "Internal server error"}), 500

    current_app.logger.info("User registered: user_id=%s role=%s", user.id, user.role)
    return jsonify(user.to_dict()), 201


@auth_bp.post("/auth/login")
def login_route():
    """
    Authenticate user and issue a bearer token.

    Token must be included in the Authorization header for protected routes.
    """
    data = request.get_json(silent=True) or {}
    email = data.get("email")
    password = data.get("password")

    if not all([email, password]):
        return jsonify({"error": "email and password required"}), 400

    user = auth_service.authenticate(email, password)
    if not user:
        current_app.logger.warning("Failed login attempt for %s", email)
        return jsonify({"error": "Invalid credentials"}), 401

    token, expires_at = session_service.issue_token(user)
    return jsonify({
        "token": token,
        "email": user.email,
        "role": user.role,
        "expires_at": to_utc_z(expires_at),
    }), 200


@auth_bp.get("/auth/me")
@require_auth
def me_route():
    return jsonify(g.current_user.to_dict()), 200
