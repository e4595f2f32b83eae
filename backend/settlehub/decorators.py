# Overview: Request authentication and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g, current_app

from .services import session_service


def _is_authenticated() -> bool:
    return hasattr(g, 'session_context')


def require_auth(f):
    """
    Require a valid bearer token.

    Sets the following Flask g attributes:
    - g.current_user: The authenticated User object
    - g.session_context: The SessionContext for this request

    Returns 401 if the Authorization header is missing, the token is
    invalid or expired, or the user is gone / deactivated.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()

        context = session_service.validate_session(token)

        if not context:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = context.user
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Require the authenticated user to hold one of the given roles.

    Must be stacked below @require_auth. Denials are logged with the path
    and the caller so they show up in the application log.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            context = g.session_context
            if context.role not in roles:
                current_app.logger.warning(
                    "Forbidden: user_id=%s role=%s path=%s method=%s required=%s",
                    context.user_id,
                    context.role,
                    request.path,
                    request.method,
                    ",".join(roles),
                )
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": list(roles),
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator


require_admin = require_role("ADMIN")


def is_self_or_admin(user_id: int) -> bool:
    """True when the caller is the given user or an admin."""
    context = g.session_context
    return context.is_admin or context.user_id == user_id
