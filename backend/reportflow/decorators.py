# Overview: Request decorators for API routes; establish the acting user and gate by role.

from functools import wraps
from flask import request, jsonify, g

from .extensions import db
from .models import User

ACTOR_HEADER = "X-Actor-Id"


def _is_authenticated() -> bool:
    return hasattr(g, "actor")


def require_actor(f):
    """
    Establish the acting user from the X-Actor-Id header.

    Authentication itself happens upstream; this only resolves the id it
    forwards. Sets g.actor to the active User.

    Returns 401 if:
    - No X-Actor-Id header, or it is not an integer
    - Unknown user id
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not raw.isdigit():
            return jsonify({"error": "Authentication required"}), 401

        actor = db.session.get(User, int(raw))
        if actor is None or not actor.is_active:
            return jsonify({"error": "Unknown or inactive actor"}), 401

        g.actor = actor
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles):
    """Require g.actor to hold one of roles. Use after @require_actor."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            if g.actor.role not in roles:
                return jsonify({
                    "error": "Forbidden",
                    "detail": f"Requires role: {', '.join(roles)}",
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
