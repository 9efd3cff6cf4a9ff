# Overview: Request identity decorator for API routes.

from functools import wraps
from flask import request, jsonify, g

from .actors import Actor, ACTOR_KINDS
from .errors import ValidationError


def require_actor(*kinds):
    """
    Require an already-authenticated caller identity.

    The gateway in front of this service authenticates the caller and
    forwards X-Actor-Type / X-Actor-Id. Sets g.actor to an Actor.

    Returns 401 when either header is missing or malformed, 403 when the
    actor kind is not one of `kinds` (no kinds = any kind).
    """
    allowed = set(kinds) or ACTOR_KINDS

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            kind = (request.headers.get("X-Actor-Type") or "").strip()
            actor_id = (request.headers.get("X-Actor-Id") or "").strip()
            if not kind or not actor_id:
                return jsonify({"error": "Authentication required"}), 401

            try:
                actor = Actor(kind, actor_id)
            except ValidationError:
                return jsonify({"error": "Invalid actor"}), 401

            if actor.kind == "staff" and actor.staff_id is None:
                return jsonify({"error": "Invalid actor"}), 401

            if actor.kind not in allowed:
                return jsonify({
                    "error": "Permission denied",
                    "code": "not_authorized",
                    "details": {"allowed": sorted(allowed)},
                }), 403

            g.actor = actor
            return f(*args, **kwargs)

        return decorated_function

    return decorator
