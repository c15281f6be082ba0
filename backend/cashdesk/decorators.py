# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g


ACTOR_HEADER = "X-Actor-Id"


def require_actor(f):
    """
    Require an acting user and expose it as ``g.actor_id``.

    Authentication happens upstream; the cash core only records who acted.
    The header value is an opaque identifier (at most 64 characters).

    Returns 401 if the header is missing or blank.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = (request.headers.get(ACTOR_HEADER) or "").strip()

        if not actor:
            return jsonify({"error": f"{ACTOR_HEADER} header required"}), 401
        if len(actor) > 64:
            return jsonify({"error": f"{ACTOR_HEADER} header too long"}), 400

        g.actor_id = actor
        return f(*args, **kwargs)

    return decorated_function
