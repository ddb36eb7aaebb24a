# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .extensions import db
from .models import User


def require_actor(f):
    """
    Establish the acting user for workflow routes.

    Authentication lives in front of this service (gateway); the gateway
    forwards the resolved user id in the X-User-Id header.

    Sets:
    - g.user_id: id of an active User
    - g.current_user: the User row

    Returns 401 if the header is missing or malformed, 403 if the user is
    unknown or deactivated.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = (request.headers.get("X-User-Id") or "").strip()
        if not raw:
            return jsonify({"error": "X-User-Id header required"}), 401
        if not raw.isdigit():
            return jsonify({"error": "X-User-Id must be a numeric user id"}), 401

        user = db.session.get(User, int(raw))
        if user is None or not user.is_active:
            return jsonify({"error": "Unknown or inactive user"}), 403

        g.user_id = user.id
        g.current_user = user
        return f(*args, **kwargs)

    return decorated_function
