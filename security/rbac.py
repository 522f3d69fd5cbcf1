from functools import wraps
from flask import current_app, g, jsonify, request


def require_roles(*role_names: str):
    """
    Usage: @require_roles("ADMIN")

    Needs a resolved session (g.user); answers 401 without one and 403
    when the account holds none of the listed roles.
    """
    allowed = frozenset(role_names)

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                return jsonify(error="Authentication required"), 401

            if allowed.isdisjoint(user.role_names):
                current_app.logger.warning(
                    "User %s denied %s %s (needs one of %s)",
                    user.id, request.method, request.path, ", ".join(sorted(allowed)),
                )
                return jsonify(error="Forbidden"), 403

            return fn(*args, **kwargs)
        return wrapper
    return decorator
