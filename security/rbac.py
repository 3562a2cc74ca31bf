from functools import wraps
from flask import g, jsonify

from models.user import SUPER_ADMIN


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper


def require_roles(*role_names: str):
    """
    @require_roles("ADMIN") lets through anyone holding one of the named roles.
    SUPER_ADMIN passes every check. Anonymous callers get 401, others 403.
    """
    allowed = set(role_names)

    def decorator(fn):
        @wraps(fn)
        @login_required
        def wrapper(*args, **kwargs):
            held = g.user.role_names
            if SUPER_ADMIN not in held and not held & allowed:
                return jsonify(error="Forbidden"), 403
            return fn(*args, **kwargs)
        return wrapper
    return decorator
