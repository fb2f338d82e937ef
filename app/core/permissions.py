from __future__ import annotations

from functools import wraps

from flask import abort, g
from flask_login import current_user


def has_permission(module: str, action: str) -> bool:
    return f"{module}.{action}" in (getattr(g, "permissions", None) or set())


def require_permission(module: str, action: str):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                abort(401)
            if not has_permission(module, action):
                abort(403)
            return fn(*args, **kwargs)

        return wrapper

    return decorator


def require_any_permission(*names: str):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                abort(401)
            granted = getattr(g, "permissions", None) or set()
            if not granted.intersection(names):
                abort(403)
            return fn(*args, **kwargs)

        return wrapper

    return decorator
