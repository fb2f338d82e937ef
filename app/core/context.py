from __future__ import annotations

from flask import g
from flask_login import current_user, logout_user


def load_permission_context() -> None:
    g.permissions = set()
    g.role = None
    if not current_user.is_authenticated:
        return
    if not current_user.is_active:
        logout_user()
        return
    g.role = current_user.role
    g.permissions = current_user.permission_names
