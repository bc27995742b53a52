"""
Role-based access: users hold roles, roles grant permission keys
(`memorials.view`, `memorials.edit`, `memorials.delete`, `admin.view`).
"""

from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, current_app, g, redirect, request, url_for

from app.petmemorial.models import User


def permission_keys(user: User | None) -> frozenset[str]:
    if not user or not user.is_active:
        return frozenset()
    return frozenset(p.key for role in user.roles for p in role.permissions)


def user_has_permission(user: User | None, permission_key: str) -> bool:
    return permission_key in permission_keys(user)


def _login_redirect():
    if request.method == "GET":
        nxt = request.full_path.rstrip("?") or request.path
    else:
        # A form post can't be replayed after login; land on the page instead.
        nxt = request.path
    return redirect(url_for("auth.login_get", next=nxt))


def require_permission(*required: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Every listed permission key is required."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return _login_redirect()
            missing = [k for k in required if not user_has_permission(user, k)]
            if missing:
                current_app.logger.warning("Permission denied: user=%s missing=%s", user.email, ",".join(missing))
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
