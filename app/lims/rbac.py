from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, current_app, g, redirect, request, url_for

from app.lims.models import User


def user_has_permission(user: User | None, permission_key: str) -> bool:
    """
    permission_key is "<module>:<action>", e.g. "process:edit".
    The Admin role bypasses the matrix.
    """
    if not user or not user.is_active or not user.role:
        return False
    if user.role.is_admin:
        return True
    return any(perm.key == permission_key for perm in user.role.permissions)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → redirect to login.
            if not user or not user.is_active:
                nxt = request.full_path or request.path
                # Avoid trailing '?' from full_path when there is no query string.
                if nxt.endswith("?"):
                    nxt = nxt[:-1]
                return redirect(url_for("auth.login_get", next=nxt))
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                current_app.logger.warning(
                    "Forbidden: user=%s missing_permission=%s request_id=%s",
                    user.username,
                    permission_key,
                    getattr(g, "request_id", None),
                )
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
