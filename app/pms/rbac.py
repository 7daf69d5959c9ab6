from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, redirect, request, url_for

from app.pms.models import User

# Path prefix -> roles allowed through. Checked before every request.
ROLE_GATED_PREFIXES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("/physician", ("physician", "admin")),
    ("/patient", ("patient", "admin")),
    ("/staff", ("staff", "admin")),
    ("/admin", ("admin",)),
)

PUBLIC_PATHS = frozenset({"/", "/about", "/services", "/pricing", "/contact", "/locations", "/health", "/healthz"})
PUBLIC_PREFIXES = ("/static/", "/auth/", "/locations/", "/api/stripe/webhook")
AUTH_PAGES = ("/auth/login", "/auth/register", "/auth/forgot-password")

HOME_ENDPOINTS = {
    "admin": "admin.index",
    "staff": "staff.dashboard",
    "physician": "physician.dashboard",
    "patient": "patient.dashboard",
}


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def home_url_for(user: User) -> str:
    endpoint = HOME_ENDPOINTS.get(user.primary_role or "")
    if not endpoint:
        return url_for("routes.index")
    return url_for(endpoint)


def _login_redirect():
    nxt = request.full_path or request.path
    # Avoid trailing '?' from full_path when there is no query string.
    if nxt.endswith("?"):
        nxt = nxt[:-1]
    return redirect(url_for("auth.login_get", next=nxt))


def is_public_path(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def gate_request():
    """
    Session-aware route gating, run before every request.
    Returns a redirect response or None to continue.
    """
    path = request.path
    user: User | None = getattr(g, "current_user", None)

    if user and path.startswith(AUTH_PAGES):
        return redirect(url_for("routes.dashboard"))

    if is_public_path(path):
        return None

    if not user:
        if path.startswith("/api/"):
            return {"error": "Authentication required."}, 401
        return _login_redirect()

    for prefix, allowed in ROLE_GATED_PREFIXES:
        if path == prefix or path.startswith(prefix + "/"):
            if not user.has_role(*allowed):
                return redirect(url_for("routes.dashboard"))
            break
    return None


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> redirect to login
            if not user or not user.is_active:
                return _login_redirect()
            # Authenticated but unauthorized -> 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
