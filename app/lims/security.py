import secrets

from flask import Flask, Request, current_app, render_template, request, session

# Login forms are posted before a session (and therefore a token) exists.
CSRF_EXEMPT_ENDPOINTS = frozenset({"auth.login_post", "portal.login_post"})
_SKIP_PREFIXES = ("/static/", "/health", "/healthz")


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from form, header, or JSON body."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")
    if not token and req.is_json:
        json_data = req.get_json(silent=True) or {}
        token = json_data.get("csrf_token")
    expected = session.get("csrf_token")
    return bool(token and expected and secrets.compare_digest(str(token), str(expected)))


def install_csrf(app: Flask) -> None:
    """Expose csrf_token() to templates and register the mutating-request guard."""

    app.jinja_env.globals["csrf_token"] = ensure_csrf_token

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_SKIP_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
            return None
        if not current_app.config.get("CSRF_ENABLED", True):
            return None
        if (request.endpoint or "") in CSRF_EXEMPT_ENDPOINTS:
            return None
        if not validate_csrf(request):
            return render_template("errors/400.html", message="CSRF token missing or invalid."), 400
        return None
