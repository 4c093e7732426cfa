from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash

from app.lims.audit import record_event
from app.lims.db import db_session
from app.lims.models import User

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def check_rate_limit(key: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    recent = [t for t in _login_attempts.get(key, ()) if t > cutoff]
    if not recent:
        _login_attempts.pop(key, None)
        return False
    _login_attempts[key] = recent
    return len(recent) >= _LOGIN_RATE_LIMIT


def record_attempt(key: str) -> None:
    _login_attempts[key].append(datetime.utcnow())


def clear_attempts(key: str) -> None:
    _login_attempts.pop(key, None)


def safe_next(nxt: str) -> str | None:
    # only local paths, no open redirects
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


def _session_predates_password_change(user: User) -> bool:
    if user.password_changed_at is None:
        return False
    raw = session.get("login_at")
    if not raw:
        return True
    try:
        login_at = datetime.fromisoformat(raw)
    except ValueError:
        return True
    return login_at < user.password_changed_at


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Sessions opened before the user's last password change are dropped.
    Also assigns a per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(("/static/", "/health", "/healthz")):
        return

    user_id = session.get("user_id")
    if not user_id:
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        return
    if not user or not user.is_active or _session_predates_password_change(user):
        session.pop("user_id", None)
        session.pop("login_at", None)
        return
    g.current_user = user


@bp.get("/login")
def login_get():
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt)


@bp.post("/login")
def login_post():
    username = (request.form.get("username") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if check_rate_limit(ip):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))

    record_attempt(ip)

    try:
        s = db_session()
        user = s.query(User).filter(User.username == username).one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            record_event(
                s,
                actor=None,
                module="auth",
                action="login_failed",
                details=f"Failed login for {username}",
                lab_id=user.lab_id if user else None,
                actor_name=username,
            )
            s.commit()
            flash("Invalid credentials.", "danger")
            return redirect(url_for("auth.login_get"))

        now = datetime.utcnow()
        session["user_id"] = user.id
        session["login_at"] = now.isoformat()
        clear_attempts(ip)
        user.last_login_at = now
        record_event(s, actor=user, module="auth", action="login", entity_type="User", entity_id=user.id)
        s.commit()
        return redirect(safe_next(nxt) or url_for("admin.index"))
    except Exception:
        current_app.logger.exception(
            "Login POST crashed (username=%s request_id=%s)", username, getattr(g, "request_id", None)
        )
        raise


@bp.get("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, module="auth", action="logout", entity_type="User", entity_id=user.id)
        s.commit()
    session.pop("user_id", None)
    session.pop("login_at", None)
    return redirect(url_for("routes.index"))
