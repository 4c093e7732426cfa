from __future__ import annotations

from datetime import datetime

from flask import Blueprint, flash, g, redirect, render_template, request, session, url_for
from sqlalchemy import func
from werkzeug.security import check_password_hash, generate_password_hash

from app.lims.audit import record_event
from app.lims.constants import PERMISSION_MODULES, SAMPLE_STATUSES
from app.lims.dashboard import dashboard_stats, default_tracking_range, status_tracking
from app.lims.db import db_session
from app.lims.models import AuditLog, User
from app.lims.modules.customers.service import list_customers
from app.lims.rbac import require_permission
from app.lims.trash import TRASH_KINDS, list_trash, permanently_delete_item, restore_item
from app.lims.utils import parse_form_date, parse_int

bp = Blueprint("admin", __name__)

AUDIT_LIMIT = 200
MIN_PASSWORD_LENGTH = 8


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/")
@require_permission("dashboard:view")
def index():
    s = db_session()
    u = _current_user()
    return render_template("admin/index.html", stats=dashboard_stats(s, u))


@bp.get("/status-tracking")
@require_permission("masters:view")
def status_tracking_view():
    s = db_session()
    u = _current_user()
    default_start, default_end = default_tracking_range()
    try:
        start = parse_form_date(request.args.get("from")) or default_start
        end = parse_form_date(request.args.get("to")) or default_end
    except ValueError as e:
        flash(str(e), "danger")
        start, end = default_start, default_end
    status = (request.args.get("status") or "").strip()
    customer_id = parse_int(request.args.get("customer_id"))
    counts, rows = status_tracking(s, u.lab_id, start=start, end=end, customer_id=customer_id, status=status)
    return render_template(
        "admin/status_tracking.html",
        counts=counts,
        rows=rows,
        start=start,
        end=end,
        status=status,
        customer_id=customer_id,
        statuses=SAMPLE_STATUSES,
        customers=list_customers(s, u.lab_id, status="active"),
    )


@bp.get("/audit")
@require_permission("admin:view")
def audit_list():
    s = db_session()
    u = _current_user()
    module = (request.args.get("module") or "").strip()
    action = (request.args.get("action") or "").strip()
    q = s.query(AuditLog).filter(AuditLog.lab_id == u.lab_id)
    if module:
        q = q.filter(AuditLog.module == module)
    if action:
        q = q.filter(AuditLog.action == action)
    events = q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(AUDIT_LIMIT).all()
    counts = dict(
        s.query(AuditLog.module, func.count(AuditLog.id))
        .filter(AuditLog.lab_id == u.lab_id)
        .group_by(AuditLog.module)
        .all()
    )
    return render_template(
        "admin/audit/list.html",
        events=events,
        counts=counts,
        module=module,
        action=action,
        modules=sorted(set(PERMISSION_MODULES) | set(counts)),
    )


# ---------- Trash ----------
@bp.get("/trash")
@require_permission("process:delete")
def trash_list():
    s = db_session()
    u = _current_user()
    return render_template("admin/trash/list.html", trash=list_trash(s, u.lab_id))


@bp.post("/trash/<kind>/<int:obj_id>/restore")
@require_permission("process:delete")
def trash_restore(kind: str, obj_id: int):
    s = db_session()
    u = _current_user()
    if kind not in TRASH_KINDS:
        flash("Unknown item type.", "danger")
        return redirect(url_for("admin.trash_list"))
    try:
        number = restore_item(s, kind, obj_id, user=u)
    except ValueError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash(f"Restored {number}.", "success")
    return redirect(url_for("admin.trash_list"))


@bp.post("/trash/<kind>/<int:obj_id>/delete")
@require_permission("admin:delete")
def trash_delete(kind: str, obj_id: int):
    s = db_session()
    u = _current_user()
    try:
        number = permanently_delete_item(s, kind, obj_id, user=u)
    except ValueError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash(f"Permanently deleted {number}.", "success")
    return redirect(url_for("admin.trash_list"))


# ---------- Own profile ----------
@bp.get("/me")
def me():
    u = getattr(g, "current_user", None)
    if not u:
        return redirect(url_for("auth.login_get", next=request.path))
    return render_template("admin/me.html", user=u)


@bp.post("/me/password")
def me_password():
    u = getattr(g, "current_user", None)
    if not u:
        return redirect(url_for("auth.login_get"))
    s = db_session()
    current = request.form.get("current_password") or ""
    new = request.form.get("new_password") or ""
    confirm = request.form.get("confirm_password") or ""
    if not check_password_hash(u.password_hash, current):
        flash("Current password is incorrect.", "danger")
        return redirect(url_for("admin.me"))
    if len(new) < MIN_PASSWORD_LENGTH:
        flash(f"New password must be at least {MIN_PASSWORD_LENGTH} characters.", "danger")
        return redirect(url_for("admin.me"))
    if new != confirm:
        flash("Passwords do not match.", "danger")
        return redirect(url_for("admin.me"))
    now = datetime.utcnow()
    u.password_hash = generate_password_hash(new)
    u.password_changed_at = now
    u.updated_at = now
    record_event(s, actor=u, module="admin", action="edit", details="Changed own password", entity_type="User", entity_id=u.id)
    s.commit()
    # keep the current session valid after its own password change
    session["login_at"] = datetime.utcnow().isoformat()
    flash("Password changed.", "success")
    return redirect(url_for("admin.me"))
