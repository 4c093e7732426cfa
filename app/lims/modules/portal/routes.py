from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from functools import wraps
from io import BytesIO
from typing import Any

from flask import Blueprint, abort, flash, g, redirect, render_template, request, send_file, session, url_for

from app.lims.audit import record_event
from app.lims.auth import check_rate_limit, clear_attempts, record_attempt, safe_next
from app.lims.constants import SAMPLE_STATUSES
from app.lims.db import db_session
from app.lims.errors import NotFoundError
from app.lims.models import PortalUser
from app.lims.modules.portal.service import (
    authenticate,
    get_portal_report,
    get_portal_sample,
    list_portal_invoices,
    list_portal_quotations,
    list_portal_reports,
    list_portal_samples,
    portal_summary,
)
from app.lims.modules.reports.pdf import render_coa
from app.lims.modules.reports.service import coa_inputs
from app.lims.utils import app_storage, public_base_url

bp = Blueprint("portal", __name__)


def load_portal_user() -> None:
    g.portal_user = None
    pid = session.get("portal_user_id")
    if not pid:
        return
    pu = db_session().get(PortalUser, int(pid))
    if not pu or not pu.is_active:
        session.pop("portal_user_id", None)
        return
    g.portal_user = pu


def portal_login_required(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        load_portal_user()
        if g.portal_user is None:
            return redirect(url_for("portal.login_get", next=request.path))
        return fn(*args, **kwargs)

    return wrapped


def _portal_user() -> PortalUser:
    pu = getattr(g, "portal_user", None)
    if not pu:
        raise RuntimeError("No portal user")
    return pu


@bp.get("/login")
def login_get():
    return render_template("portal/login.html", next=(request.args.get("next") or "").strip())


@bp.post("/login")
def login_post():
    username = (request.form.get("username") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    key = f"portal:{request.remote_addr or 'unknown'}"

    if check_rate_limit(key):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("portal.login_get"))
    record_attempt(key)

    s = db_session()
    pu = authenticate(s, username, password)
    if pu is None:
        flash("Invalid credentials.", "danger")
        return redirect(url_for("portal.login_get"))

    clear_attempts(key)
    session["portal_user_id"] = pu.id
    pu.last_login_at = datetime.utcnow()
    record_event(
        s,
        actor=None,
        module="portal",
        action="login",
        entity_type="PortalUser",
        entity_id=pu.id,
        lab_id=pu.lab_id,
        actor_name=f"portal:{pu.username}",
    )
    s.commit()
    nxt = safe_next(nxt)
    return redirect(nxt if nxt and nxt.startswith("/portal") else url_for("portal.dashboard"))


@bp.get("/logout")
def logout():
    session.pop("portal_user_id", None)
    return redirect(url_for("portal.login_get"))


@bp.get("/")
@portal_login_required
def dashboard():
    s = db_session()
    pu = _portal_user()
    return render_template(
        "portal/dashboard.html",
        summary=portal_summary(s, pu),
        recent_samples=list_portal_samples(s, pu)[:5],
    )


@bp.get("/samples")
@portal_login_required
def samples():
    s = db_session()
    pu = _portal_user()
    status = (request.args.get("status") or "").strip()
    return render_template(
        "portal/samples.html",
        samples=list_portal_samples(s, pu, status=status),
        status=status,
        statuses=SAMPLE_STATUSES,
    )


@bp.get("/samples/<int:sample_id>")
@portal_login_required
def sample_detail(sample_id: int):
    try:
        sample = get_portal_sample(db_session(), _portal_user(), sample_id)
    except NotFoundError:
        abort(404)
    return render_template("portal/sample_detail.html", sample=sample)


@bp.get("/reports")
@portal_login_required
def reports():
    s = db_session()
    return render_template("portal/reports.html", reports=list_portal_reports(s, _portal_user()))


@bp.get("/reports/<int:report_id>/coa.pdf")
@portal_login_required
def report_coa(report_id: int):
    s = db_session()
    pu = _portal_user()
    try:
        report = get_portal_report(s, pu, report_id)
    except NotFoundError:
        abort(404)
    items = coa_inputs(s, [report], user=None, base_url=public_base_url())
    data = render_coa(items[0], app_storage())
    s.commit()
    return send_file(
        BytesIO(data),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"COA-{report.report_number}.pdf",
    )


@bp.get("/quotations")
@portal_login_required
def quotations():
    s = db_session()
    return render_template("portal/quotations.html", quotations=list_portal_quotations(s, _portal_user()))


@bp.get("/invoices")
@portal_login_required
def invoices():
    s = db_session()
    return render_template("portal/invoices.html", invoices=list_portal_invoices(s, _portal_user()))
