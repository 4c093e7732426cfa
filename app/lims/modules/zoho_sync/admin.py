from __future__ import annotations

from flask import Blueprint, flash, g, redirect, render_template, url_for

from app.lims.db import db_session
from app.lims.models import User
from app.lims.modules.zoho_sync.service import check_connection, recent_runs, sync_customers
from app.lims.modules.zoho_sync.zoho_client import ZohoError
from app.lims.rbac import require_permission

bp = Blueprint("zoho_sync", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/zoho")
@require_permission("masters:view")
def zoho_index():
    s = db_session()
    u = _current_user()
    lab = u.lab
    configured = all(
        (lab.zoho_client_id, lab.zoho_client_secret, lab.zoho_refresh_token, lab.zoho_org_id)
    )
    return render_template("admin/zoho/index.html", runs=recent_runs(s, u.lab_id), lab=lab, configured=configured)


@bp.post("/zoho/test")
@require_permission("admin:edit")
def zoho_test():
    u = _current_user()
    result = check_connection(u.lab)
    if result.ok:
        flash(f"{result.message}: {result.org_name}", "success")
    else:
        flash(f"Zoho connection failed: {result.message}", "danger")
    return redirect(url_for("zoho_sync.zoho_index"))


@bp.post("/zoho/sync")
@require_permission("masters:edit")
def zoho_sync_run():
    s = db_session()
    u = _current_user()
    try:
        run = sync_customers(s, user=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    except ZohoError as e:
        # keep the failed run row
        s.commit()
        flash(f"Zoho sync failed: {e}", "danger")
    else:
        s.commit()
        flash(f"{run.message} ({run.total_count} contacts).", "success")
    return redirect(url_for("zoho_sync.zoho_index"))
