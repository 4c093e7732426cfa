from io import BytesIO

from flask import Blueprint, abort, g, redirect, render_template, send_file, url_for

from app.lims.db import db_session, get_scoped_or_404
from app.lims.modules.reports.pdf import render_coa
from app.lims.modules.reports.service import coa_inputs, find_verification
from app.lims.modules.samples.models import Sample
from app.lims.rbac import require_permission
from app.lims.utils import app_storage, public_base_url

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    if getattr(g, "current_user", None):
        return redirect(url_for("admin.index"))
    return render_template("public/index.html")


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for load balancer probes. No DB access.
    """
    return "ok", 200


@bp.get("/verify/<code>")
def verify(code: str):
    """Public certificate check reached from the QR code on a COA."""
    v = find_verification(db_session(), code)
    if v is None:
        return render_template("public/verify.html", verification=None, code=code), 404
    return render_template("public/verify.html", verification=v, code=code)


@bp.get("/verify/<code>/coa.pdf")
def verify_coa(code: str):
    s = db_session()
    v = find_verification(s, code)
    if v is None or v.report.status != "published":
        abort(404)
    items = coa_inputs(s, [v.report], user=None, base_url=public_base_url())
    data = render_coa(items[0], app_storage())
    return send_file(
        BytesIO(data),
        mimetype="application/pdf",
        as_attachment=False,
        download_name=f"COA-{v.report_number}.pdf",
    )


@bp.get("/scan/<int:sample_id>")
@require_permission("process:view")
def scan(sample_id: int):
    """Bottle label QR target: sample status, customer, type and results on one screen."""
    s = db_session()
    sample = get_scoped_or_404(s, Sample, sample_id, g.current_user.lab_id)
    if sample.deleted_at is not None:
        abort(404)
    return render_template("public/scan.html", sample=sample)
