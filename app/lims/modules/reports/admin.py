from __future__ import annotations

from io import BytesIO

from flask import Blueprint, abort, flash, g, redirect, render_template, request, send_file, url_for

from app.lims.constants import REPORT_STATUSES
from app.lims.db import db_session, get_scoped_or_404
from app.lims.models import User
from app.lims.modules.reports.models import Report, ReportTemplate
from app.lims.modules.reports.pdf import render_batch_coa, render_coa
from app.lims.modules.reports.service import (
    approve_report,
    coa_inputs,
    create_report_for_sample,
    create_template,
    delete_report,
    delete_template,
    list_reports,
    list_templates,
    publish_report,
    request_revision,
    set_default_template,
    submit_for_review,
    update_report,
    update_template,
)
from app.lims.modules.samples.models import Sample
from app.lims.rbac import require_permission
from app.lims.utils import app_storage, parse_int, public_base_url

bp = Blueprint("reports", __name__)

_TEMPLATE_FIELDS = (
    "name",
    "header_text",
    "footer_text",
    "accreditation_text",
    "logo_key",
    "accreditation_logo_key",
    "seal_key",
    "show_lab_logo",
    "is_default",
)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _live_report_or_404(report_id: int) -> Report:
    u = _current_user()
    r = get_scoped_or_404(db_session(), Report, report_id, u.lab_id)
    if r.deleted_at is not None:
        abort(404)
    return r


def _pdf_response(data: bytes, filename: str):
    return send_file(BytesIO(data), mimetype="application/pdf", as_attachment=False, download_name=filename)


@bp.get("/reports")
@require_permission("reports:view")
def reports_list():
    s = db_session()
    u = _current_user()
    status = (request.args.get("status") or "").strip()
    search = (request.args.get("q") or "").strip()
    return render_template(
        "admin/reports/list.html",
        reports=list_reports(s, u.lab_id, status=status, search=search),
        status=status,
        search=search,
        statuses=REPORT_STATUSES,
    )


@bp.post("/reports/new")
@require_permission("reports:create")
def report_create():
    s = db_session()
    u = _current_user()
    sample = get_scoped_or_404(s, Sample, parse_int(request.form.get("sample_id")) or 0, u.lab_id)
    try:
        r = create_report_for_sample(
            s,
            sample,
            user=u,
            title=request.form.get("title"),
            summary=request.form.get("summary"),
            template_id=parse_int(request.form.get("template_id")),
        )
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("samples.sample_detail", sample_id=sample.id))
    s.commit()
    flash(f"Report {r.report_number} created.", "success")
    return redirect(url_for("reports.report_detail", report_id=r.id))


@bp.get("/reports/<int:report_id>")
@require_permission("reports:view")
def report_detail(report_id: int):
    s = db_session()
    u = _current_user()
    r = _live_report_or_404(report_id)
    return render_template("admin/reports/detail.html", report=r, templates=list_templates(s, u.lab_id))


@bp.post("/reports/<int:report_id>/edit")
@require_permission("reports:edit")
def report_edit(report_id: int):
    s = db_session()
    u = _current_user()
    r = _live_report_or_404(report_id)
    payload = {k: request.form.get(k) for k in ("title", "summary", "template_id")}
    try:
        update_report(s, r, payload, user=u)
    except ValueError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash("Report updated.", "success")
    return redirect(url_for("reports.report_detail", report_id=report_id))


def _workflow_action(report_id: int, action, success: str, *args):
    s = db_session()
    u = _current_user()
    r = _live_report_or_404(report_id)
    try:
        action(s, r, *args, user=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    else:
        s.commit()
        flash(success.format(number=r.report_number), "success")
    return redirect(url_for("reports.report_detail", report_id=report_id))


@bp.post("/reports/<int:report_id>/submit")
@require_permission("reports:edit")
def report_submit(report_id: int):
    return _workflow_action(report_id, submit_for_review, "Report {number} submitted for review.")


@bp.post("/reports/<int:report_id>/approve")
@require_permission("reports:edit")
def report_approve(report_id: int):
    return _workflow_action(report_id, approve_report, "Report {number} approved.")


@bp.post("/reports/<int:report_id>/revision")
@require_permission("reports:edit")
def report_revision(report_id: int):
    return _workflow_action(
        report_id, request_revision, "Revision requested for {number}.", request.form.get("reason") or ""
    )


@bp.post("/reports/<int:report_id>/publish")
@require_permission("reports:edit")
def report_publish(report_id: int):
    return _workflow_action(report_id, publish_report, "Report {number} published.")


@bp.post("/reports/<int:report_id>/delete")
@require_permission("reports:delete")
def report_delete(report_id: int):
    s = db_session()
    u = _current_user()
    r = _live_report_or_404(report_id)
    try:
        delete_report(s, r, user=u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("reports.report_detail", report_id=report_id))
    s.commit()
    flash(f"Report {r.report_number} moved to trash.", "success")
    return redirect(url_for("reports.reports_list"))


@bp.get("/reports/<int:report_id>/coa.pdf")
@require_permission("reports:view")
def report_coa(report_id: int):
    s = db_session()
    u = _current_user()
    r = _live_report_or_404(report_id)
    try:
        items = coa_inputs(s, [r], user=u, base_url=public_base_url())
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("reports.report_detail", report_id=report_id))
    data = render_coa(items[0], app_storage())
    s.commit()
    return _pdf_response(data, f"COA-{r.report_number}.pdf")


@bp.post("/reports/coa-batch.pdf")
@require_permission("reports:view")
def reports_coa_batch():
    s = db_session()
    u = _current_user()
    ids = [n for n in (parse_int(x) for x in request.form.getlist("report_ids[]")) if n]
    reports = [_live_report_or_404(rid) for rid in ids]
    try:
        data = render_batch_coa(coa_inputs(s, reports, user=u, base_url=public_base_url()), app_storage())
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("reports.reports_list"))
    s.commit()
    return _pdf_response(data, "COA-batch.pdf")


# ---------- Templates ----------
@bp.get("/report-templates")
@require_permission("admin:view")
def templates_list():
    s = db_session()
    u = _current_user()
    return render_template("admin/report_templates/list.html", templates=list_templates(s, u.lab_id))


@bp.get("/report-templates/new")
@require_permission("admin:create")
def template_new_get():
    return render_template("admin/report_templates/edit.html", template=None)


@bp.post("/report-templates/new")
@require_permission("admin:create")
def template_new_post():
    s = db_session()
    u = _current_user()
    try:
        t = create_template(s, {k: request.form.get(k) for k in _TEMPLATE_FIELDS}, user=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("reports.template_new_get"))
    s.commit()
    flash(f"Template {t.name} created.", "success")
    return redirect(url_for("reports.templates_list"))


@bp.get("/report-templates/<int:template_id>/edit")
@require_permission("admin:edit")
def template_edit_get(template_id: int):
    s = db_session()
    u = _current_user()
    t = get_scoped_or_404(s, ReportTemplate, template_id, u.lab_id)
    return render_template("admin/report_templates/edit.html", template=t)


@bp.post("/report-templates/<int:template_id>/edit")
@require_permission("admin:edit")
def template_edit_post(template_id: int):
    s = db_session()
    u = _current_user()
    t = get_scoped_or_404(s, ReportTemplate, template_id, u.lab_id)
    try:
        update_template(s, t, {k: request.form.get(k) for k in _TEMPLATE_FIELDS}, user=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("reports.template_edit_get", template_id=template_id))
    s.commit()
    flash("Template updated.", "success")
    return redirect(url_for("reports.templates_list"))


@bp.post("/report-templates/<int:template_id>/default")
@require_permission("admin:edit")
def template_set_default(template_id: int):
    s = db_session()
    u = _current_user()
    t = get_scoped_or_404(s, ReportTemplate, template_id, u.lab_id)
    set_default_template(s, t, user=u)
    s.commit()
    flash(f"{t.name} is now the default template.", "success")
    return redirect(url_for("reports.templates_list"))


@bp.post("/report-templates/<int:template_id>/delete")
@require_permission("admin:delete")
def template_delete(template_id: int):
    s = db_session()
    u = _current_user()
    t = get_scoped_or_404(s, ReportTemplate, template_id, u.lab_id)
    try:
        delete_template(s, t, user=u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("reports.templates_list"))
    s.commit()
    flash("Template deleted.", "success")
    return redirect(url_for("reports.templates_list"))
