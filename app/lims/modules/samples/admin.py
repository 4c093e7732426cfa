from __future__ import annotations

from io import BytesIO

from flask import Blueprint, abort, flash, g, redirect, render_template, request, send_file, url_for

from app.lims.constants import JOB_TYPES, SAMPLE_PRIORITIES, SAMPLE_STATUSES, SAMPLING_METHODS
from app.lims.db import db_session, get_scoped_or_404
from app.lims.models import User
from app.lims.modules.customers.service import list_customers
from app.lims.modules.sample_types.models import SampleType
from app.lims.modules.sample_types.service import list_sample_types
from app.lims.modules.samples.models import Registration, Sample, TestResult
from app.lims.modules.samples.results import (
    ResultUpdate,
    add_tests_to_sample,
    batch_update_test_results,
    delete_test_result,
    list_samples_for_entry,
)
from app.lims.modules.samples.service import (
    RegistrationRow,
    assign_sample,
    create_registration,
    create_sample,
    delete_registration,
    delete_sample,
    list_my_collections,
    list_registrations,
    list_samples,
    update_registration,
    update_sample,
    update_sample_status,
)
from app.lims.pdf import render_sample_labels
from app.lims.rbac import require_permission
from app.lims.utils import parse_form_datetime, parse_int, public_base_url

bp = Blueprint("samples", __name__)

_SAMPLE_FIELDS = (
    "description",
    "quantity",
    "sample_condition",
    "priority",
    "reference",
    "collection_location",
    "sample_point",
    "notes",
)
_REGISTRATION_FIELDS = (
    "priority",
    "reference",
    "collection_location",
    "sample_condition",
    "sampling_method",
    "sheet_number",
    "notes",
)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _lab_users(u: User) -> list[User]:
    return (
        db_session()
        .query(User)
        .filter(User.lab_id == u.lab_id, User.is_active.is_(True))
        .order_by(User.name.asc())
        .all()
    )


def _form_context(u: User) -> dict:
    s = db_session()
    return {
        "customers": list_customers(s, u.lab_id, status="active"),
        "sample_types": list_sample_types(s, u.lab_id, active_only=True),
        "users": _lab_users(u),
        "priorities": SAMPLE_PRIORITIES,
        "job_types": JOB_TYPES,
        "sampling_methods": SAMPLING_METHODS,
    }


def _registration_rows_from_form() -> list[RegistrationRow]:
    """
    Rows arrive as parallel lists: row_sample_type_id[], row_qty[], ...
    Selected tests per row come as row_tests_<index>[] (test indices).
    """
    type_ids = request.form.getlist("row_sample_type_id[]")
    qtys = request.form.getlist("row_qty[]")
    bottles = request.form.getlist("row_bottle_qty[]")
    points = request.form.getlist("row_sample_point[]")
    descs = request.form.getlist("row_description[]")
    remarks = request.form.getlist("row_remarks[]")

    def at(values: list[str], i: int) -> str | None:
        return values[i] if i < len(values) else None

    rows: list[RegistrationRow] = []
    for i, raw_type in enumerate(type_ids):
        type_id = parse_int(raw_type)
        if not type_id:
            continue
        tests_key = f"row_tests_{i}[]"
        selected = None
        if tests_key in request.form:
            selected = [n for n in (parse_int(x) for x in request.form.getlist(tests_key)) if n is not None]
        rows.append(
            RegistrationRow(
                sample_type_id=type_id,
                qty=parse_int(at(qtys, i)) or 1,
                bottle_qty=at(bottles, i),
                sample_point=at(points, i),
                description=at(descs, i),
                remarks=at(remarks, i),
                selected_tests=selected,
            )
        )
    return rows


def _selected_tests_from_form() -> list[int] | None:
    if "tests[]" not in request.form:
        return None
    return [n for n in (parse_int(x) for x in request.form.getlist("tests[]")) if n is not None]


def _label_pdf(samples: list[Sample], filename: str):
    data = render_sample_labels(samples, base_url=public_base_url())
    return send_file(BytesIO(data), mimetype="application/pdf", as_attachment=False, download_name=filename)


# ---------- Registrations ----------
@bp.get("/registrations")
@require_permission("process:view")
def registrations_list():
    s = db_session()
    u = _current_user()
    search = (request.args.get("q") or "").strip()
    regs = list_registrations(s, u.lab_id, search=search)
    return render_template("admin/registrations/list.html", registrations=regs, search=search)


@bp.get("/registrations/new")
@require_permission("process:create")
def registration_new_get():
    u = _current_user()
    return render_template("admin/registrations/new.html", **_form_context(u))


@bp.post("/registrations/new")
@require_permission("process:create")
def registration_new_post():
    s = db_session()
    u = _current_user()
    try:
        reg = create_registration(
            s,
            user=u,
            customer_id=parse_int(request.form.get("customer_id")),
            rows=_registration_rows_from_form(),
            job_type=request.form.get("job_type"),
            priority=request.form.get("priority"),
            reference=request.form.get("reference"),
            collected_by_id=parse_int(request.form.get("collected_by_id")),
            collection_location=request.form.get("collection_location"),
            collection_date=parse_form_datetime(request.form.get("collection_date")),
            sample_condition=request.form.get("sample_condition"),
            sampling_method=request.form.get("sampling_method"),
            sheet_number=request.form.get("sheet_number"),
            notes=request.form.get("notes"),
        )
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("samples.registration_new_get"))
    s.commit()
    flash(f"Registration {reg.registration_number} created with {len(reg.samples)} sample(s).", "success")
    return redirect(url_for("samples.registration_detail", registration_id=reg.id))


@bp.get("/registrations/<int:registration_id>")
@require_permission("process:view")
def registration_detail(registration_id: int):
    s = db_session()
    u = _current_user()
    reg = get_scoped_or_404(s, Registration, registration_id, u.lab_id)
    return render_template("admin/registrations/detail.html", registration=reg)


@bp.get("/registrations/<int:registration_id>/edit")
@require_permission("process:edit")
def registration_edit_get(registration_id: int):
    s = db_session()
    u = _current_user()
    reg = get_scoped_or_404(s, Registration, registration_id, u.lab_id)
    return render_template("admin/registrations/edit.html", registration=reg, **_form_context(u))


@bp.post("/registrations/<int:registration_id>/edit")
@require_permission("process:edit")
def registration_edit_post(registration_id: int):
    s = db_session()
    u = _current_user()
    reg = get_scoped_or_404(s, Registration, registration_id, u.lab_id)
    try:
        update_registration(s, reg, {k: request.form.get(k) for k in _REGISTRATION_FIELDS}, user=u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("samples.registration_edit_get", registration_id=registration_id))
    s.commit()
    flash("Registration updated.", "success")
    return redirect(url_for("samples.registration_detail", registration_id=registration_id))


@bp.post("/registrations/<int:registration_id>/delete")
@require_permission("process:delete")
def registration_delete(registration_id: int):
    s = db_session()
    u = _current_user()
    reg = get_scoped_or_404(s, Registration, registration_id, u.lab_id)
    n = delete_registration(s, reg, user=u)
    s.commit()
    flash(f"Registration deleted. {n} sample(s) moved to trash.", "success")
    return redirect(url_for("samples.registrations_list"))


@bp.get("/registrations/<int:registration_id>/labels.pdf")
@require_permission("process:view")
def registration_labels(registration_id: int):
    s = db_session()
    u = _current_user()
    reg = get_scoped_or_404(s, Registration, registration_id, u.lab_id)
    if not reg.live_samples:
        abort(404)
    return _label_pdf(reg.live_samples, f"{reg.registration_number}-labels.pdf")


# ---------- Samples ----------
@bp.get("/samples")
@require_permission("process:view")
def samples_list():
    s = db_session()
    u = _current_user()
    status = (request.args.get("status") or "").strip()
    search = (request.args.get("q") or "").strip()
    customer_id = parse_int(request.args.get("customer_id"))
    samples = list_samples(s, u.lab_id, status=status, search=search, customer_id=customer_id)
    return render_template(
        "admin/samples/list.html",
        samples=samples,
        status=status,
        search=search,
        statuses=SAMPLE_STATUSES,
    )


@bp.get("/samples/collections")
@require_permission("process:create")
def collections_list():
    s = db_session()
    u = _current_user()
    return render_template(
        "admin/samples/collections.html", samples=list_my_collections(s, u), **_form_context(u)
    )


@bp.get("/samples/new")
@require_permission("process:create")
def sample_new_get():
    u = _current_user()
    return render_template("admin/samples/new.html", **_form_context(u))


@bp.post("/samples/new")
@require_permission("process:create")
def sample_new_post():
    s = db_session()
    u = _current_user()
    try:
        sample = create_sample(
            s,
            user=u,
            customer_id=parse_int(request.form.get("customer_id")),
            sample_type_id=parse_int(request.form.get("sample_type_id")),
            description=request.form.get("description"),
            quantity=request.form.get("quantity"),
            sample_condition=request.form.get("sample_condition"),
            priority=request.form.get("priority"),
            job_type=request.form.get("job_type"),
            reference=request.form.get("reference"),
            collected_by_id=parse_int(request.form.get("collected_by_id")),
            collection_date=parse_form_datetime(request.form.get("collection_date")),
            collection_location=request.form.get("collection_location"),
            sample_point=request.form.get("sample_point"),
            notes=request.form.get("notes"),
            selected_tests=_selected_tests_from_form(),
        )
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("samples.sample_new_get"))
    s.commit()
    flash(f"Sample {sample.sample_number} created.", "success")
    return redirect(url_for("samples.sample_detail", sample_id=sample.id))


@bp.get("/samples/<int:sample_id>")
@require_permission("process:view")
def sample_detail(sample_id: int):
    s = db_session()
    u = _current_user()
    sample = get_scoped_or_404(s, Sample, sample_id, u.lab_id)
    if sample.deleted_at is not None:
        abort(404)
    return render_template(
        "admin/samples/detail.html",
        sample=sample,
        users=_lab_users(u),
        statuses=SAMPLE_STATUSES,
    )


@bp.get("/samples/<int:sample_id>/edit")
@require_permission("process:edit")
def sample_edit_get(sample_id: int):
    s = db_session()
    u = _current_user()
    sample = get_scoped_or_404(s, Sample, sample_id, u.lab_id)
    return render_template("admin/samples/edit.html", sample=sample, priorities=SAMPLE_PRIORITIES)


@bp.post("/samples/<int:sample_id>/edit")
@require_permission("process:edit")
def sample_edit_post(sample_id: int):
    s = db_session()
    u = _current_user()
    sample = get_scoped_or_404(s, Sample, sample_id, u.lab_id)
    try:
        update_sample(s, sample, {k: request.form.get(k) for k in _SAMPLE_FIELDS if k in request.form}, user=u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("samples.sample_detail", sample_id=sample_id))
    s.commit()
    flash("Sample updated.", "success")
    return redirect(url_for("samples.sample_detail", sample_id=sample_id))


@bp.post("/samples/<int:sample_id>/assign")
@require_permission("process:edit")
def sample_assign(sample_id: int):
    s = db_session()
    u = _current_user()
    sample = get_scoped_or_404(s, Sample, sample_id, u.lab_id)
    try:
        assign_sample(s, sample, parse_int(request.form.get("assigned_to_id")), user=u)
    except ValueError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash("Assignment saved.", "success")
    return redirect(url_for("samples.sample_detail", sample_id=sample_id))


@bp.post("/samples/<int:sample_id>/status")
@require_permission("process:edit")
def sample_status(sample_id: int):
    s = db_session()
    u = _current_user()
    sample = get_scoped_or_404(s, Sample, sample_id, u.lab_id)
    try:
        update_sample_status(s, sample, (request.form.get("status") or "").strip(), user=u)
    except ValueError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash(f"Sample status set to {sample.status}.", "success")
    return redirect(url_for("samples.sample_detail", sample_id=sample_id))


@bp.post("/samples/<int:sample_id>/delete")
@require_permission("process:delete")
def sample_delete(sample_id: int):
    s = db_session()
    u = _current_user()
    sample = get_scoped_or_404(s, Sample, sample_id, u.lab_id)
    try:
        delete_sample(s, sample, user=u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("samples.samples_list"))
    s.commit()
    flash(f"Sample {sample.sample_number} moved to trash.", "success")
    return redirect(url_for("samples.samples_list"))


@bp.get("/samples/<int:sample_id>/label.pdf")
@require_permission("process:view")
def sample_label(sample_id: int):
    s = db_session()
    u = _current_user()
    sample = get_scoped_or_404(s, Sample, sample_id, u.lab_id)
    return _label_pdf([sample], f"{sample.sample_number}-label.pdf")


@bp.post("/samples/labels.pdf")
@require_permission("process:view")
def samples_labels():
    s = db_session()
    u = _current_user()
    ids = [n for n in (parse_int(x) for x in request.form.getlist("sample_ids[]")) if n]
    samples = [get_scoped_or_404(s, Sample, sid, u.lab_id) for sid in ids]
    if not samples:
        flash("Select at least one sample.", "danger")
        return redirect(url_for("samples.samples_list"))
    return _label_pdf(samples, "sample-labels.pdf")


# ---------- Test entry ----------
@bp.get("/test-entry")
@require_permission("process:view")
def test_entry_list():
    s = db_session()
    u = _current_user()
    status = (request.args.get("status") or "").strip()
    samples = list_samples_for_entry(s, u, status=status)
    return render_template("admin/test_entry/list.html", samples=samples, status=status)


@bp.get("/test-entry/<int:sample_id>")
@require_permission("process:edit")
def test_entry_get(sample_id: int):
    s = db_session()
    u = _current_user()
    sample = get_scoped_or_404(s, Sample, sample_id, u.lab_id)
    if sample.deleted_at is not None:
        abort(404)
    st = s.get(SampleType, sample.sample_type_id)
    return render_template("admin/test_entry/edit.html", sample=sample, available_tests=st.tests if st else [])


@bp.post("/test-entry/<int:sample_id>")
@require_permission("process:edit")
def test_entry_post(sample_id: int):
    s = db_session()
    u = _current_user()
    sample = get_scoped_or_404(s, Sample, sample_id, u.lab_id)
    updates: dict[int, ResultUpdate] = {}
    for tr in sample.test_results:
        key = f"result_{tr.id}"
        if key in request.form:
            updates[tr.id] = ResultUpdate(request.form.get(key), request.form.get(f"remarks_{tr.id}"))
    try:
        report = batch_update_test_results(s, sample, updates, user=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("samples.test_entry_get", sample_id=sample_id))
    s.commit()
    if report is not None:
        flash(f"All tests complete. Draft report {report.report_number} created.", "success")
    else:
        flash("Results saved.", "success")
    return redirect(url_for("samples.test_entry_get", sample_id=sample_id))


@bp.post("/test-entry/<int:sample_id>/tests")
@require_permission("process:edit")
def test_entry_add_tests(sample_id: int):
    s = db_session()
    u = _current_user()
    sample = get_scoped_or_404(s, Sample, sample_id, u.lab_id)
    st = s.get(SampleType, sample.sample_type_id)
    defaults = st.tests if st else []
    picked = {n for n in (parse_int(x) for x in request.form.getlist("tests[]")) if n is not None}
    tests = [t for i, t in enumerate(defaults) if i in picked]
    custom = (request.form.get("custom_parameter") or "").strip()
    if custom:
        tests.append(
            {
                "parameter": custom,
                "method": request.form.get("custom_method"),
                "unit": request.form.get("custom_unit"),
                "specMin": request.form.get("custom_spec_min"),
                "specMax": request.form.get("custom_spec_max"),
                "tat": request.form.get("custom_tat") or None,
            }
        )
    try:
        added = add_tests_to_sample(s, sample, tests, user=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    else:
        s.commit()
        flash(f"Added {len(added)} test(s).", "success")
    return redirect(url_for("samples.test_entry_get", sample_id=sample_id))


@bp.post("/test-entry/<int:sample_id>/tests/<int:result_id>/delete")
@require_permission("process:delete")
def test_entry_delete_test(sample_id: int, result_id: int):
    s = db_session()
    u = _current_user()
    sample = get_scoped_or_404(s, Sample, sample_id, u.lab_id)
    tr = s.get(TestResult, result_id)
    if tr is None or tr.sample_id != sample.id:
        abort(404)
    try:
        delete_test_result(s, tr, user=u)
    except ValueError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash("Test removed.", "success")
    return redirect(url_for("samples.test_entry_get", sample_id=sample_id))
