from __future__ import annotations

from flask import Blueprint, flash, g, redirect, render_template, request, url_for

from app.lims.db import db_session, get_scoped_or_404
from app.lims.models import User
from app.lims.modules.sample_types.models import SampleType
from app.lims.modules.sample_types.service import (
    create_sample_type,
    delete_sample_type,
    list_sample_types,
    update_sample_type,
)
from app.lims.rbac import require_permission

bp = Blueprint("sample_types", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload_from_form() -> dict:
    """
    Tests arrive either as parallel row inputs (test_parameter[], test_method[], ...)
    or as a raw JSON textarea (tests_json) when no rows were posted.
    """
    f = request.form
    params = f.getlist("test_parameter")
    tests: list[dict] | str = []
    if params:
        cols = {k: f.getlist(f"test_{k}") for k in ("method", "unit", "spec_min", "spec_max", "tat")}

        def col(name: str, i: int) -> str:
            values = cols[name]
            return values[i] if i < len(values) else ""

        tests = [
            {
                "parameter": p,
                "method": col("method", i),
                "unit": col("unit", i),
                "specMin": col("spec_min", i),
                "specMax": col("spec_max", i),
                "tat": col("tat", i),
            }
            for i, p in enumerate(params)
            if (p or "").strip()
        ]
    elif (f.get("tests_json") or "").strip():
        tests = f.get("tests_json") or ""
    return {
        "name": f.get("name"),
        "description": f.get("description"),
        "specification_standard": f.get("specification_standard"),
        "status": f.get("status"),
        "tests": tests,
    }


@bp.get("/sample-types")
@require_permission("masters:view")
def sample_types_list():
    s = db_session()
    u = _current_user()
    return render_template("admin/sample_types/list.html", sample_types=list_sample_types(s, u.lab_id))


@bp.get("/sample-types/new")
@require_permission("masters:create")
def sample_types_new_get():
    return render_template("admin/sample_types/edit.html", sample_type=None)


@bp.post("/sample-types/new")
@require_permission("masters:create")
def sample_types_new_post():
    s = db_session()
    u = _current_user()
    try:
        st = create_sample_type(s, _payload_from_form(), user=u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("sample_types.sample_types_new_get"))
    s.commit()
    flash(f"Sample type {st.name} created.", "success")
    return redirect(url_for("sample_types.sample_types_list"))


@bp.get("/sample-types/<int:sample_type_id>/edit")
@require_permission("masters:edit")
def sample_type_edit_get(sample_type_id: int):
    s = db_session()
    u = _current_user()
    st = get_scoped_or_404(s, SampleType, sample_type_id, u.lab_id)
    return render_template("admin/sample_types/edit.html", sample_type=st)


@bp.post("/sample-types/<int:sample_type_id>/edit")
@require_permission("masters:edit")
def sample_type_edit_post(sample_type_id: int):
    s = db_session()
    u = _current_user()
    st = get_scoped_or_404(s, SampleType, sample_type_id, u.lab_id)
    try:
        update_sample_type(s, st, _payload_from_form(), user=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("sample_types.sample_type_edit_get", sample_type_id=sample_type_id))
    s.commit()
    flash("Sample type updated.", "success")
    return redirect(url_for("sample_types.sample_types_list"))


@bp.post("/sample-types/<int:sample_type_id>/delete")
@require_permission("masters:delete")
def sample_type_delete(sample_type_id: int):
    s = db_session()
    u = _current_user()
    st = get_scoped_or_404(s, SampleType, sample_type_id, u.lab_id)
    try:
        delete_sample_type(s, st, user=u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("sample_types.sample_types_list"))
    s.commit()
    flash("Sample type deleted.", "success")
    return redirect(url_for("sample_types.sample_types_list"))
