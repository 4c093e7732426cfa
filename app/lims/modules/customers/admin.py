from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.lims.db import db_session, get_scoped_or_404
from app.lims.models import User
from app.lims.modules.customers.models import ContactPerson, Customer
from app.lims.modules.customers.service import (
    add_contact_person,
    create_customer,
    delete_contact_person,
    delete_customer,
    list_customers,
    update_contact_person,
    update_customer,
)
from app.lims.rbac import require_permission

bp = Blueprint("customers", __name__)

_CUSTOMER_FIELDS = (
    "name",
    "company",
    "email",
    "phone",
    "address",
    "contact_person",
    "trn",
    "payment_term",
    "status",
)
_CONTACT_FIELDS = ("name", "designation", "email", "phone")


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _contact_or_404(customer: Customer, contact_id: int) -> ContactPerson:
    cp = db_session().get(ContactPerson, contact_id)
    if not cp or cp.customer_id != customer.id:
        abort(404)
    return cp


@bp.get("/customers")
@require_permission("masters:view")
def customers_list():
    s = db_session()
    u = _current_user()
    search = (request.args.get("q") or "").strip()
    status = (request.args.get("status") or "").strip()
    page = max(int(request.args.get("page") or 1), 1)
    per_page = 50

    customers = list_customers(s, u.lab_id, search=search, status=status)
    total = len(customers)
    start = (page - 1) * per_page
    return render_template(
        "admin/customers/list.html",
        customers=customers[start : start + per_page],
        search=search,
        status=status,
        page=page,
        total=total,
        has_prev=page > 1,
        has_next=start + per_page < total,
    )


@bp.get("/customers/new")
@require_permission("masters:create")
def customers_new_get():
    return render_template("admin/customers/edit.html", customer=None)


@bp.post("/customers/new")
@require_permission("masters:create")
def customers_new_post():
    s = db_session()
    u = _current_user()
    payload = {k: request.form.get(k) for k in _CUSTOMER_FIELDS}
    try:
        c = create_customer(s, payload, user=u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("customers.customers_new_get"))
    s.commit()
    flash(f"Customer {c.code} created.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=c.id))


@bp.get("/customers/<int:customer_id>")
@require_permission("masters:view")
def customer_detail(customer_id: int):
    s = db_session()
    u = _current_user()
    c = get_scoped_or_404(s, Customer, customer_id, u.lab_id)
    return render_template("admin/customers/detail.html", customer=c)


@bp.get("/customers/<int:customer_id>/edit")
@require_permission("masters:edit")
def customer_edit_get(customer_id: int):
    s = db_session()
    u = _current_user()
    c = get_scoped_or_404(s, Customer, customer_id, u.lab_id)
    return render_template("admin/customers/edit.html", customer=c)


@bp.post("/customers/<int:customer_id>/edit")
@require_permission("masters:edit")
def customer_edit_post(customer_id: int):
    s = db_session()
    u = _current_user()
    c = get_scoped_or_404(s, Customer, customer_id, u.lab_id)
    payload = {k: request.form.get(k) for k in _CUSTOMER_FIELDS}
    try:
        update_customer(s, c, payload, user=u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("customers.customer_edit_get", customer_id=customer_id))
    s.commit()
    flash("Customer updated.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=customer_id))


@bp.post("/customers/<int:customer_id>/delete")
@require_permission("masters:delete")
def customer_delete(customer_id: int):
    s = db_session()
    u = _current_user()
    c = get_scoped_or_404(s, Customer, customer_id, u.lab_id)
    try:
        delete_customer(s, c, user=u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("customers.customer_detail", customer_id=customer_id))
    s.commit()
    flash("Customer deleted.", "success")
    return redirect(url_for("customers.customers_list"))


# ---------- Contact persons ----------
@bp.post("/customers/<int:customer_id>/contacts")
@require_permission("masters:edit")
def contact_add(customer_id: int):
    s = db_session()
    u = _current_user()
    c = get_scoped_or_404(s, Customer, customer_id, u.lab_id)
    try:
        add_contact_person(s, c, {k: request.form.get(k) for k in _CONTACT_FIELDS}, user=u)
    except ValueError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash("Contact person added.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=customer_id))


@bp.post("/customers/<int:customer_id>/contacts/<int:contact_id>/edit")
@require_permission("masters:edit")
def contact_edit(customer_id: int, contact_id: int):
    s = db_session()
    u = _current_user()
    c = get_scoped_or_404(s, Customer, customer_id, u.lab_id)
    cp = _contact_or_404(c, contact_id)
    try:
        update_contact_person(s, cp, {k: request.form.get(k) for k in _CONTACT_FIELDS}, user=u)
    except ValueError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash("Contact person updated.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=customer_id))


@bp.post("/customers/<int:customer_id>/contacts/<int:contact_id>/delete")
@require_permission("masters:edit")
def contact_delete(customer_id: int, contact_id: int):
    s = db_session()
    u = _current_user()
    c = get_scoped_or_404(s, Customer, customer_id, u.lab_id)
    cp = _contact_or_404(c, contact_id)
    delete_contact_person(s, cp, user=u)
    s.commit()
    flash("Contact person removed.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=customer_id))
