from __future__ import annotations

from io import BytesIO

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, send_file, url_for

from app.lims.constants import CONTRACT_STATUSES, INVOICE_STATUSES, INVOICE_TYPES, QUOTATION_STATUSES
from app.lims.db import db_session, get_scoped_or_404
from app.lims.models import Lab, User
from app.lims.modules.accounts.models import Contract, Invoice, Quotation
from app.lims.modules.accounts.pdf import render_billing_pdf
from app.lims.modules.accounts.service import (
    consolidate_proformas,
    convert_proforma_to_tax,
    convert_quotation_to_contract,
    create_contract,
    create_invoice,
    create_quotation,
    delete_contract,
    delete_invoice,
    delete_quotation,
    list_contracts,
    list_invoices,
    list_quotations,
    update_contract,
    update_contract_status,
    update_invoice,
    update_invoice_status,
    update_quotation,
    update_quotation_status,
)
from app.lims.modules.customers.service import list_customers
from app.lims.modules.samples.service import list_samples
from app.lims.rbac import require_permission
from app.lims.storage import read_optional
from app.lims.utils import app_storage, parse_form_date, parse_int

bp = Blueprint("accounts", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _items_from_form() -> list[dict]:
    descriptions = request.form.getlist("item_description[]")
    quantities = request.form.getlist("item_quantity[]")
    prices = request.form.getlist("item_unit_price[]")
    sample_ids = request.form.getlist("item_sample_id[]")

    def at(values: list[str], i: int) -> str | None:
        return values[i] if i < len(values) else None

    return [
        {
            "description": desc,
            "quantity": at(quantities, i),
            "unit_price": at(prices, i),
            "sample_id": parse_int(at(sample_ids, i)),
        }
        for i, desc in enumerate(descriptions)
    ]


def _tax_rate_from_form():
    raw = (request.form.get("tax_rate") or "").strip()
    return raw or current_app.config.get("DEFAULT_TAX_RATE")


def _editor_context(u: User) -> dict:
    s = db_session()
    return {
        "customers": list_customers(s, u.lab_id, status="active"),
        "samples": list_samples(s, u.lab_id),
        "default_tax_rate": current_app.config.get("DEFAULT_TAX_RATE"),
    }


def _pdf(doc, filename: str):
    s = db_session()
    lab = s.get(Lab, doc.lab_id)
    logo = read_optional(app_storage(), lab.logo_key if lab else None)
    data = render_billing_pdf(doc, lab, logo)
    return send_file(BytesIO(data), mimetype="application/pdf", as_attachment=False, download_name=filename)


# ---------- Quotations ----------
@bp.get("/quotations")
@require_permission("accounts:view")
def quotations_list():
    s = db_session()
    u = _current_user()
    status = (request.args.get("status") or "").strip()
    return render_template(
        "admin/accounts/quotations_list.html",
        quotations=list_quotations(s, u.lab_id, status=status),
        status=status,
        statuses=QUOTATION_STATUSES,
    )


@bp.get("/quotations/new")
@require_permission("accounts:create")
def quotation_new_get():
    u = _current_user()
    return render_template("admin/accounts/quotation_edit.html", quotation=None, **_editor_context(u))


@bp.post("/quotations/new")
@require_permission("accounts:create")
def quotation_new_post():
    s = db_session()
    u = _current_user()
    try:
        q = create_quotation(
            s,
            user=u,
            customer_id=parse_int(request.form.get("customer_id")),
            items=_items_from_form(),
            valid_until=parse_form_date(request.form.get("valid_until")),
            notes=request.form.get("notes"),
            tax_rate=_tax_rate_from_form(),
        )
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("accounts.quotation_new_get"))
    s.commit()
    flash(f"Quotation {q.quotation_number} created.", "success")
    return redirect(url_for("accounts.quotation_detail", quotation_id=q.id))


@bp.get("/quotations/<int:quotation_id>")
@require_permission("accounts:view")
def quotation_detail(quotation_id: int):
    s = db_session()
    u = _current_user()
    q = get_scoped_or_404(s, Quotation, quotation_id, u.lab_id)
    return render_template("admin/accounts/quotation_detail.html", quotation=q, statuses=QUOTATION_STATUSES)


@bp.get("/quotations/<int:quotation_id>/edit")
@require_permission("accounts:edit")
def quotation_edit_get(quotation_id: int):
    s = db_session()
    u = _current_user()
    q = get_scoped_or_404(s, Quotation, quotation_id, u.lab_id)
    return render_template("admin/accounts/quotation_edit.html", quotation=q, **_editor_context(u))


@bp.post("/quotations/<int:quotation_id>/edit")
@require_permission("accounts:edit")
def quotation_edit_post(quotation_id: int):
    s = db_session()
    u = _current_user()
    q = get_scoped_or_404(s, Quotation, quotation_id, u.lab_id)
    try:
        update_quotation(
            s,
            q,
            user=u,
            items=_items_from_form(),
            valid_until=parse_form_date(request.form.get("valid_until")),
            notes=request.form.get("notes"),
            tax_rate=_tax_rate_from_form(),
        )
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("accounts.quotation_edit_get", quotation_id=quotation_id))
    s.commit()
    flash("Quotation updated.", "success")
    return redirect(url_for("accounts.quotation_detail", quotation_id=quotation_id))


@bp.post("/quotations/<int:quotation_id>/status")
@require_permission("accounts:edit")
def quotation_status(quotation_id: int):
    s = db_session()
    u = _current_user()
    q = get_scoped_or_404(s, Quotation, quotation_id, u.lab_id)
    try:
        update_quotation_status(s, q, (request.form.get("status") or "").strip(), user=u)
    except ValueError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash(f"Quotation marked {q.status}.", "success")
    return redirect(url_for("accounts.quotation_detail", quotation_id=quotation_id))


@bp.post("/quotations/<int:quotation_id>/convert")
@require_permission("accounts:create")
def quotation_convert(quotation_id: int):
    s = db_session()
    u = _current_user()
    q = get_scoped_or_404(s, Quotation, quotation_id, u.lab_id)
    try:
        con = convert_quotation_to_contract(s, q, user=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("accounts.quotation_detail", quotation_id=quotation_id))
    s.commit()
    flash(f"Converted to contract {con.contract_number}.", "success")
    return redirect(url_for("accounts.contract_detail", contract_id=con.id))


@bp.post("/quotations/<int:quotation_id>/delete")
@require_permission("accounts:delete")
def quotation_delete(quotation_id: int):
    s = db_session()
    u = _current_user()
    q = get_scoped_or_404(s, Quotation, quotation_id, u.lab_id)
    try:
        delete_quotation(s, q, user=u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("accounts.quotation_detail", quotation_id=quotation_id))
    s.commit()
    flash("Quotation deleted.", "success")
    return redirect(url_for("accounts.quotations_list"))


@bp.get("/quotations/<int:quotation_id>/pdf")
@require_permission("accounts:view")
def quotation_pdf(quotation_id: int):
    u = _current_user()
    q = get_scoped_or_404(db_session(), Quotation, quotation_id, u.lab_id)
    return _pdf(q, f"{q.quotation_number}.pdf")


# ---------- Contracts ----------
@bp.get("/contracts")
@require_permission("accounts:view")
def contracts_list():
    s = db_session()
    u = _current_user()
    status = (request.args.get("status") or "").strip()
    return render_template(
        "admin/accounts/contracts_list.html",
        contracts=list_contracts(s, u.lab_id, status=status),
        status=status,
        statuses=CONTRACT_STATUSES,
    )


@bp.get("/contracts/new")
@require_permission("accounts:create")
def contract_new_get():
    u = _current_user()
    return render_template("admin/accounts/contract_edit.html", contract=None, **_editor_context(u))


def _contract_kwargs() -> dict:
    return {
        "items": _items_from_form(),
        "start_date": parse_form_date(request.form.get("start_date")),
        "end_date": parse_form_date(request.form.get("end_date")),
        "terms": request.form.get("terms"),
        "notes": request.form.get("notes"),
        "tax_rate": _tax_rate_from_form(),
    }


@bp.post("/contracts/new")
@require_permission("accounts:create")
def contract_new_post():
    s = db_session()
    u = _current_user()
    try:
        con = create_contract(s, user=u, customer_id=parse_int(request.form.get("customer_id")), **_contract_kwargs())
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("accounts.contract_new_get"))
    s.commit()
    flash(f"Contract {con.contract_number} created.", "success")
    return redirect(url_for("accounts.contract_detail", contract_id=con.id))


@bp.get("/contracts/<int:contract_id>")
@require_permission("accounts:view")
def contract_detail(contract_id: int):
    s = db_session()
    u = _current_user()
    con = get_scoped_or_404(s, Contract, contract_id, u.lab_id)
    return render_template("admin/accounts/contract_detail.html", contract=con, statuses=CONTRACT_STATUSES)


@bp.get("/contracts/<int:contract_id>/edit")
@require_permission("accounts:edit")
def contract_edit_get(contract_id: int):
    s = db_session()
    u = _current_user()
    con = get_scoped_or_404(s, Contract, contract_id, u.lab_id)
    return render_template("admin/accounts/contract_edit.html", contract=con, **_editor_context(u))


@bp.post("/contracts/<int:contract_id>/edit")
@require_permission("accounts:edit")
def contract_edit_post(contract_id: int):
    s = db_session()
    u = _current_user()
    con = get_scoped_or_404(s, Contract, contract_id, u.lab_id)
    try:
        update_contract(s, con, user=u, **_contract_kwargs())
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("accounts.contract_edit_get", contract_id=contract_id))
    s.commit()
    flash("Contract updated.", "success")
    return redirect(url_for("accounts.contract_detail", contract_id=contract_id))


@bp.post("/contracts/<int:contract_id>/status")
@require_permission("accounts:edit")
def contract_status(contract_id: int):
    s = db_session()
    u = _current_user()
    con = get_scoped_or_404(s, Contract, contract_id, u.lab_id)
    try:
        update_contract_status(s, con, (request.form.get("status") or "").strip(), user=u)
    except ValueError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash(f"Contract marked {con.status}.", "success")
    return redirect(url_for("accounts.contract_detail", contract_id=contract_id))


@bp.post("/contracts/<int:contract_id>/delete")
@require_permission("accounts:delete")
def contract_delete(contract_id: int):
    s = db_session()
    u = _current_user()
    con = get_scoped_or_404(s, Contract, contract_id, u.lab_id)
    try:
        delete_contract(s, con, user=u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("accounts.contract_detail", contract_id=contract_id))
    s.commit()
    flash("Contract deleted.", "success")
    return redirect(url_for("accounts.contracts_list"))


@bp.get("/contracts/<int:contract_id>/pdf")
@require_permission("accounts:view")
def contract_pdf(contract_id: int):
    u = _current_user()
    con = get_scoped_or_404(db_session(), Contract, contract_id, u.lab_id)
    return _pdf(con, f"{con.contract_number}.pdf")


# ---------- Invoices ----------
def _live_invoice_or_404(invoice_id: int) -> Invoice:
    u = _current_user()
    inv = get_scoped_or_404(db_session(), Invoice, invoice_id, u.lab_id)
    if inv.deleted_at is not None:
        abort(404)
    return inv


@bp.get("/invoices")
@require_permission("accounts:view")
def invoices_list():
    s = db_session()
    u = _current_user()
    status = (request.args.get("status") or "").strip()
    invoice_type = (request.args.get("type") or "").strip()
    return render_template(
        "admin/accounts/invoices_list.html",
        invoices=list_invoices(s, u.lab_id, status=status, invoice_type=invoice_type),
        status=status,
        invoice_type=invoice_type,
        statuses=INVOICE_STATUSES,
        invoice_types=INVOICE_TYPES,
    )


@bp.get("/invoices/new")
@require_permission("accounts:create")
def invoice_new_get():
    u = _current_user()
    return render_template(
        "admin/accounts/invoice_edit.html", invoice=None, invoice_types=INVOICE_TYPES, **_editor_context(u)
    )


@bp.post("/invoices/new")
@require_permission("accounts:create")
def invoice_new_post():
    s = db_session()
    u = _current_user()
    try:
        inv = create_invoice(
            s,
            user=u,
            customer_id=parse_int(request.form.get("customer_id")),
            items=_items_from_form(),
            invoice_type=request.form.get("invoice_type") or "tax",
            due_date=parse_form_date(request.form.get("due_date")),
            notes=request.form.get("notes"),
            tax_rate=_tax_rate_from_form(),
        )
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("accounts.invoice_new_get"))
    s.commit()
    flash(f"Invoice {inv.invoice_number} created.", "success")
    return redirect(url_for("accounts.invoice_detail", invoice_id=inv.id))


@bp.get("/invoices/<int:invoice_id>")
@require_permission("accounts:view")
def invoice_detail(invoice_id: int):
    inv = _live_invoice_or_404(invoice_id)
    return render_template("admin/accounts/invoice_detail.html", invoice=inv, statuses=INVOICE_STATUSES)


@bp.get("/invoices/<int:invoice_id>/edit")
@require_permission("accounts:edit")
def invoice_edit_get(invoice_id: int):
    u = _current_user()
    inv = _live_invoice_or_404(invoice_id)
    return render_template(
        "admin/accounts/invoice_edit.html", invoice=inv, invoice_types=INVOICE_TYPES, **_editor_context(u)
    )


@bp.post("/invoices/<int:invoice_id>/edit")
@require_permission("accounts:edit")
def invoice_edit_post(invoice_id: int):
    s = db_session()
    u = _current_user()
    inv = _live_invoice_or_404(invoice_id)
    try:
        update_invoice(
            s,
            inv,
            user=u,
            items=_items_from_form(),
            due_date=parse_form_date(request.form.get("due_date")),
            notes=request.form.get("notes"),
            tax_rate=_tax_rate_from_form(),
        )
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("accounts.invoice_edit_get", invoice_id=invoice_id))
    s.commit()
    flash("Invoice updated.", "success")
    return redirect(url_for("accounts.invoice_detail", invoice_id=invoice_id))


@bp.post("/invoices/<int:invoice_id>/status")
@require_permission("accounts:edit")
def invoice_status(invoice_id: int):
    s = db_session()
    u = _current_user()
    inv = _live_invoice_or_404(invoice_id)
    try:
        update_invoice_status(s, inv, (request.form.get("status") or "").strip(), user=u)
    except ValueError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash(f"Invoice marked {inv.status}.", "success")
    return redirect(url_for("accounts.invoice_detail", invoice_id=invoice_id))


@bp.post("/invoices/<int:invoice_id>/convert")
@require_permission("accounts:create")
def invoice_convert(invoice_id: int):
    s = db_session()
    u = _current_user()
    inv = _live_invoice_or_404(invoice_id)
    try:
        tax_inv = convert_proforma_to_tax(s, inv, user=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("accounts.invoice_detail", invoice_id=invoice_id))
    s.commit()
    flash(f"Converted to tax invoice {tax_inv.invoice_number}.", "success")
    return redirect(url_for("accounts.invoice_detail", invoice_id=tax_inv.id))


@bp.post("/invoices/consolidate")
@require_permission("accounts:create")
def invoices_consolidate():
    s = db_session()
    u = _current_user()
    ids = [n for n in (parse_int(x) for x in request.form.getlist("invoice_ids[]")) if n]
    try:
        tax_inv = consolidate_proformas(s, u.lab_id, ids, user=u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("accounts.invoices_list", type="proforma"))
    s.commit()
    flash(f"Consolidated into tax invoice {tax_inv.invoice_number}.", "success")
    return redirect(url_for("accounts.invoice_detail", invoice_id=tax_inv.id))


@bp.post("/invoices/<int:invoice_id>/delete")
@require_permission("accounts:delete")
def invoice_delete(invoice_id: int):
    s = db_session()
    u = _current_user()
    inv = _live_invoice_or_404(invoice_id)
    try:
        delete_invoice(s, inv, user=u)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("accounts.invoice_detail", invoice_id=invoice_id))
    s.commit()
    flash(f"Invoice {inv.invoice_number} moved to trash.", "success")
    return redirect(url_for("accounts.invoices_list"))


@bp.get("/invoices/<int:invoice_id>/pdf")
@require_permission("accounts:view")
def invoice_pdf(invoice_id: int):
    inv = _live_invoice_or_404(invoice_id)
    return _pdf(inv, f"{inv.invoice_number}.pdf")
