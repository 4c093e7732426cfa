"""Quotations, contracts and invoices: totals, status rules and conversions."""
from datetime import date
from decimal import Decimal

import pytest

from app.lims.db import session_scope
from app.lims.modules.accounts.models import Contract, Invoice, Quotation
from app.lims.modules.accounts.service import (
    compute_totals,
    consolidate_proformas,
    convert_proforma_to_tax,
    convert_quotation_to_contract,
    create_contract,
    create_invoice,
    create_quotation,
    delete_invoice,
    delete_quotation,
    list_invoices,
    parse_lines,
    update_contract_status,
    update_invoice,
    update_invoice_status,
    update_quotation,
    update_quotation_status,
)
from app.lims.modules.customers.service import create_customer
from tests.conftest import get_user

ITEMS = [
    {"description": "Density @15C", "quantity": "2", "unit_price": "45.50"},
    {"description": "Flash Point", "quantity": "1", "unit_price": "60"},
]


def _proforma(s, user, customer_id, items=ITEMS, **kw):
    return create_invoice(s, user=user, customer_id=customer_id, items=items, invoice_type="proforma", **kw)


def test_parse_lines_skips_blank_rows():
    lines = parse_lines([{"description": "  "}, {"description": "Sulphur", "quantity": "", "unit_price": "12.5"}])
    assert len(lines) == 1
    assert lines[0].quantity == Decimal("1")
    assert lines[0].total == Decimal("12.50")
    with pytest.raises(ValueError, match="at least one line item"):
        parse_lines([{"description": ""}])
    with pytest.raises(ValueError, match="must be a number"):
        parse_lines([{"description": "X", "quantity": "two"}])
    with pytest.raises(ValueError, match="greater than zero"):
        parse_lines([{"description": "X", "quantity": "0"}])


def test_compute_totals_rounds_tax_half_up():
    totals = compute_totals(parse_lines(ITEMS))
    assert totals.subtotal == Decimal("151.00")
    assert totals.tax_rate == Decimal("5")
    assert totals.tax_amount == Decimal("7.55")
    assert totals.total == Decimal("158.55")

    odd = compute_totals(parse_lines([{"description": "Viscosity", "unit_price": "0.10"}]), "5")
    assert odd.tax_amount == Decimal("0.01")
    with pytest.raises(ValueError, match="cannot be negative"):
        compute_totals(parse_lines(ITEMS), "-1")


def test_quotation_lifecycle_and_conversion(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        q = create_quotation(s, user=admin, customer_id=masters["customer_id"], items=ITEMS, notes=" annual ")
        assert q.quotation_number.startswith("QUO-")
        assert q.status == "draft"
        assert q.notes == "annual"
        assert len(q.items) == 2

        update_quotation(s, q, user=admin, items=ITEMS[:1], tax_rate="0")
        assert q.total == Decimal("91.00")

        with pytest.raises(ValueError, match="accepted quotations"):
            convert_quotation_to_contract(s, q, user=admin)
        update_quotation_status(s, q, "sent", user=admin)
        with pytest.raises(ValueError, match="draft status"):
            update_quotation(s, q, user=admin, items=ITEMS)
        with pytest.raises(ValueError, match="Cannot change quotation status"):
            update_quotation_status(s, q, "draft", user=admin)
        update_quotation_status(s, q, "accepted", user=admin)
        assert q.accepted_date is not None

        con = convert_quotation_to_contract(s, q, user=admin)
        assert q.status == "converted"
        assert con.quotation_id == q.id
        assert con.status == "draft"
        assert con.contract_number.startswith("CON-")
        assert con.total == q.total
        assert [it.description for it in con.items] == ["Density @15C"]
        with pytest.raises(ValueError):
            update_quotation_status(s, q, "rejected", user=admin)


def test_invalid_quotation_status(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        q = create_quotation(s, user=admin, customer_id=masters["customer_id"], items=ITEMS)
        with pytest.raises(ValueError, match="Invalid quotation status"):
            update_quotation_status(s, q, "archived", user=admin)


def test_quotation_delete_only_in_draft(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        q = create_quotation(s, user=admin, customer_id=masters["customer_id"], items=ITEMS)
        update_quotation_status(s, q, "rejected", user=admin)
        with pytest.raises(ValueError, match="draft status"):
            delete_quotation(s, q, user=admin)
        q2 = create_quotation(s, user=admin, customer_id=masters["customer_id"], items=ITEMS)
        q2_id = q2.id
        delete_quotation(s, q2, user=admin)
    with session_scope(app) as s:
        assert s.get(Quotation, q2_id) is None


def test_billing_requires_customer_in_lab(app, masters):
    with session_scope(app) as s:
        other = get_user(s, "other")
        with pytest.raises(ValueError, match="Customer not found"):
            create_quotation(s, user=other, customer_id=masters["customer_id"], items=ITEMS)


def test_contract_dates_and_status(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        with pytest.raises(ValueError, match="End date cannot be before start date"):
            create_contract(
                s,
                user=admin,
                customer_id=masters["customer_id"],
                items=ITEMS,
                start_date=date(2026, 3, 1),
                end_date=date(2026, 2, 1),
            )
        con = create_contract(
            s,
            user=admin,
            customer_id=masters["customer_id"],
            items=ITEMS,
            start_date=date(2026, 3, 1),
            end_date=date(2027, 2, 28),
            terms="Monthly billing",
        )
        update_contract_status(s, con, "active", user=admin)
        with pytest.raises(ValueError, match="Cannot change contract status"):
            update_contract_status(s, con, "draft", user=admin)
        update_contract_status(s, con, "completed", user=admin)
        assert con.status == "completed"


def test_proforma_and_tax_numbering(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        pi = _proforma(s, admin, masters["customer_id"])
        inv = create_invoice(s, user=admin, customer_id=masters["customer_id"], items=ITEMS)
        assert pi.invoice_number.startswith("PI-") and pi.invoice_number.endswith("-001")
        assert inv.invoice_number.startswith("INV-") and inv.invoice_number.endswith("-001")
        with pytest.raises(ValueError, match="Invalid invoice type"):
            create_invoice(s, user=admin, customer_id=masters["customer_id"], items=ITEMS, invoice_type="credit")


def test_invoice_status_rules(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        inv = create_invoice(s, user=admin, customer_id=masters["customer_id"], items=ITEMS)
        update_invoice_status(s, inv, "sent", user=admin)
        with pytest.raises(ValueError, match="draft status"):
            update_invoice(s, inv, user=admin, items=ITEMS)
        with pytest.raises(ValueError, match="draft status"):
            delete_invoice(s, inv, user=admin)
        update_invoice_status(s, inv, "overdue", user=admin)
        update_invoice_status(s, inv, "paid", user=admin)
        assert inv.paid_date is not None
        with pytest.raises(ValueError, match="Cannot change invoice status"):
            update_invoice_status(s, inv, "sent", user=admin)


def test_deleted_invoice_leaves_listing(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        keep = create_invoice(s, user=admin, customer_id=masters["customer_id"], items=ITEMS)
        gone = create_invoice(s, user=admin, customer_id=masters["customer_id"], items=ITEMS)
        delete_invoice(s, gone, user=admin)
        assert gone.deleted_at is not None
        assert [i.id for i in list_invoices(s, admin.lab_id)] == [keep.id]
        with pytest.raises(ValueError, match="already in trash"):
            delete_invoice(s, gone, user=admin)


def test_convert_proforma_to_tax(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        pi = _proforma(s, admin, masters["customer_id"], due_date=date(2026, 4, 1))
        tax = convert_proforma_to_tax(s, pi, user=admin)
        assert tax.invoice_type == "tax"
        assert tax.invoice_number.startswith("INV-")
        assert tax.total == pi.total
        assert tax.due_date == date(2026, 4, 1)
        assert len(tax.items) == 2
        assert (pi.status, pi.converted_to_id) == ("converted", tax.id)
        with pytest.raises(ValueError, match="already been converted"):
            convert_proforma_to_tax(s, pi, user=admin)
        with pytest.raises(ValueError, match="not a proforma"):
            convert_proforma_to_tax(s, tax, user=admin)


def test_consolidate_proformas(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        a = _proforma(s, admin, masters["customer_id"], due_date=date(2026, 4, 1))
        b = _proforma(
            s,
            admin,
            masters["customer_id"],
            items=[{"description": "Water Content", "unit_price": "100"}],
            due_date=date(2026, 5, 1),
        )
        tax = consolidate_proformas(s, admin.lab_id, [a.id, b.id], user=admin)
        assert tax.subtotal == Decimal("251.00")
        assert tax.tax_rate == Decimal("5")
        assert tax.tax_amount == Decimal("12.55")
        assert tax.total == Decimal("263.55")
        assert tax.due_date == date(2026, 5, 1)
        assert len(tax.items) == 3
        assert tax.notes == f"Consolidated from {a.invoice_number}, {b.invoice_number}"
        assert {a.status, b.status} == {"consolidated"}
        assert a.consolidated_into_id == tax.id
        with pytest.raises(ValueError, match="already been consolidated"):
            consolidate_proformas(s, admin.lab_id, [a.id, b.id], user=admin)


def test_consolidate_mixed_rates_uses_effective_rate(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        a = _proforma(s, admin, masters["customer_id"], items=[{"description": "A", "unit_price": "100"}], tax_rate="5")
        b = _proforma(s, admin, masters["customer_id"], items=[{"description": "B", "unit_price": "300"}], tax_rate="0")
        tax = consolidate_proformas(s, admin.lab_id, [a.id, b.id], user=admin)
        assert tax.tax_amount == Decimal("5.00")
        assert tax.tax_rate == Decimal("1.25")


def test_consolidate_rejects_bad_selections(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        other_customer = create_customer(s, {"name": "Harbour Fuels"}, user=admin)
        a = _proforma(s, admin, masters["customer_id"])
        b = _proforma(s, admin, other_customer.id)
        tax = create_invoice(s, user=admin, customer_id=masters["customer_id"], items=ITEMS)
        with pytest.raises(ValueError, match="at least 2"):
            consolidate_proformas(s, admin.lab_id, [a.id, a.id], user=admin)
        with pytest.raises(ValueError, match="same customer"):
            consolidate_proformas(s, admin.lab_id, [a.id, b.id], user=admin)
        with pytest.raises(ValueError, match="not a proforma"):
            consolidate_proformas(s, admin.lab_id, [a.id, tax.id], user=admin)


@pytest.mark.parametrize("value", ["nan", "NaN", "sNaN", "inf", "-Infinity"])
def test_non_finite_amounts_are_rejected(value):
    with pytest.raises(ValueError, match="quantity must be a number"):
        parse_lines([{"description": "Density", "quantity": value, "unit_price": "1"}])
    with pytest.raises(ValueError, match="unit price must be a number"):
        parse_lines([{"description": "Density", "quantity": "1", "unit_price": value}])
    with pytest.raises(ValueError, match="Tax rate must be a number"):
        compute_totals(parse_lines(ITEMS), value)


def test_invoice_form_with_nan_price_is_flashed(client, app, masters):
    data = _form(masters["customer_id"], **{"item_unit_price[]": ["nan", "60", ""]})
    r = client.post("/admin/invoices/new", data=data, follow_redirects=True)
    assert r.status_code == 200
    assert b"unit price must be a number" in r.data
    with session_scope(app) as s:
        assert s.query(Invoice).count() == 0


def test_cancelled_proforma_cannot_be_billed(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        cancelled = _proforma(s, admin, masters["customer_id"])
        update_invoice_status(s, cancelled, "cancelled", user=admin)
        live = _proforma(s, admin, masters["customer_id"])
        with pytest.raises(ValueError, match="cancelled and cannot be converted"):
            convert_proforma_to_tax(s, cancelled, user=admin)
        with pytest.raises(ValueError, match="cancelled and cannot be converted"):
            consolidate_proformas(s, admin.lab_id, [live.id, cancelled.id], user=admin)
        assert s.query(Invoice).filter(Invoice.invoice_type == "tax").count() == 0
        assert live.status == "draft"


def test_paid_proforma_converts(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        pi = _proforma(s, admin, masters["customer_id"])
        update_invoice_status(s, pi, "paid", user=admin)
        tax = convert_proforma_to_tax(s, pi, user=admin)
        assert pi.converted_to_id == tax.id


def test_trashing_converted_tax_invoice_reopens_proforma(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        pi = _proforma(s, admin, masters["customer_id"])
        tax = convert_proforma_to_tax(s, pi, user=admin)
        delete_invoice(s, tax, user=admin)
        assert (pi.status, pi.converted_to_id) == ("draft", None)
        again = convert_proforma_to_tax(s, pi, user=admin)
        assert again.id != tax.id
        assert pi.converted_to_id == again.id


def test_trashing_consolidated_tax_invoice_reopens_sources(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        a = _proforma(s, admin, masters["customer_id"])
        b = _proforma(s, admin, masters["customer_id"])
        tax = consolidate_proformas(s, admin.lab_id, [a.id, b.id], user=admin)
        delete_invoice(s, tax, user=admin)
        a_id, b_id = a.id, b.id
    with session_scope(app) as s:
        for pid in (a_id, b_id):
            inv = s.get(Invoice, pid)
            assert (inv.status, inv.consolidated_into_id) == ("draft", None)


def _form(customer_id, **extra):
    data = {
        "customer_id": str(customer_id),
        "item_description[]": ["Density @15C", "Flash Point", ""],
        "item_quantity[]": ["2", "1", ""],
        "item_unit_price[]": ["45.50", "60", ""],
        "item_sample_id[]": ["", "", ""],
        "tax_rate": "5",
    }
    data.update(extra)
    return data


def test_quotation_routes_and_pdf(client, app, masters):
    r = client.post("/admin/quotations/new", data=_form(masters["customer_id"]), follow_redirects=True)
    assert r.status_code == 200
    assert b"created." in r.data
    with session_scope(app) as s:
        q = s.query(Quotation).one()
        qid = q.id
        assert q.total == Decimal("158.55")
    client.post(f"/admin/quotations/{qid}/status", data={"status": "accepted"})
    r = client.post(f"/admin/quotations/{qid}/convert", follow_redirects=True)
    assert b"Converted to contract" in r.data
    with session_scope(app) as s:
        assert s.query(Contract).filter(Contract.quotation_id == qid).count() == 1
    r = client.get(f"/admin/quotations/{qid}/pdf")
    assert r.status_code == 200
    assert r.data.startswith(b"%PDF")


def test_invoice_routes_consolidate_and_pdf(client, app, masters):
    for _ in range(2):
        client.post("/admin/invoices/new", data=_form(masters["customer_id"], invoice_type="proforma"))
    with session_scope(app) as s:
        ids = [i.id for i in s.query(Invoice).filter(Invoice.invoice_type == "proforma")]
    assert len(ids) == 2
    r = client.post("/admin/invoices/consolidate", data={"invoice_ids[]": [str(i) for i in ids]}, follow_redirects=True)
    assert b"Consolidated into tax invoice" in r.data
    with session_scope(app) as s:
        tax = s.query(Invoice).filter(Invoice.invoice_type == "tax").one()
        tax_id = tax.id
        assert tax.total == Decimal("317.10")
    r = client.get(f"/admin/invoices/{tax_id}/pdf")
    assert r.status_code == 200
    assert r.data.startswith(b"%PDF")
    r = client.post(f"/admin/invoices/{tax_id}/delete", follow_redirects=True)
    assert b"moved to trash" in r.data
    assert client.get(f"/admin/invoices/{tax_id}").status_code == 404


def test_contract_pdf(client, app, masters):
    with session_scope(app) as s:
        con = create_contract(s, user=get_user(s), customer_id=masters["customer_id"], items=ITEMS)
        cid = con.id
    r = client.get(f"/admin/contracts/{cid}/pdf")
    assert r.status_code == 200
    assert r.data.startswith(b"%PDF")
