"""Soft delete, restore and permanent delete through the trash."""
from datetime import datetime

import pytest

from app.lims.db import session_scope
from app.lims.modules.accounts.models import Invoice
from app.lims.modules.accounts.service import convert_proforma_to_tax, create_invoice, delete_invoice
from app.lims.modules.reports.models import Report, ReportVerification
from app.lims.modules.reports.service import (
    approve_report,
    create_report_for_sample,
    delete_report,
    get_or_create_verification,
    submit_for_review,
)
from app.lims.modules.samples.models import Sample, TestResult
from app.lims.modules.samples.results import ResultUpdate, batch_update_test_results
from app.lims.modules.samples.service import create_sample, delete_sample
from app.lims.trash import list_trash, permanently_delete_item, restore_item
from tests.conftest import get_user


def _sample_with_report(s, masters, user):
    smp = create_sample(s, user=user, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
    report = batch_update_test_results(s, smp, {tr.id: ResultUpdate("830") for tr in smp.test_results}, user=user)
    return smp, report


def test_list_and_restore_sample(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        smp = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        delete_sample(s, smp, user=admin)
        with pytest.raises(ValueError, match="already in trash"):
            delete_sample(s, smp, user=admin)
        sample_id = smp.id
    with session_scope(app) as s:
        admin = get_user(s)
        trash = list_trash(s, admin.lab_id)
        assert [x.id for x in trash.samples] == [sample_id]
        assert trash.total == 1
        assert list_trash(s, get_user(s, "other").lab_id).total == 0
        number = restore_item(s, "sample", sample_id, user=admin)
        assert number == s.get(Sample, sample_id).sample_number
    with session_scope(app) as s:
        assert s.get(Sample, sample_id).deleted_at is None
        with pytest.raises(ValueError, match="not in trash"):
            restore_item(s, "sample", sample_id, user=get_user(s))


def test_unknown_kind_and_other_lab(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        smp = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        delete_sample(s, smp, user=admin)
        with pytest.raises(ValueError, match="Unknown trash item type"):
            restore_item(s, "customer", smp.id, user=admin)
        with pytest.raises(ValueError, match="Sample not found"):
            restore_item(s, "sample", smp.id, user=get_user(s, "other"))


def test_report_restore_needs_live_sample(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        smp, report = _sample_with_report(s, masters, admin)
        delete_report(s, report, user=admin)
        delete_sample(s, smp, user=admin)
        with pytest.raises(ValueError, match="Restore the sample"):
            restore_item(s, "report", report.id, user=admin)
        restore_item(s, "sample", smp.id, user=admin)
        restore_item(s, "report", report.id, user=admin)
        assert report.deleted_at is None


def test_report_restore_blocked_by_live_replacement(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        smp, report = _sample_with_report(s, masters, admin)
        delete_report(s, report, user=admin)
        replacement = create_report_for_sample(s, smp, user=admin)
        assert replacement.report_number != report.report_number
        with pytest.raises(ValueError, match="already has a live report"):
            restore_item(s, "report", report.id, user=admin)


def test_permanent_delete_sample_removes_reports(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        smp, report = _sample_with_report(s, masters, admin)
        submit_for_review(s, report, user=admin)
        approve_report(s, report, user=admin)
        get_or_create_verification(s, report, user=admin)
        delete_sample(s, smp, user=admin)
        sample_id, report_id = smp.id, report.id
    with session_scope(app) as s:
        permanently_delete_item(s, "sample", sample_id, user=get_user(s))
    with session_scope(app) as s:
        assert s.get(Sample, sample_id) is None
        assert s.get(Report, report_id) is None
        assert s.query(TestResult).filter(TestResult.sample_id == sample_id).count() == 0
        assert s.query(ReportVerification).count() == 0


def test_permanent_delete_invoice(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        inv = create_invoice(
            s, user=admin, customer_id=masters["customer_id"], items=[{"description": "Panel", "unit_price": "10"}]
        )
        delete_invoice(s, inv, user=admin)
        invoice_id = inv.id
    with session_scope(app) as s:
        assert permanently_delete_item(s, "invoice", invoice_id, user=get_user(s)).startswith("INV-")
    with session_scope(app) as s:
        assert s.get(Invoice, invoice_id) is None


def _converted_proforma(s, masters, user):
    pi = create_invoice(
        s,
        user=user,
        customer_id=masters["customer_id"],
        items=[{"description": "Sulphur", "unit_price": "40"}],
        invoice_type="proforma",
    )
    return pi, convert_proforma_to_tax(s, pi, user=user)


def test_purging_converted_tax_invoice_leaves_proforma_billable(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        pi, tax = _converted_proforma(s, masters, admin)
        delete_invoice(s, tax, user=admin)
        pi_id, tax_id = pi.id, tax.id
    with session_scope(app) as s:
        permanently_delete_item(s, "invoice", tax_id, user=get_user(s))
    with session_scope(app) as s:
        pi = s.get(Invoice, pi_id)
        assert (pi.status, pi.converted_to_id) == ("draft", None)
        tax = convert_proforma_to_tax(s, pi, user=get_user(s))
        assert pi.converted_to_id == tax.id


def test_purge_reopens_proforma_still_linked(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        pi, tax = _converted_proforma(s, masters, admin)
        # trashed without going through delete_invoice
        tax.deleted_at = datetime.utcnow()
        pi_id, tax_id = pi.id, tax.id
    with session_scope(app) as s:
        assert s.get(Invoice, pi_id).status == "converted"
        permanently_delete_item(s, "invoice", tax_id, user=get_user(s))
    with session_scope(app) as s:
        pi = s.get(Invoice, pi_id)
        assert (pi.status, pi.converted_to_id) == ("draft", None)
        assert s.get(Invoice, tax_id) is None


def test_trash_routes(client, app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        smp = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        delete_sample(s, smp, user=admin)
        sample_id, number = smp.id, smp.sample_number
    r = client.get("/admin/trash")
    assert number.encode() in r.data
    r = client.post(f"/admin/trash/sample/{sample_id}/restore", follow_redirects=True)
    assert f"Restored {number}.".encode() in r.data
    r = client.post(f"/admin/trash/widget/{sample_id}/restore", follow_redirects=True)
    assert b"Unknown item type." in r.data

    with session_scope(app) as s:
        delete_sample(s, s.get(Sample, sample_id), user=get_user(s))
    r = client.post(f"/admin/trash/sample/{sample_id}/delete", follow_redirects=True)
    assert f"Permanently deleted {number}.".encode() in r.data
    with session_scope(app) as s:
        assert s.get(Sample, sample_id) is None
