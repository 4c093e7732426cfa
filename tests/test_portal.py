"""Customer portal: login and per-customer scoping."""
import pytest

from app.lims.db import session_scope
from app.lims.errors import NotFoundError
from app.lims.models import PortalUser
from app.lims.modules.accounts.service import create_invoice, create_quotation, delete_invoice, update_quotation_status
from app.lims.modules.customers.service import create_customer
from app.lims.modules.portal.service import (
    authenticate,
    get_portal_report,
    get_portal_sample,
    list_portal_invoices,
    list_portal_reports,
    list_portal_samples,
    portal_summary,
)
from app.lims.modules.reports.service import approve_report, publish_report, submit_for_review
from app.lims.modules.samples.results import ResultUpdate, batch_update_test_results
from app.lims.modules.samples.service import create_sample
from app.lims.modules.users.service import create_portal_user
from tests.conftest import get_user

PORTAL_PASSWORD = "portal-pass-1"
ITEMS = [{"description": "Full diesel panel", "unit_price": "400"}]


@pytest.fixture()
def portal(app, masters):
    """Two customers in one lab; the portal account belongs to the first."""
    with session_scope(app) as s:
        admin = get_user(s)
        cust = masters["customer_id"]
        rival = create_customer(s, {"name": "Rival Bunkers"}, user=admin).id
        st = masters["sample_type_id"]

        published = create_sample(s, user=admin, customer_id=cust, sample_type_id=st)
        report = batch_update_test_results(
            s, published, {tr.id: ResultUpdate("830") for tr in published.test_results}, user=admin
        )
        submit_for_review(s, report, user=admin)
        approve_report(s, report, user=admin)
        publish_report(s, report, user=admin)

        drafted = create_sample(s, user=admin, customer_id=cust, sample_type_id=st)
        draft_report = batch_update_test_results(
            s, drafted, {tr.id: ResultUpdate("830") for tr in drafted.test_results}, user=admin
        )
        rival_sample = create_sample(s, user=admin, customer_id=rival, sample_type_id=st)

        q = create_quotation(s, user=admin, customer_id=cust, items=ITEMS)
        update_quotation_status(s, q, "sent", user=admin)
        create_quotation(s, user=admin, customer_id=rival, items=ITEMS)
        live_inv = create_invoice(s, user=admin, customer_id=cust, items=ITEMS)
        gone_inv = create_invoice(s, user=admin, customer_id=cust, items=ITEMS)
        delete_invoice(s, gone_inv, user=admin)
        create_invoice(s, user=admin, customer_id=rival, items=ITEMS)

        pu = create_portal_user(
            s,
            {"username": "alnoor", "password": PORTAL_PASSWORD, "customer_id": cust, "name": "Al Noor Ops"},
            actor=admin,
        )
        return {
            "portal_user_id": pu.id,
            "published_sample_id": published.id,
            "published_report_id": report.id,
            "published_report_number": report.report_number,
            "draft_report_id": draft_report.id,
            "rival_sample_id": rival_sample.id,
            "live_invoice_id": live_inv.id,
        }


def _portal_login(app):
    c = app.test_client()
    r = c.post("/portal/login", data={"username": "alnoor", "password": PORTAL_PASSWORD})
    assert r.status_code == 302
    return c


def test_authenticate(app, portal):
    with session_scope(app) as s:
        assert authenticate(s, "ALNOOR ", PORTAL_PASSWORD).id == portal["portal_user_id"]
        assert authenticate(s, "alnoor", "wrong") is None
        assert authenticate(s, "nobody", PORTAL_PASSWORD) is None


def test_portal_queries_are_scoped_to_customer(app, portal):
    with session_scope(app) as s:
        pu = s.get(PortalUser, portal["portal_user_id"])
        sample_ids = {smp.id for smp in list_portal_samples(s, pu)}
        assert portal["published_sample_id"] in sample_ids
        assert portal["rival_sample_id"] not in sample_ids
        assert len(sample_ids) == 2

        assert [r.id for r in list_portal_reports(s, pu)] == [portal["published_report_id"]]
        with pytest.raises(NotFoundError):
            get_portal_report(s, pu, portal["draft_report_id"])
        with pytest.raises(NotFoundError):
            get_portal_sample(s, pu, portal["rival_sample_id"])

        assert [i.id for i in list_portal_invoices(s, pu)] == [portal["live_invoice_id"]]

        summary = portal_summary(s, pu)
        assert summary.total_samples == 2
        assert summary.published_reports == 1
        assert summary.open_quotations == 1


def test_portal_requires_login(app, portal):
    c = app.test_client()
    r = c.get("/portal/samples")
    assert r.status_code == 302
    assert "/portal/login" in r.headers["Location"]


def test_portal_bad_password(app, portal):
    c = app.test_client()
    r = c.post("/portal/login", data={"username": "alnoor", "password": "nope"}, follow_redirects=True)
    assert b"Invalid credentials" in r.data
    assert c.get("/portal/").status_code == 302


def test_staff_session_does_not_open_portal(client, portal):
    assert client.get("/portal/").status_code == 302


def test_portal_pages(app, portal):
    c = _portal_login(app)
    for path in ("/portal/", "/portal/samples", "/portal/reports", "/portal/quotations", "/portal/invoices"):
        assert c.get(path).status_code == 200, path

    r = c.get("/portal/reports")
    assert portal["published_report_number"].encode() in r.data

    assert c.get(f"/portal/samples/{portal['published_sample_id']}").status_code == 200
    assert c.get(f"/portal/samples/{portal['rival_sample_id']}").status_code == 404


def test_portal_coa_download(app, portal):
    c = _portal_login(app)
    r = c.get(f"/portal/reports/{portal['published_report_id']}/coa.pdf")
    assert r.status_code == 200
    assert r.data.startswith(b"%PDF")
    assert c.get(f"/portal/reports/{portal['draft_report_id']}/coa.pdf").status_code == 404


def test_portal_logout(app, portal):
    c = _portal_login(app)
    c.get("/portal/logout")
    assert c.get("/portal/").status_code == 302


def test_portal_cannot_reach_admin(app, portal):
    c = _portal_login(app)
    assert c.get("/admin/").status_code == 302
