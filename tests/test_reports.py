"""Report workflow, templates, certificates and public verification."""
import pytest

from app.lims.db import session_scope
from app.lims.modules.reports.models import Report, ReportTemplate, ReportVerification
from app.lims.modules.reports.service import (
    approve_report,
    coa_inputs,
    create_report_for_sample,
    create_template,
    delete_report,
    delete_template,
    find_verification,
    get_or_create_verification,
    publish_report,
    request_revision,
    set_default_template,
    submit_for_review,
    update_report,
    verify_url,
)
from app.lims.modules.samples.models import Sample
from app.lims.modules.samples.results import ResultUpdate, batch_update_test_results
from app.lims.modules.samples.service import create_sample
from tests.conftest import get_user


def _completed_report(s, masters, user):
    smp = create_sample(s, user=user, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
    updates = {tr.id: ResultUpdate("830") for tr in smp.test_results}
    report = batch_update_test_results(s, smp, updates, user=user)
    assert report is not None
    return report


@pytest.fixture()
def report_id(app, masters):
    with session_scope(app) as s:
        return _completed_report(s, masters, get_user(s)).id


@pytest.fixture()
def published_id(app, report_id):
    with session_scope(app) as s:
        admin = get_user(s)
        r = s.get(Report, report_id)
        submit_for_review(s, r, user=admin)
        approve_report(s, r, user=admin)
        publish_report(s, r, user=admin)
    return report_id


def test_workflow_to_published(app, report_id):
    with session_scope(app) as s:
        admin = get_user(s)
        r = s.get(Report, report_id)
        submit_for_review(s, r, user=admin)
        assert r.status == "review"
        approve_report(s, r, user=admin)
        assert r.status == "approved"
        assert r.reviewed_by_id == admin.id and r.reviewed_at is not None
        publish_report(s, r, user=admin)
        assert r.status == "published"
        assert r.published_at is not None
        assert r.sample.status == "reported"
        with pytest.raises(ValueError, match="Cannot move report"):
            submit_for_review(s, r, user=admin)


def test_cannot_skip_review(app, report_id):
    with session_scope(app) as s:
        admin = get_user(s)
        r = s.get(Report, report_id)
        with pytest.raises(ValueError, match="Cannot move report from 'draft' to 'approved'"):
            approve_report(s, r, user=admin)
        with pytest.raises(ValueError):
            publish_report(s, r, user=admin)


def test_submit_blocked_while_tests_pending(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        smp = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        r = create_report_for_sample(s, smp, user=admin, title="Early draft")
        assert r.title == "Early draft"
        with pytest.raises(ValueError, match="must be entered"):
            submit_for_review(s, r, user=admin)
        with pytest.raises(ValueError, match="already exists"):
            create_report_for_sample(s, smp, user=admin)


def test_revision_reopens_tests(app, report_id):
    with session_scope(app) as s:
        admin = get_user(s)
        r = s.get(Report, report_id)
        submit_for_review(s, r, user=admin)
        with pytest.raises(ValueError, match="reason is required"):
            request_revision(s, r, "  ", user=admin)
        request_revision(s, r, "Density out of range, re-run", user=admin)
        assert r.status == "revision"
        assert r.summary == "Density out of range, re-run"
        assert r.sample.status == "testing"
        assert all(tr.status == "pending" for tr in r.sample.test_results)
        update_report(s, r, {"title": "Revised COA", "summary": "Re-tested"}, user=admin)
        assert r.title == "Revised COA"


def test_edits_locked_after_submit(app, report_id):
    with session_scope(app) as s:
        admin = get_user(s)
        r = s.get(Report, report_id)
        submit_for_review(s, r, user=admin)
        with pytest.raises(ValueError, match="Cannot edit report"):
            update_report(s, r, {"title": "x"}, user=admin)
        with pytest.raises(ValueError, match="draft status"):
            delete_report(s, r, user=admin)


def test_delete_draft_report_is_soft(app, report_id):
    with session_scope(app) as s:
        r = s.get(Report, report_id)
        delete_report(s, r, user=get_user(s))
    with session_scope(app) as s:
        r = s.get(Report, report_id)
        assert r is not None
        assert r.deleted_at is not None


def test_first_template_becomes_default(app):
    with session_scope(app) as s:
        admin = get_user(s)
        a = create_template(s, {"name": "Standard", "header_text": "Gulf Fuel Lab"}, user=admin)
        b = create_template(s, {"name": "ISO 17025", "accreditation_text": "Accredited"}, user=admin)
        assert a.is_default is True
        assert b.is_default is False
        set_default_template(s, b, user=admin)
        s.refresh(a)
        assert (a.is_default, b.is_default) == (False, True)
        with pytest.raises(ValueError, match="name is required"):
            create_template(s, {"name": ""}, user=admin)
        with pytest.raises(ValueError, match="this lab's storage"):
            create_template(s, {"name": "Foreign", "logo_key": "999/logos/1.png"}, user=admin)


def test_template_in_use_cannot_be_deleted(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        t = create_template(s, {"name": "Standard"}, user=admin)
        r = _completed_report(s, masters, admin)
        assert r.template_id == t.id
        with pytest.raises(ValueError, match="1 report"):
            delete_template(s, t, user=admin)


def test_verification_is_created_once(app, published_id):
    with session_scope(app) as s:
        admin = get_user(s)
        r = s.get(Report, published_id)
        v1 = get_or_create_verification(s, r, user=admin)
        v2 = get_or_create_verification(s, r, user=admin)
        assert v1.id == v2.id
        assert v1.report_number == r.report_number
        assert v1.client_name == "Al Noor Shipping"
        assert v1.test_count == 3
        assert v1.lab_name == "Gulf Fuel Lab"
        assert find_verification(s, v1.code).id == v1.id
        assert find_verification(s, "") is None
        assert find_verification(s, "missing") is None


def test_coa_requires_approval(app, report_id):
    with session_scope(app) as s:
        r = s.get(Report, report_id)
        with pytest.raises(ValueError, match="approved or published"):
            coa_inputs(s, [r], user=get_user(s), base_url="http://lab.test")


def test_verify_url():
    assert verify_url("https://lims.example.com/", "abc") == "https://lims.example.com/verify/abc"


def test_report_pages_and_workflow_routes(client, app, report_id):
    assert client.get(f"/admin/reports/{report_id}").status_code == 200
    r = client.post(f"/admin/reports/{report_id}/edit", data={"title": "COA Diesel", "summary": ""}, follow_redirects=True)
    assert b"Report updated." in r.data
    client.post(f"/admin/reports/{report_id}/submit")
    r = client.post(f"/admin/reports/{report_id}/revision", data={"reason": ""}, follow_redirects=True)
    assert b"reason is required" in r.data
    client.post(f"/admin/reports/{report_id}/approve")
    r = client.post(f"/admin/reports/{report_id}/publish", follow_redirects=True)
    assert b"published" in r.data
    with session_scope(app) as s:
        rep = s.get(Report, report_id)
        assert rep.status == "published"
        assert rep.title == "COA Diesel"


def test_report_create_route_for_standalone_sample(client, app, masters):
    with session_scope(app) as s:
        smp = create_sample(
            s, user=get_user(s), customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"]
        )
        sample_id = smp.id
    r = client.post("/admin/reports/new", data={"sample_id": str(sample_id)}, follow_redirects=True)
    assert r.status_code == 200
    with session_scope(app) as s:
        assert s.query(Report).filter(Report.sample_id == sample_id).count() == 1


def test_coa_pdf_and_public_verification(client, app, published_id):
    r = client.get(f"/admin/reports/{published_id}/coa.pdf")
    assert r.status_code == 200
    assert r.data.startswith(b"%PDF")
    with session_scope(app) as s:
        code = s.query(ReportVerification).filter(ReportVerification.report_id == published_id).one().code

    public = app.test_client()
    r = public.get(f"/verify/{code}")
    assert r.status_code == 200
    assert b"genuine" in r.data
    r = public.get(f"/verify/{code}/coa.pdf")
    assert r.status_code == 200
    assert r.data.startswith(b"%PDF")


def test_public_coa_only_while_published(client, app, report_id):
    with session_scope(app) as s:
        admin = get_user(s)
        r = s.get(Report, report_id)
        submit_for_review(s, r, user=admin)
        approve_report(s, r, user=admin)
    assert client.get(f"/admin/reports/{report_id}/coa.pdf").status_code == 200
    with session_scope(app) as s:
        code = s.query(ReportVerification).filter(ReportVerification.report_id == report_id).one().code
    public = app.test_client()
    r = public.get(f"/verify/{code}")
    assert r.status_code == 200
    assert b"no longer published" in r.data
    assert public.get(f"/verify/{code}/coa.pdf").status_code == 404


def test_draft_coa_redirects_with_error(client, report_id):
    r = client.get(f"/admin/reports/{report_id}/coa.pdf", follow_redirects=True)
    assert b"approved or published" in r.data


def test_batch_coa(client, app, masters, published_id):
    with session_scope(app) as s:
        admin = get_user(s)
        second = _completed_report(s, masters, admin)
        submit_for_review(s, second, user=admin)
        approve_report(s, second, user=admin)
        second_id = second.id
    r = client.post("/admin/reports/coa-batch.pdf", data={"report_ids[]": [str(published_id), str(second_id)]})
    assert r.status_code == 200
    assert r.data.startswith(b"%PDF")
    with session_scope(app) as s:
        assert s.query(ReportVerification).count() == 2


def test_template_routes(client, app):
    r = client.post("/admin/report-templates/new", data={"name": "Standard", "header_text": "Header"}, follow_redirects=True)
    assert b"Template Standard created." in r.data
    with session_scope(app) as s:
        t = s.query(ReportTemplate).one()
        assert t.is_default is True
        template_id = t.id
    assert client.get(f"/admin/report-templates/{template_id}/edit").status_code == 200
    r = client.post(f"/admin/report-templates/{template_id}/delete", follow_redirects=True)
    assert b"Template deleted." in r.data


def test_reports_are_lab_scoped(app, report_id):
    c = app.test_client()
    c.post("/auth/login", data={"username": "other", "password": "admin-pass-1"})
    assert c.get(f"/admin/reports/{report_id}").status_code == 404
    assert c.get(f"/admin/reports/{report_id}/coa.pdf").status_code == 404


def test_sample_status_after_revision_is_persisted(app, report_id):
    with session_scope(app) as s:
        admin = get_user(s)
        r = s.get(Report, report_id)
        submit_for_review(s, r, user=admin)
        request_revision(s, r, "Recheck water", user=admin)
        sample_id = r.sample_id
    with session_scope(app) as s:
        assert s.get(Sample, sample_id).status == "testing"
