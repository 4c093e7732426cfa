"""Registration numbering, sample lifecycle and result entry."""
from datetime import datetime, timedelta

import pytest

from app.lims import pdf as lims_pdf
from app.lims.db import session_scope
from app.lims.modules.customers.models import Customer
from app.lims.modules.customers.service import create_customer
from app.lims.modules.reports.models import Report
from app.lims.modules.sample_types.service import create_sample_type
from app.lims.modules.samples.models import Registration, Sample
from app.lims.modules.samples.results import ResultUpdate, add_tests_to_sample, batch_update_test_results
from app.lims.modules.samples.service import (
    RegistrationRow,
    assign_sample,
    clamp_qty,
    create_registration,
    create_sample,
    delete_registration,
    delete_sample,
    list_my_collections,
    update_registration,
    update_sample,
    update_sample_status,
)
from app.lims.modules.users.service import create_user, list_roles
from tests.conftest import get_user, login


def _enter_all(s, sample, user, value="830"):
    updates = {tr.id: ResultUpdate(value) for tr in sample.test_results}
    return batch_update_test_results(s, sample, updates, user=user)


def test_clamp_qty():
    assert clamp_qty("3") == 3
    assert clamp_qty(0) == 1
    assert clamp_qty("abc") == 1
    assert clamp_qty(500) == 99


def test_single_type_registration_numbers_samples_sequentially(app, masters):
    with session_scope(app) as s:
        reg = create_registration(
            s,
            user=get_user(s),
            customer_id=masters["customer_id"],
            rows=[RegistrationRow(sample_type_id=masters["sample_type_id"], qty=3, sample_point="Tank 4")],
            reference="PO-881",
        )
        numbers = [smp.sample_number for smp in reg.samples]
        assert reg.registration_number.startswith("REG-")
        assert reg.registration_number.endswith("-001")
        assert numbers == [f"{reg.registration_number}-{n:02d}" for n in (1, 2, 3)]
        assert all(smp.sequence_number == reg.sequence_number for smp in reg.samples)
        assert all(smp.status == "registered" for smp in reg.samples)
        assert all(smp.sample_group is None for smp in reg.samples)
        assert reg.samples[0].sample_point == "Tank 4"
        assert reg.samples[0].reference == "PO-881"
        assert len(reg.samples[0].test_results) == 3


def test_multi_type_registration_uses_group_letters(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        gasoline = create_sample_type(s, {"name": "Gasoline", "tests": [{"parameter": "RON"}]}, user=admin)
        reg = create_registration(
            s,
            user=admin,
            customer_id=masters["customer_id"],
            rows=[
                RegistrationRow(sample_type_id=masters["sample_type_id"], qty=2),
                RegistrationRow(sample_type_id=gasoline.id, qty=1),
                RegistrationRow(sample_type_id=masters["sample_type_id"], qty=1),
            ],
        )
        suffixes = [smp.sample_number[len(reg.registration_number) + 1 :] for smp in reg.samples]
        assert suffixes == ["A01", "A02", "B01", "A03"]
        assert [smp.sample_group for smp in reg.samples] == ["A", "A", "B", "A"]
        assert [smp.sub_sample_number for smp in reg.samples] == [1, 2, 3, 4]


def test_registration_selected_tests_and_due_dates(app, masters):
    collected = datetime(2026, 2, 26, 9, 0)
    with session_scope(app) as s:
        reg = create_registration(
            s,
            user=get_user(s),
            customer_id=masters["customer_id"],
            rows=[RegistrationRow(sample_type_id=masters["sample_type_id"], selected_tests=[0, 2])],
            collection_date=collected,
        )
        results = reg.samples[0].test_results
        assert [tr.parameter for tr in results] == ["Density @15C", "Water Content"]
        assert results[0].due_date == collected + timedelta(days=2)
        assert results[1].due_date is None


def test_registration_requires_active_customer(app, masters):
    with session_scope(app) as s:
        s.get(Customer, masters["customer_id"]).status = "inactive"
    with session_scope(app) as s:
        with pytest.raises(ValueError, match="inactive customer"):
            create_registration(
                s,
                user=get_user(s),
                customer_id=masters["customer_id"],
                rows=[RegistrationRow(sample_type_id=masters["sample_type_id"])],
            )
        with pytest.raises(ValueError, match="inactive customer"):
            create_sample(
                s, user=get_user(s), customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"]
            )


def test_registration_rejects_other_lab_sample_type(app, masters):
    with session_scope(app) as s:
        other = get_user(s, "other")
        their_customer = create_customer(s, {"name": "Their Customer"}, user=other)
        with pytest.raises(ValueError, match="Sample type not found"):
            create_registration(
                s,
                user=other,
                customer_id=their_customer.id,
                rows=[RegistrationRow(sample_type_id=masters["sample_type_id"])],
            )


def test_update_registration_flows_to_editable_samples(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        reg = create_registration(
            s,
            user=admin,
            customer_id=masters["customer_id"],
            rows=[RegistrationRow(sample_type_id=masters["sample_type_id"], qty=2)],
        )
        _enter_all(s, reg.samples[1], admin)
        update_registration(s, reg, {"priority": "urgent", "reference": "PO-9"}, user=admin)
        assert reg.samples[0].priority == "urgent"
        assert reg.samples[0].reference == "PO-9"
        assert reg.samples[1].priority == "normal"


def test_delete_registration_moves_samples_to_trash(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        reg = create_registration(
            s,
            user=admin,
            customer_id=masters["customer_id"],
            rows=[RegistrationRow(sample_type_id=masters["sample_type_id"], qty=2)],
        )
        assert delete_registration(s, reg, user=admin) == 2
        assert reg.live_samples == []


def test_standalone_sample_numbering(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        a = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        b = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        assert a.sample_number.startswith("SPL-") and a.sample_number.endswith("-001")
        assert b.sequence_number == 2
        assert a.status == "pending"
        assert a.collected_by_id == admin.id


def test_sample_edit_only_while_editable(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        smp = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        update_sample(s, smp, {"description": "Bunker sample", "priority": "urgent"}, user=admin)
        assert smp.description == "Bunker sample"
        update_sample_status(s, smp, "testing", user=admin)
        with pytest.raises(ValueError, match="Cannot edit sample"):
            update_sample(s, smp, {"description": "late"}, user=admin)


def test_assign_and_unassign(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        chemist_role = next(r for r in list_roles(s, admin.lab_id) if r.name == "Chemist")
        chemist = create_user(
            s,
            {"username": "chem1", "name": "Ravi", "password": "chem-pass-1", "role_id": chemist_role.id},
            actor=admin,
        )
        smp = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        assign_sample(s, smp, chemist.id, user=admin)
        assert (smp.status, smp.assigned_to_id) == ("assigned", chemist.id)
        assign_sample(s, smp, None, user=admin)
        assert (smp.status, smp.assigned_to_id) == ("registered", None)
        with pytest.raises(ValueError, match="User not found"):
            assign_sample(s, smp, get_user(s, "other").id, user=admin)


def test_status_transitions_are_guarded(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        smp = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        with pytest.raises(ValueError, match="Cannot move sample"):
            update_sample_status(s, smp, "reported", user=admin)
        update_sample_status(s, smp, "testing", user=admin)
        with pytest.raises(ValueError, match="still pending"):
            update_sample_status(s, smp, "completed", user=admin)


def test_entering_last_result_completes_sample_and_creates_report(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        smp = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        first = smp.test_results[0]
        assert batch_update_test_results(s, smp, {first.id: ResultUpdate("832.4", "ok")}, user=admin) is None
        assert smp.status == "testing"
        assert smp.assigned_to_id == admin.id
        assert first.status == "completed" and first.entered_by_id == admin.id

        report = _enter_all(s, smp, admin)
        assert report is not None
        assert smp.status == "completed"
        assert report.status == "draft"
        assert report.title == "Certificate of Quality - Diesel"
        sample_id = smp.id
        suffix = smp.sample_number.split("-", 1)[1]
        report_number = report.report_number

    assert report_number == f"RPT-{suffix}"
    with session_scope(app) as s:
        assert s.query(Report).filter(Report.sample_id == sample_id).count() == 1


def test_blank_values_do_not_complete_tests(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        smp = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        updates = {tr.id: ResultUpdate("  ") for tr in smp.test_results}
        assert batch_update_test_results(s, smp, updates, user=admin) is None
        assert smp.pending_count == 3


def test_results_rejected_for_foreign_test_ids(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        a = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        b = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        with pytest.raises(ValueError, match="does not belong"):
            batch_update_test_results(s, a, {b.test_results[0].id: ResultUpdate("1")}, user=admin)


def test_adding_tests_reopens_completed_sample(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        smp = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        _enter_all(s, smp, admin)
        assert smp.status == "completed"
        added = add_tests_to_sample(s, smp, [{"parameter": "Sulphur", "unit": "mg/kg", "tat": 1}], user=admin)
        assert len(added) == 1
        assert smp.status == "testing"
        assert smp.pending_count == 1


def test_within_spec(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        smp = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        density, flash_point, water = smp.test_results
        density.result_value = "850"
        flash_point.result_value = "61"
        water.result_value = "n/a"
        assert density.within_spec is False
        assert flash_point.within_spec is True
        assert water.within_spec is None


def test_registration_form_posts_rows(client, masters, app):
    r = client.post(
        "/admin/registrations/new",
        data={
            "customer_id": str(masters["customer_id"]),
            "priority": "urgent",
            "job_type": "testing",
            "row_sample_type_id[]": [str(masters["sample_type_id"]), ""],
            "row_qty[]": ["2", "1"],
            "row_bottle_qty[]": ["1L", ""],
            "row_sample_point[]": ["Manifold", ""],
            "row_description[]": ["", ""],
            "row_remarks[]": ["", ""],
        },
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"created with 2 sample(s)" in r.data
    with session_scope(app) as s:
        reg = s.query(Registration).one()
        assert [smp.quantity for smp in reg.samples] == ["1L", "1L"]
        assert all(smp.priority == "urgent" for smp in reg.samples)


def test_test_entry_form_completes_sample(client, masters, app):
    with session_scope(app) as s:
        smp = create_sample(
            s, user=get_user(s), customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"]
        )
        sample_id = smp.id
        data = {f"result_{tr.id}": "1" for tr in smp.test_results}
    r = client.post(f"/admin/test-entry/{sample_id}", data=data, follow_redirects=True)
    assert b"Draft report" in r.data
    with session_scope(app) as s:
        assert s.get(Sample, sample_id).status == "completed"


def test_sample_labels_pdf(client, masters, app):
    with session_scope(app) as s:
        smp = create_sample(
            s, user=get_user(s), customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"]
        )
        sample_id = smp.id
    r = client.get(f"/admin/samples/{sample_id}/label.pdf")
    assert r.status_code == 200
    assert r.mimetype == "application/pdf"
    assert r.data.startswith(b"%PDF")


def test_label_qr_links_to_scan_page(client, masters, app, monkeypatch):
    encoded = []
    real_qr = lims_pdf.qr_png

    def recording_qr(data, **kw):
        encoded.append(data)
        return real_qr(data, **kw)

    monkeypatch.setattr(lims_pdf, "qr_png", recording_qr)
    with session_scope(app) as s:
        smp = create_sample(
            s, user=get_user(s), customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"]
        )
        sample_id = smp.id
    assert client.get(f"/admin/samples/{sample_id}/label.pdf").status_code == 200
    assert encoded == [f"http://localhost/scan/{sample_id}"]

    app.config["PUBLIC_BASE_URL"] = "https://lims.example.com"
    client.get(f"/admin/samples/{sample_id}/label.pdf")
    assert encoded[-1] == f"https://lims.example.com/scan/{sample_id}"


def test_scan_page_shows_sample_and_results(client, masters, app):
    with session_scope(app) as s:
        smp = create_sample(
            s,
            user=get_user(s),
            customer_id=masters["customer_id"],
            sample_type_id=masters["sample_type_id"],
            sample_point="Tank 4",
        )
        _enter_all(s, smp, get_user(s), value="831.5")
        sample_id, number = smp.id, smp.sample_number
    r = client.get(f"/scan/{sample_id}")
    assert r.status_code == 200
    for text in (number, "Al Noor Shipping", "Diesel", "Tank 4", "Density @15C", "831.5"):
        assert text.encode() in r.data


def test_scan_page_is_lab_scoped_and_needs_login(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        live = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        gone = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        delete_sample(s, gone, user=admin)
        live_id, gone_id = live.id, gone.id

    anon = app.test_client()
    r = anon.get(f"/scan/{live_id}")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]

    other = app.test_client()
    login(other, "other")
    assert other.get(f"/scan/{live_id}").status_code == 404

    own = app.test_client()
    login(own)
    assert own.get(f"/scan/{gone_id}").status_code == 404


def _sampler(s, admin):
    role = next(r for r in list_roles(s, admin.lab_id) if r.name == "Sampler")
    return create_user(
        s,
        {"username": "sampler1", "name": "Yusuf", "password": "sampler-pass-1", "role_id": role.id},
        actor=admin,
    )


def test_list_my_collections(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        sampler = _sampler(s, admin)
        own = create_sample(s, user=sampler, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        for_sampler = create_sample(
            s,
            user=admin,
            customer_id=masters["customer_id"],
            sample_type_id=masters["sample_type_id"],
            collected_by_id=sampler.id,
        )
        trashed = create_sample(s, user=sampler, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
        delete_sample(s, trashed, user=admin)
        admins = create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])

        assert {x.id for x in list_my_collections(s, sampler)} == {own.id, for_sampler.id}
        assert [x.id for x in list_my_collections(s, admin)] == [admins.id]
        assert list_my_collections(s, get_user(s, "other")) == []


def test_collections_page(app, masters):
    with session_scope(app) as s:
        _sampler(s, get_user(s))
    c = app.test_client()
    login(c, "sampler1", "sampler-pass-1")
    r = c.get("/admin/samples/collections")
    assert r.status_code == 200
    assert b"You have not collected any samples yet." in r.data

    with session_scope(app) as s:
        sampler_id = get_user(s, "sampler1").id
    r = c.post(
        "/admin/samples/new",
        data={
            "customer_id": str(masters["customer_id"]),
            "sample_type_id": str(masters["sample_type_id"]),
            "collected_by_id": str(sampler_id),
            "collection_location": "Jebel Ali berth 7",
        },
        follow_redirects=True,
    )
    assert b"created." in r.data
    r = c.get("/admin/samples/collections")
    assert b"Jebel Ali berth 7" in r.data
    assert b"SPL-" in r.data


def test_collections_page_needs_create_permission(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        chemist_role = next(r for r in list_roles(s, admin.lab_id) if r.name == "Chemist")
        create_user(
            s,
            {"username": "chem2", "name": "Ravi", "password": "chem-pass-1", "role_id": chemist_role.id},
            actor=admin,
        )
    c = app.test_client()
    login(c, "chem2", "chem-pass-1")
    assert c.get("/admin/samples/collections").status_code == 403
