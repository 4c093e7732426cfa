"""Tests for the customers master: codes, contacts, CSV round trips and lab isolation."""
import io

import pytest

from app.lims.db import session_scope
from app.lims.modules.customers.models import Customer
from app.lims.modules.customers.service import (
    add_contact_person,
    create_customer,
    customer_code_prefix,
    delete_customer,
    export_customers_csv,
    import_customers_csv,
)
from app.lims.modules.samples.service import create_sample
from tests.conftest import get_user


def test_customer_code_prefix():
    assert customer_code_prefix("Al Noor Shipping") == "ALN"
    assert customer_code_prefix("3M") == "MXX"
    assert customer_code_prefix("") == "XXX"


def test_customer_codes_count_up_per_lab(app):
    with session_scope(app) as s:
        admin = get_user(s)
        other = get_user(s, "other")
        a = create_customer(s, {"name": "Emirates Marine"}, user=admin)
        b = create_customer(s, {"name": "Emirates Bunkering"}, user=admin)
        c = create_customer(s, {"name": "Emirates Marine"}, user=other)
        assert (a.code, b.code) == ("SP-EMI-001", "SP-EMI-002")
        assert c.code == "SP-EMI-001"
        assert a.status == "active"


def test_customer_validation(app):
    with session_scope(app) as s:
        admin = get_user(s)
        with pytest.raises(ValueError, match="Name is required"):
            create_customer(s, {"name": "  "}, user=admin)
        with pytest.raises(ValueError, match="Email"):
            create_customer(s, {"name": "X", "email": "not-an-email"}, user=admin)
        with pytest.raises(ValueError, match="Invalid status"):
            create_customer(s, {"name": "X", "status": "archived"}, user=admin)


def test_delete_customer_blocked_by_samples(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        create_sample(s, user=admin, customer_id=masters["customer_id"], sample_type_id=masters["sample_type_id"])
    with session_scope(app) as s:
        admin = get_user(s)
        customer = s.get(Customer, masters["customer_id"])
        with pytest.raises(ValueError, match="1 sample"):
            delete_customer(s, customer, user=admin)


def test_delete_customer_cascades_contacts(app, masters):
    with session_scope(app) as s:
        admin = get_user(s)
        c = create_customer(s, {"name": "Short Lived LLC"}, user=admin)
        add_contact_person(s, c, {"name": "Omar", "email": "omar@sl.test"}, user=admin)
        cid = c.id
    with session_scope(app) as s:
        delete_customer(s, s.get(Customer, cid), user=get_user(s))
    with session_scope(app) as s:
        assert s.get(Customer, cid) is None


def test_csv_import_creates_and_updates_by_code(app, masters):
    with session_scope(app) as s:
        existing_code = s.get(Customer, masters["customer_id"]).code
    csv_bytes = (
        "code,name,company,email,phone,address,contactPerson,trn,paymentTerm,status\n"
        f"{existing_code},Al Noor Shipping LLC,,ops@alnoor.test,,,,,Net 30,active\n"
        ",Desert Petroleum,Desert Petroleum FZE,,,,,100200300,,\n"
        ",,,,,,,,,\n"
        ",,Nameless Co,,,,,,,\n"
    ).encode("utf-8")
    with session_scope(app) as s:
        result = import_customers_csv(s, csv_bytes, user=get_user(s))
        assert (result.created, result.updated) == (1, 1)
        assert len(result.errors) == 1
        assert result.errors[0].row_number == 5

    with session_scope(app) as s:
        updated = s.get(Customer, masters["customer_id"])
        assert updated.name == "Al Noor Shipping LLC"
        assert updated.payment_term == "Net 30"
        desert = s.query(Customer).filter(Customer.name == "Desert Petroleum").one()
        assert desert.code == "SP-DES-002"
        assert desert.trn == "100200300"


def test_csv_export_has_header_and_rows(app, masters):
    with session_scope(app) as s:
        text = export_customers_csv(s, get_user(s).lab_id)
    lines = text.strip().splitlines()
    assert lines[0] == "code,name,company,email,phone,address,contactPerson,trn,paymentTerm,status"
    assert "Al Noor Shipping" in lines[1]


def test_csv_import_missing_name_column(app):
    with session_scope(app) as s:
        with pytest.raises(ValueError, match="missing required column"):
            import_customers_csv(s, b"code,company\nX,Y\n", user=get_user(s))


def test_customer_pages_and_contacts(client, masters):
    cid = masters["customer_id"]
    r = client.get(f"/admin/customers/{cid}")
    assert r.status_code == 200
    assert b"Al Noor Shipping" in r.data

    r = client.post(
        f"/admin/customers/{cid}/contacts",
        data={"name": "Fatima Khan", "designation": "QA Lead", "email": "fatima@alnoor.test"},
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"Fatima Khan" in r.data

    r = client.get("/admin/customers?q=noor")
    assert b"Al Noor Shipping" in r.data


def test_customers_are_isolated_between_labs(app, masters):
    c = app.test_client()
    c.post("/auth/login", data={"username": "other", "password": "admin-pass-1"})
    cid = masters["customer_id"]
    assert c.get(f"/admin/customers/{cid}").status_code == 404
    assert c.get(f"/admin/customers/{cid}/edit").status_code == 404
    r = c.get("/admin/customers")
    assert b"Al Noor Shipping" not in r.data


def test_customer_csv_upload_via_import_export(client):
    data = {"file": (io.BytesIO(b"name,email\nPort Fuel Co,info@portfuel.test\n"), "customers.csv")}
    r = client.post("/admin/import-export/customers", data=data, content_type="multipart/form-data", follow_redirects=True)
    assert r.status_code == 200
    r = client.get("/admin/import-export/customers.csv")
    assert r.status_code == 200
    assert b"Port Fuel Co" in r.data
