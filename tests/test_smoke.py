from datetime import datetime, timedelta

import pytest

from app.lims.auth import _login_attempts, check_rate_limit, record_attempt
from tests.conftest import login


def test_health_ok(app):
    c = app.test_client()
    r = c.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert c.get("/healthz").data == b"ok"


def test_login_and_admin_access(app):
    c = app.test_client()
    r = c.get("/admin/")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]

    r = login(c)
    assert r.status_code == 302

    r = c.get("/admin/")
    assert r.status_code == 200
    assert b"Gulf Fuel Lab" in r.data


def test_bad_password_is_rejected(app):
    c = app.test_client()
    r = c.post("/auth/login", data={"username": "admin", "password": "nope"}, follow_redirects=True)
    assert b"Invalid credentials" in r.data
    assert c.get("/admin/").status_code == 302


def test_login_rate_limit(app):
    c = app.test_client()
    for _ in range(5):
        c.post("/auth/login", data={"username": "admin", "password": "wrong"})
    r = c.post("/auth/login", data={"username": "admin", "password": "admin-pass-1"}, follow_redirects=True)
    assert b"Too many login attempts" in r.data
    assert c.get("/admin/").status_code == 302


def test_rate_limit_forgets_stale_keys():
    stale = datetime.utcnow() - timedelta(minutes=10)
    _login_attempts["10.0.0.9"] = [stale, stale]
    assert check_rate_limit("10.0.0.9") is False
    assert "10.0.0.9" not in _login_attempts
    assert check_rate_limit("10.0.0.10") is False
    assert "10.0.0.10" not in _login_attempts

    for _ in range(5):
        record_attempt("10.0.0.11")
    assert check_rate_limit("10.0.0.11") is True
    assert len(_login_attempts["10.0.0.11"]) == 5


def test_logout_clears_session(client):
    client.get("/auth/logout")
    assert client.get("/admin/").status_code == 302


@pytest.mark.parametrize(
    "path",
    [
        "/admin/",
        "/admin/status-tracking",
        "/admin/audit",
        "/admin/trash",
        "/admin/me",
        "/admin/customers",
        "/admin/customers/new",
        "/admin/sample-types",
        "/admin/sample-types/new",
        "/admin/registrations",
        "/admin/registrations/new",
        "/admin/samples",
        "/admin/samples/new",
        "/admin/test-entry",
        "/admin/reports",
        "/admin/report-templates",
        "/admin/report-templates/new",
        "/admin/quotations",
        "/admin/quotations/new",
        "/admin/contracts",
        "/admin/contracts/new",
        "/admin/invoices",
        "/admin/invoices/new",
        "/admin/users",
        "/admin/users/new",
        "/admin/roles",
        "/admin/roles/new",
        "/admin/portal-users",
        "/admin/settings",
        "/admin/import-export",
        "/admin/zoho",
    ],
)
def test_admin_pages_render(client, masters, path):
    r = client.get(path)
    assert r.status_code == 200, path


def test_public_pages(app):
    c = app.test_client()
    assert c.get("/").status_code == 200
    assert c.get("/auth/login").status_code == 200
    assert c.get("/portal/login").status_code == 200
    assert c.get("/verify/not-a-code").status_code == 404
