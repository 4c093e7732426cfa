"""Zoho Books client and customer sync against a fake HTTP layer."""
import io
import json
import urllib.error
import urllib.request
from urllib.parse import parse_qs, urlsplit

import pytest

from app.lims.db import session_scope
from app.lims.models import Lab
from app.lims.modules.customers.models import Customer
from app.lims.modules.zoho_sync.models import ZohoSyncRun
from app.lims.modules.zoho_sync.service import (
    check_connection,
    customer_fields_from_contact,
    format_address,
    recent_runs,
    sync_customers,
)
from app.lims.modules.zoho_sync.zoho_client import ZohoClient, ZohoError, accounts_url_for
from tests.conftest import get_user

AL_NOOR = {
    "contact_id": "z-100",
    "contact_name": "Al Noor Shipping",
    "payment_terms_label": "Net 30",
    "tax_id": "100200300400003",
    "billing_address": {"address": "Port Rashid", "city": "Dubai", "country": "UAE"},
    "contact_persons": [
        {"first_name": "Omar", "last_name": "Saeed", "email": "omar@alnoor.test", "mobile": "+971 50 111 2222"},
        {"first_name": "Huda", "last_name": "", "email": "huda@alnoor.test", "designation": "Accounts"},
    ],
}
BLUE_OCEAN = {
    "contact_id": "z-200",
    "contact_name": "Blue Ocean Fuels",
    "company_name": "Blue Ocean Fuels LLC",
    "status": "inactive",
    "payment_terms": 15,
}
NO_ID = {"contact_id": "", "contact_name": "Ghost Trading"}


class _Response:
    def __init__(self, payload):
        self._body = json.dumps(payload).encode("utf-8")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self):
        return self._body


class FakeZoho:
    """Stands in for urllib.request.urlopen; serves token, organizations and paged contacts."""

    def __init__(self, pages, *, unauthorized=0, contacts_error=None):
        self.pages = pages
        self.unauthorized = unauthorized
        self.contacts_error = contacts_error
        self.token_requests = 0
        self.requests = []

    def __call__(self, req, timeout=None):
        url = req.full_url
        self.requests.append(req)
        if "/oauth/v2/token" in url:
            self.token_requests += 1
            return _Response({"access_token": f"tok-{self.token_requests}", "expires_in": 3600})
        if self.unauthorized:
            self.unauthorized -= 1
            raise urllib.error.HTTPError(url, 401, "Unauthorized", {}, io.BytesIO(b'{"code": 57}'))
        path = urlsplit(url).path
        if path.endswith("/organizations"):
            return _Response({"organizations": [{"organization_id": "42", "name": "Gulf Fuel Lab FZE"}]})
        if path.endswith("/contacts"):
            if self.contacts_error:
                raise urllib.error.HTTPError(url, self.contacts_error, "Error", {}, io.BytesIO(b"boom"))
            page = int(parse_qs(urlsplit(url).query)["page"][0])
            return _Response(
                {"contacts": self.pages[page - 1], "page_context": {"has_more_page": page < len(self.pages)}}
            )
        raise AssertionError(f"unexpected request {url}")


@pytest.fixture()
def configured(app):
    with session_scope(app) as s:
        lab = s.get(Lab, get_user(s).lab_id)
        lab.zoho_client_id = "client-id"
        lab.zoho_client_secret = "client-secret"
        lab.zoho_refresh_token = "refresh-token"
        lab.zoho_org_id = "42"
        lab.zoho_api_domain = "https://www.zohoapis.com"
        return lab.id


def _install(monkeypatch, fake):
    monkeypatch.setattr(urllib.request, "urlopen", fake)
    return fake


def test_accounts_url_for():
    assert accounts_url_for("https://www.zohoapis.eu/") == "https://accounts.zoho.eu"
    assert accounts_url_for("https://unknown.example") == "https://accounts.zoho.com"


def test_client_requires_credentials(app):
    with session_scope(app) as s:
        lab = s.get(Lab, get_user(s).lab_id)
        with pytest.raises(ValueError, match="not configured"):
            ZohoClient.from_lab(lab)
        result = check_connection(lab)
        assert result.ok is False
        assert "not configured" in result.message


def test_check_connection(app, configured, monkeypatch):
    fake = _install(monkeypatch, FakeZoho([[]]))
    with session_scope(app) as s:
        result = check_connection(s.get(Lab, configured))
    assert result.ok is True
    assert result.org_name == "Gulf Fuel Lab FZE"
    api_call = fake.requests[-1]
    assert api_call.get_header("Authorization") == "Zoho-oauthtoken tok-1"
    assert "organization_id=42" in api_call.full_url


def test_token_is_cached_between_calls(app, configured, monkeypatch):
    fake = _install(monkeypatch, FakeZoho([[AL_NOOR]]))
    with session_scope(app) as s:
        client = ZohoClient.from_lab(s.get(Lab, configured))
    client.list_organizations()
    client.fetch_all_contacts()
    assert fake.token_requests == 1


def test_unauthorized_refreshes_token_once(app, configured, monkeypatch):
    fake = _install(monkeypatch, FakeZoho([[AL_NOOR]], unauthorized=1))
    with session_scope(app) as s:
        client = ZohoClient.from_lab(s.get(Lab, configured))
    assert [c["contact_id"] for c in client.fetch_all_contacts()] == ["z-100"]
    assert fake.token_requests == 2


def test_repeated_unauthorized_raises(app, configured, monkeypatch):
    _install(monkeypatch, FakeZoho([[AL_NOOR]], unauthorized=2))
    with session_scope(app) as s:
        client = ZohoClient.from_lab(s.get(Lab, configured))
    with pytest.raises(ZohoError, match="401"):
        client.fetch_all_contacts()


def test_contacts_are_paged(app, configured, monkeypatch):
    fake = _install(monkeypatch, FakeZoho([[AL_NOOR], [BLUE_OCEAN], [NO_ID]]))
    with session_scope(app) as s:
        client = ZohoClient.from_lab(s.get(Lab, configured))
    contacts = client.fetch_all_contacts()
    assert len(contacts) == 3
    pages = [parse_qs(urlsplit(r.full_url).query)["page"][0] for r in fake.requests if "/contacts" in r.full_url]
    assert pages == ["1", "2", "3"]


def test_field_mapping():
    fields = customer_fields_from_contact(AL_NOOR)
    assert fields["zoho_contact_id"] == "z-100"
    assert fields["email"] == "omar@alnoor.test"
    assert fields["phone"] == "+971 50 111 2222"
    assert fields["contact_person"] == "Omar Saeed"
    assert fields["address"] == "Port Rashid, Dubai, UAE"
    assert fields["trn"] == "100200300400003"
    assert fields["payment_term"] == "Net 30"
    assert fields["status"] == "active"

    blue = customer_fields_from_contact(BLUE_OCEAN)
    assert blue["status"] == "inactive"
    assert blue["payment_term"] == "15"
    assert blue["contact_person"] is None
    assert format_address({}) is None


def test_sync_creates_and_matches(app, masters, configured, monkeypatch):
    _install(monkeypatch, FakeZoho([[AL_NOOR, BLUE_OCEAN], [NO_ID]]))
    with session_scope(app) as s:
        run = sync_customers(s, user=get_user(s))
        assert (run.created_count, run.updated_count, run.total_count) == (1, 1, 3)
        assert run.ok is True

    with session_scope(app) as s:
        al_noor = s.get(Customer, masters["customer_id"])
        assert al_noor.zoho_contact_id == "z-100"
        assert al_noor.email == "omar@alnoor.test"
        assert sorted(cp.name for cp in al_noor.contacts) == ["Huda", "Omar Saeed"]
        blue = s.query(Customer).filter(Customer.zoho_contact_id == "z-200").one()
        assert blue.code.startswith("SP-BLU-")
        assert blue.status == "inactive"
        assert blue.company == "Blue Ocean Fuels LLC"
        assert s.query(Customer).filter(Customer.name == "Ghost Trading").count() == 0

    with session_scope(app) as s:
        run = sync_customers(s, user=get_user(s))
        assert (run.created_count, run.updated_count) == (0, 2)
        al_noor = s.get(Customer, masters["customer_id"])
        assert len(al_noor.contacts) == 2


def test_failed_sync_is_recorded(app, configured, monkeypatch):
    _install(monkeypatch, FakeZoho([[]], contacts_error=500))
    with session_scope(app) as s:
        with pytest.raises(ZohoError, match="500"):
            sync_customers(s, user=get_user(s))
    with session_scope(app) as s:
        runs = recent_runs(s, configured)
        assert len(runs) == 1
        assert runs[0].ok is False
        assert "boom" in runs[0].message


def test_sync_routes(client, app, masters, configured, monkeypatch):
    _install(monkeypatch, FakeZoho([[AL_NOOR]]))
    r = client.post("/admin/zoho/test", follow_redirects=True)
    assert b"Connected successfully" in r.data
    r = client.post("/admin/zoho/sync", follow_redirects=True)
    assert b"Sync complete: 0 created, 1 updated" in r.data

    _install(monkeypatch, FakeZoho([[]], contacts_error=503))
    r = client.post("/admin/zoho/sync", follow_redirects=True)
    assert b"Zoho sync failed" in r.data
    with session_scope(app) as s:
        assert s.query(ZohoSyncRun).filter(ZohoSyncRun.ok.is_(False)).count() == 1


def test_sync_without_credentials(client):
    r = client.post("/admin/zoho/sync", follow_redirects=True)
    assert b"not configured" in r.data
