from __future__ import annotations

import json
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from app.lims.constants import ZOHO_ACCOUNTS_URLS

DEFAULT_API_DOMAIN = "https://www.zohoapis.com"
DEFAULT_ACCOUNTS_URL = "https://accounts.zoho.com"
TOKEN_TTL_SECONDS = 50 * 60  # Zoho access tokens live 60 minutes
CONTACTS_PER_PAGE = 200

# lab_id -> (access_token, expires_at epoch seconds)
_token_cache: dict[int, tuple[str, float]] = {}


class ZohoError(RuntimeError):
    pass


class ZohoAuthError(ZohoError):
    pass


def accounts_url_for(api_domain: str) -> str:
    return ZOHO_ACCOUNTS_URLS.get((api_domain or "").rstrip("/"), DEFAULT_ACCOUNTS_URL)


def clear_token_cache(lab_id: int | None = None) -> None:
    if lab_id is None:
        _token_cache.clear()
    else:
        _token_cache.pop(lab_id, None)


@dataclass(frozen=True)
class ZohoClient:
    lab_id: int
    client_id: str
    client_secret: str
    refresh_token: str
    org_id: str
    api_domain: str = DEFAULT_API_DOMAIN
    timeout_seconds: int = 60

    @classmethod
    def from_lab(cls, lab) -> "ZohoClient":
        """Raises ValueError when any credential is missing."""
        values = {
            "client_id": (lab.zoho_client_id or "").strip(),
            "client_secret": (lab.zoho_client_secret or "").strip(),
            "refresh_token": (lab.zoho_refresh_token or "").strip(),
            "org_id": (lab.zoho_org_id or "").strip(),
        }
        if not all(values.values()):
            raise ValueError("Zoho Books is not configured. Please enter all credentials in Settings.")
        return cls(lab_id=lab.id, api_domain=(lab.zoho_api_domain or DEFAULT_API_DOMAIN).rstrip("/"), **values)

    def _read_json(self, req: urllib.request.Request, what: str) -> dict[str, Any]:
        with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
            raw = resp.read()
        try:
            data = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise ZohoError(f"Invalid JSON from Zoho ({what})") from e
        return data if isinstance(data, dict) else {}

    def access_token(self) -> str:
        cached = _token_cache.get(self.lab_id)
        if cached and cached[1] > time.time():
            return cached[0]

        body = urllib.parse.urlencode(
            {
                "refresh_token": self.refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            }
        ).encode("utf-8")
        req = urllib.request.Request(f"{accounts_url_for(self.api_domain)}/oauth/v2/token", data=body, method="POST")
        req.add_header("Content-Type", "application/x-www-form-urlencoded")
        try:
            data = self._read_json(req, "token")
        except urllib.error.HTTPError as e:
            raise ZohoAuthError(f"Zoho auth failed ({e.code}): {_error_body(e)}") from e
        if data.get("error"):
            raise ZohoAuthError(f"Zoho auth error: {data['error']}")
        token = data.get("access_token")
        if not token:
            raise ZohoAuthError("Zoho auth response had no access_token")
        _token_cache[self.lab_id] = (token, time.time() + TOKEN_TTL_SECONDS)
        return token

    def request_json(self, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        query = {"organization_id": self.org_id}
        query.update({k: v for k, v in (params or {}).items() if v is not None})
        url = f"{self.api_domain}/books/v3/{path.lstrip('/')}?{urllib.parse.urlencode(query)}"

        for attempt in range(2):
            req = urllib.request.Request(url, method="GET")
            req.add_header("Authorization", f"Zoho-oauthtoken {self.access_token()}")
            req.add_header("Accept", "application/json")
            try:
                return self._read_json(req, path)
            except urllib.error.HTTPError as e:
                if e.code == 401 and attempt == 0:
                    # token may have been revoked early
                    clear_token_cache(self.lab_id)
                    continue
                raise ZohoError(f"Zoho API error ({e.code}): {_error_body(e)}") from e
            except urllib.error.URLError as e:
                raise ZohoError(f"Zoho request failed ({path}): {e.reason}") from e
        raise ZohoError(f"Zoho API error (401) after token refresh ({path})")

    def list_organizations(self) -> list[dict[str, Any]]:
        orgs = self.request_json("organizations").get("organizations") or []
        return orgs if isinstance(orgs, list) else []

    def fetch_all_contacts(self) -> list[dict[str, Any]]:
        contacts: list[dict[str, Any]] = []
        page = 1
        while True:
            data = self.request_json(
                "contacts",
                params={"contact_type": "customer", "per_page": CONTACTS_PER_PAGE, "page": page},
            )
            batch = data.get("contacts")
            if isinstance(batch, list):
                contacts.extend(batch)
            ctx = data.get("page_context") or {}
            if not ctx.get("has_more_page"):
                break
            page += 1
        return contacts


def _error_body(e: urllib.error.HTTPError) -> str:
    try:
        return e.read().decode("utf-8", errors="ignore")[:300]
    except (OSError, AttributeError):
        return ""
