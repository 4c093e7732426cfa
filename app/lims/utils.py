from __future__ import annotations

from datetime import date, datetime

from flask import current_app, request

from app.lims.storage import Storage, storage_from_config


def public_base_url() -> str:
    """PUBLIC_BASE_URL when configured, else the host of the current request."""
    configured = (current_app.config.get("PUBLIC_BASE_URL") or "").strip()
    return (configured or request.host_url).rstrip("/")


def app_storage() -> Storage:
    return storage_from_config(current_app.config)


def parse_form_date(raw: str | None) -> date | None:
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        raise ValueError(f"Invalid date: {raw}") from None


def parse_form_datetime(raw: str | None) -> datetime | None:
    raw = (raw or "").strip()
    if not raw:
        return None
    for fmt in ("%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M", "%Y-%m-%d"):
        try:
            return datetime.strptime(raw, fmt)
        except ValueError:
            continue
    raise ValueError(f"Invalid date: {raw}")


def parse_int(raw: str | None) -> int | None:
    try:
        return int(raw) if raw not in (None, "") else None
    except ValueError:
        return None
