from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.lims.audit import record_event
from app.lims.models import Lab, User
from app.lims.modules.customers.models import ContactPerson, Customer
from app.lims.modules.customers.service import generate_customer_code
from app.lims.modules.zoho_sync.models import ZohoSyncRun
from app.lims.modules.zoho_sync.zoho_client import ZohoClient, ZohoError

logger = logging.getLogger(__name__)


def _safe_text(v: Any) -> str:
    if v is None:
        return ""
    return str(v).strip()


@dataclass(frozen=True)
class ConnectionResult:
    ok: bool
    message: str
    org_name: str | None = None


def check_connection(lab: Lab) -> ConnectionResult:
    try:
        client = ZohoClient.from_lab(lab)
        orgs = client.list_organizations()
    except (ValueError, ZohoError) as e:
        return ConnectionResult(ok=False, message=str(e))
    org = next((o for o in orgs if str(o.get("organization_id")) == client.org_id), None)
    return ConnectionResult(
        ok=True,
        message="Connected successfully",
        org_name=(org or {}).get("name") or "Unknown Organization",
    )


def format_address(addr: dict[str, Any] | None) -> str | None:
    if not addr:
        return None
    parts = [
        _safe_text(addr.get(k))
        for k in ("attention", "address", "street2", "city", "state", "zip", "country")
    ]
    parts = [p for p in parts if p]
    return ", ".join(parts) if parts else None


def _person_name(p: dict[str, Any]) -> str:
    return " ".join(x for x in (_safe_text(p.get("first_name")), _safe_text(p.get("last_name"))) if x)


def customer_fields_from_contact(contact: dict[str, Any]) -> dict[str, Any]:
    """Map a Zoho Books contact onto Customer columns. The first contact person is the primary one."""
    persons = contact.get("contact_persons") or []
    primary = persons[0] if persons else {}
    payment_term = _safe_text(contact.get("payment_terms_label"))
    if not payment_term and contact.get("payment_terms"):
        payment_term = _safe_text(contact.get("payment_terms"))
    return {
        "zoho_contact_id": _safe_text(contact.get("contact_id")),
        "name": _safe_text(contact.get("contact_name")),
        "company": _safe_text(contact.get("company_name")) or None,
        "email": _safe_text(primary.get("email")) or None,
        "phone": _safe_text(primary.get("phone")) or _safe_text(primary.get("mobile")) or None,
        "address": format_address(contact.get("billing_address")),
        "contact_person": (_person_name(primary) or None) if primary else None,
        "trn": _safe_text(contact.get("tax_id")) or _safe_text(contact.get("gst_no")) or None,
        "payment_term": payment_term or None,
        "status": "inactive" if contact.get("status") == "inactive" else "active",
    }


def sync_contact_persons(customer: Customer, zoho_persons: list[dict[str, Any]]) -> None:
    by_name = {cp.name.lower(): cp for cp in customer.contacts}
    now = datetime.utcnow()
    for zp in zoho_persons or []:
        name = _person_name(zp)
        if not name:
            continue
        email = _safe_text(zp.get("email")) or None
        phone = _safe_text(zp.get("phone")) or _safe_text(zp.get("mobile")) or None
        designation = _safe_text(zp.get("designation")) or None
        match = by_name.get(name.lower())
        if match:
            match.email = email
            match.phone = phone
            match.designation = designation
            match.updated_at = now
        else:
            cp = ContactPerson(name=name, email=email, phone=phone, designation=designation, created_at=now, updated_at=now)
            customer.contacts.append(cp)
            by_name[name.lower()] = cp


def sync_customers(s: Session, *, user: User) -> ZohoSyncRun:
    """
    Pull every Zoho Books customer contact into the lab's customers.
    Matching: zoho_contact_id first, then the lower-cased name or company of an unlinked customer.
    A failed fetch is recorded as a run with ok=False and re-raised as ZohoError.
    """
    lab = s.get(Lab, user.lab_id)
    client = ZohoClient.from_lab(lab)
    started = time.time()
    run = ZohoSyncRun(lab_id=lab.id, ran_at=datetime.utcnow())
    s.add(run)

    try:
        contacts = client.fetch_all_contacts()
    except ZohoError as e:
        logger.error("Zoho contact fetch failed lab=%s: %s", lab.id, e)
        run.ok = False
        run.message = str(e)
        run.duration_seconds = int(time.time() - started)
        record_event(s, actor=user, module="masters", action="zoho_sync_failed", details=str(e))
        s.flush()
        raise

    existing = s.query(Customer).filter(Customer.lab_id == lab.id).all()
    by_zoho_id = {c.zoho_contact_id: c for c in existing if c.zoho_contact_id}
    by_name: dict[str, Customer] = {}
    for c in existing:
        by_name.setdefault(c.name.lower(), c)
        if c.company:
            by_name.setdefault(c.company.lower(), c)

    created = updated = 0
    now = datetime.utcnow()
    for contact in contacts:
        fields = customer_fields_from_contact(contact)
        zoho_id = fields["zoho_contact_id"]
        if not zoho_id:
            continue
        customer = by_zoho_id.get(zoho_id)
        if customer is None:
            customer = by_name.get(fields["name"].lower()) or (
                by_name.get(fields["company"].lower()) if fields["company"] else None
            )

        if customer is not None:
            fields["name"] = fields["name"] or customer.name
            for k, v in fields.items():
                setattr(customer, k, v)
            customer.updated_at = now
            updated += 1
        else:
            if not fields["name"]:
                continue
            customer = Customer(
                lab_id=lab.id,
                code=generate_customer_code(s, lab.id, fields["name"]),
                created_at=now,
                updated_at=now,
                **fields,
            )
            s.add(customer)
            s.flush()
            created += 1
        by_zoho_id[zoho_id] = customer
        sync_contact_persons(customer, contact.get("contact_persons") or [])

    run.created_count = created
    run.updated_count = updated
    run.total_count = len(contacts)
    run.duration_seconds = int(time.time() - started)
    run.message = f"Sync complete: {created} created, {updated} updated"
    record_event(
        s,
        actor=user,
        module="masters",
        action="zoho_sync",
        details=f"Zoho customer sync: {created} created, {updated} updated out of {len(contacts)} contacts",
        entity_type="ZohoSyncRun",
        metadata={"created": created, "updated": updated, "total": len(contacts)},
    )
    s.flush()
    return run


def recent_runs(s: Session, lab_id: int, *, limit: int = 20) -> list[ZohoSyncRun]:
    return (
        s.query(ZohoSyncRun)
        .filter(ZohoSyncRun.lab_id == lab_id)
        .order_by(ZohoSyncRun.ran_at.desc(), ZohoSyncRun.id.desc())
        .limit(limit)
        .all()
    )
