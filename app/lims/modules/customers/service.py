from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.lims.audit import record_event
from app.lims.constants import CUSTOMER_STATUSES
from app.lims.csv_io import CsvRowError, ImportResult, iter_csv_rows, write_csv
from app.lims.models import User
from app.lims.modules.customers.models import ContactPerson, Customer

CUSTOMER_CSV_HEADERS = [
    "code",
    "name",
    "company",
    "email",
    "phone",
    "address",
    "contactPerson",
    "trn",
    "paymentTerm",
    "status",
]

_CSV_FIELD_MAP = {
    "name": "name",
    "company": "company",
    "email": "email",
    "phone": "phone",
    "address": "address",
    "contactPerson": "contact_person",
    "trn": "trn",
    "paymentTerm": "payment_term",
    "status": "status",
}

_OPTIONAL_FIELDS = ("company", "email", "phone", "address", "contact_person", "trn", "payment_term")


def _clean(v: Any) -> str | None:
    return (str(v) if v is not None else "").strip() or None


def list_customers(s: Session, lab_id: int, *, search: str = "", status: str = "") -> list[Customer]:
    q = s.query(Customer).filter(Customer.lab_id == lab_id)
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                Customer.name.ilike(like),
                Customer.company.ilike(like),
                Customer.code.ilike(like),
                Customer.email.ilike(like),
            )
        )
    if status:
        q = q.filter(Customer.status == status)
    return q.order_by(Customer.name.asc()).all()


def customer_code_prefix(name: str) -> str:
    """First three letters of the name, uppercased and X-padded: "Al Noor" -> "ALN", "3M" -> "MXX"."""
    letters = re.sub(r"[^a-zA-Z]", "", name or "")
    return letters[:3].upper().ljust(3, "X")


def generate_customer_code(s: Session, lab_id: int, name: str) -> str:
    """SP-{prefix}-{count+1:03d}, skipping forward if that code was already taken."""
    prefix = customer_code_prefix(name)
    n = (s.query(func.count(Customer.id)).filter(Customer.lab_id == lab_id).scalar() or 0) + 1
    while True:
        code = f"SP-{prefix}-{n:03d}"
        taken = s.query(Customer.id).filter(Customer.lab_id == lab_id, Customer.code == code).first()
        if not taken:
            return code
        n += 1


def validate_customer_payload(payload: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    if not _clean(payload.get("name")):
        errors.append("Name is required.")
    status = _clean(payload.get("status"))
    if status and status not in CUSTOMER_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(CUSTOMER_STATUSES)}")
    email = _clean(payload.get("email"))
    if email and "@" not in email:
        errors.append("Email address is invalid.")
    return errors


def create_customer(s: Session, payload: dict[str, Any], *, user: User, code: str | None = None) -> Customer:
    errors = validate_customer_payload(payload)
    if errors:
        raise ValueError(" ".join(errors))
    name = _clean(payload.get("name")) or ""
    now = datetime.utcnow()
    c = Customer(
        lab_id=user.lab_id,
        code=code or generate_customer_code(s, user.lab_id, name),
        name=name,
        status=_clean(payload.get("status")) or "active",
        zoho_contact_id=_clean(payload.get("zoho_contact_id")),
        created_at=now,
        updated_at=now,
    )
    for f in _OPTIONAL_FIELDS:
        setattr(c, f, _clean(payload.get(f)))
    s.add(c)
    s.flush()
    record_event(
        s,
        actor=user,
        module="masters",
        action="create",
        details=f"Created customer {c.code} ({c.name})",
        entity_type="Customer",
        entity_id=c.id,
    )
    return c


def update_customer(s: Session, c: Customer, payload: dict[str, Any], *, user: User) -> Customer:
    errors = validate_customer_payload(payload)
    if errors:
        raise ValueError(" ".join(errors))
    before = {f: getattr(c, f) for f in ("name", "status", *_OPTIONAL_FIELDS)}
    c.name = _clean(payload.get("name")) or c.name
    c.status = _clean(payload.get("status")) or c.status
    for f in _OPTIONAL_FIELDS:
        setattr(c, f, _clean(payload.get(f)))
    c.updated_at = datetime.utcnow()
    after = {f: getattr(c, f) for f in before}
    changed = [k for k in before if before[k] != after[k]]
    record_event(
        s,
        actor=user,
        module="masters",
        action="edit",
        details=f"Updated customer {c.code}",
        entity_type="Customer",
        entity_id=c.id,
        metadata={"fields_changed": changed},
    )
    return c


def delete_customer(s: Session, c: Customer, *, user: User) -> None:
    from app.lims.modules.accounts.models import Contract, Invoice, Quotation
    from app.lims.modules.samples.models import Sample

    sample_count = s.query(func.count(Sample.id)).filter(Sample.customer_id == c.id).scalar() or 0
    if sample_count:
        raise ValueError(
            f"Cannot delete customer. There are {sample_count} sample(s) associated with this customer."
        )
    doc_count = sum(
        s.query(func.count(m.id)).filter(m.customer_id == c.id).scalar() or 0 for m in (Quotation, Contract, Invoice)
    )
    if doc_count:
        raise ValueError(
            f"Cannot delete customer. There are {doc_count} quotation(s), contract(s) or invoice(s) for this customer."
        )
    record_event(
        s,
        actor=user,
        module="masters",
        action="delete",
        details=f"Deleted customer {c.code} ({c.name})",
        entity_type="Customer",
        entity_id=c.id,
    )
    s.delete(c)


# ---------- Contact persons ----------


def add_contact_person(s: Session, c: Customer, payload: dict[str, Any], *, user: User) -> ContactPerson:
    name = _clean(payload.get("name"))
    if not name:
        raise ValueError("Contact name is required.")
    now = datetime.utcnow()
    cp = ContactPerson(
        customer_id=c.id,
        name=name,
        designation=_clean(payload.get("designation")),
        email=_clean(payload.get("email")),
        phone=_clean(payload.get("phone")),
        created_at=now,
        updated_at=now,
    )
    s.add(cp)
    s.flush()
    record_event(
        s,
        actor=user,
        module="masters",
        action="create",
        details=f"Added contact person {cp.name} to {c.code}",
        entity_type="ContactPerson",
        entity_id=cp.id,
    )
    return cp


def update_contact_person(s: Session, cp: ContactPerson, payload: dict[str, Any], *, user: User) -> ContactPerson:
    name = _clean(payload.get("name"))
    if not name:
        raise ValueError("Contact name is required.")
    cp.name = name
    cp.designation = _clean(payload.get("designation"))
    cp.email = _clean(payload.get("email"))
    cp.phone = _clean(payload.get("phone"))
    cp.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        module="masters",
        action="edit",
        details=f"Updated contact person {cp.name}",
        entity_type="ContactPerson",
        entity_id=cp.id,
    )
    return cp


def delete_contact_person(s: Session, cp: ContactPerson, *, user: User) -> None:
    record_event(
        s,
        actor=user,
        module="masters",
        action="delete",
        details=f"Deleted contact person {cp.name}",
        entity_type="ContactPerson",
        entity_id=cp.id,
    )
    s.delete(cp)


# ---------- CSV import / export ----------


def export_customers_csv(s: Session, lab_id: int) -> str:
    customers = s.query(Customer).filter(Customer.lab_id == lab_id).order_by(Customer.code.asc()).all()
    return write_csv(
        CUSTOMER_CSV_HEADERS,
        (
            [c.code, c.name, c.company, c.email, c.phone, c.address, c.contact_person, c.trn, c.payment_term, c.status]
            for c in customers
        ),
    )


def import_customers_csv(s: Session, file_bytes: bytes, *, user: User) -> ImportResult:
    """
    Rows are matched to existing customers by code; unmatched rows are created
    (keeping the CSV code when one is given, otherwise generating one).
    Each row runs in its own savepoint so one bad row does not sink the file.
    """
    result = ImportResult()
    for row_number, row in iter_csv_rows(file_bytes, required=("name",)):
        name = row.get("name", "")
        if not name:
            result.errors.append(CsvRowError(row_number, "Name is required"))
            continue
        payload = {field: row.get(header, "") for header, field in _CSV_FIELD_MAP.items()}
        payload["status"] = payload["status"] or "active"
        code = row.get("code", "")
        try:
            with s.begin_nested():
                existing = None
                if code:
                    existing = (
                        s.query(Customer).filter(Customer.lab_id == user.lab_id, Customer.code == code).one_or_none()
                    )
                if existing:
                    update_customer(s, existing, payload, user=user)
                    result.updated += 1
                else:
                    create_customer(s, payload, user=user, code=code or None)
                    result.created += 1
        except (ValueError, IntegrityError) as e:
            result.errors.append(CsvRowError(row_number, f"({name}) {e}"))

    record_event(
        s,
        actor=user,
        module="admin",
        action="import",
        details=f"Imported customers: {result.created} created, {result.updated} updated",
    )
    return result
