"""
Accounts service layer: quotations, contracts and invoices.

Amounts are Decimal throughout. Line totals are qty x unit price; tax is
subtotal x rate / 100 rounded half-up to 2 places.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.lims.audit import record_event
from app.lims.constants import CONTRACT_STATUSES, INVOICE_STATUSES, INVOICE_TYPES, QUOTATION_STATUSES
from app.lims.db import get_scoped
from app.lims.models import User
from app.lims.modules.customers.models import Customer
from app.lims.modules.samples.models import Sample
from app.lims.numbering import generate_next_number

from .models import Contract, ContractItem, Invoice, InvoiceItem, Quotation, QuotationItem

CENT = Decimal("0.01")
DEFAULT_TAX_RATE = Decimal("5")

QUOTATION_TRANSITIONS = {
    "draft": {"sent", "accepted", "rejected"},
    "sent": {"accepted", "rejected", "expired"},
}
CONTRACT_TRANSITIONS = {
    "draft": {"active", "cancelled"},
    "active": {"completed", "cancelled"},
}
INVOICE_TRANSITIONS = {
    "draft": {"sent", "paid", "cancelled"},
    "sent": {"paid", "overdue", "cancelled"},
    "overdue": {"paid", "cancelled"},
}
CLOSED_PROFORMA_STATUSES = frozenset({"converted", "consolidated"})
CONVERTIBLE_PROFORMA_STATUSES = frozenset({"draft", "sent", "overdue", "paid"})


@dataclass(frozen=True)
class LineInput:
    description: str
    quantity: Decimal
    unit_price: Decimal
    sample_id: int | None = None

    @property
    def total(self) -> Decimal:
        return (self.quantity * self.unit_price).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal


def to_decimal(raw: Any, *, field: str) -> Decimal:
    try:
        value = raw if isinstance(raw, Decimal) else Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"{field} must be a number.") from None
    # rejects nan, snan and infinity
    if not value.is_finite():
        raise ValueError(f"{field} must be a number.")
    return value


def parse_lines(raw_items: list[dict[str, Any]]) -> list[LineInput]:
    lines: list[LineInput] = []
    for i, raw in enumerate(raw_items, start=1):
        description = (str(raw.get("description") or "")).strip()
        if not description:
            continue
        qty = to_decimal(raw.get("quantity") or "1", field=f"Line {i} quantity")
        price = to_decimal(raw.get("unit_price") or "0", field=f"Line {i} unit price")
        if qty <= 0:
            raise ValueError(f"Line {i} quantity must be greater than zero.")
        if price < 0:
            raise ValueError(f"Line {i} unit price cannot be negative.")
        sample_id = raw.get("sample_id")
        lines.append(
            LineInput(
                description=description,
                quantity=qty,
                unit_price=price,
                sample_id=int(sample_id) if sample_id not in (None, "") else None,
            )
        )
    if not lines:
        raise ValueError("Add at least one line item.")
    return lines


def compute_totals(lines: list[LineInput], tax_rate: Any = None) -> Totals:
    rate = DEFAULT_TAX_RATE if tax_rate in (None, "") else to_decimal(tax_rate, field="Tax rate")
    if rate < 0:
        raise ValueError("Tax rate cannot be negative.")
    subtotal = sum((ln.total for ln in lines), Decimal("0")).quantize(CENT)
    tax = (subtotal * rate / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
    return Totals(subtotal=subtotal, tax_rate=rate, tax_amount=tax, total=subtotal + tax)


def _apply_totals(doc, totals: Totals) -> None:
    doc.subtotal = totals.subtotal
    doc.tax_rate = totals.tax_rate
    doc.tax_amount = totals.tax_amount
    doc.total = totals.total


def _billable_customer(s: Session, lab_id: int, customer_id: int | None) -> Customer:
    return get_scoped(s, Customer, customer_id, lab_id, label="Customer")


def _check_samples(s: Session, lab_id: int, lines: list[LineInput]) -> None:
    for ln in lines:
        if ln.sample_id is not None:
            get_scoped(s, Sample, ln.sample_id, lab_id, label="Sample")


def _make_items(item_cls, lines: list[LineInput]) -> list:
    return [
        item_cls(
            description=ln.description,
            quantity=ln.quantity,
            unit_price=ln.unit_price,
            total=ln.total,
            sample_id=ln.sample_id,
        )
        for ln in lines
    ]


def _copy_items(item_cls, sources: list) -> list:
    return [
        item_cls(
            description=it.description,
            quantity=it.quantity,
            unit_price=it.unit_price,
            total=it.total,
            sample_id=it.sample_id,
        )
        for it in sources
    ]


def _check_transition(kind: str, transitions: dict[str, set[str]], valid: tuple[str, ...], old: str, new: str) -> None:
    if new not in valid:
        raise ValueError(f"Invalid {kind} status: {new}")
    if new not in transitions.get(old, set()):
        raise ValueError(f"Cannot change {kind} status from '{old}' to '{new}'.")


# ---------- Quotations ----------


def list_quotations(s: Session, lab_id: int, *, status: str = "", customer_id: int | None = None) -> list[Quotation]:
    q = s.query(Quotation).filter(Quotation.lab_id == lab_id)
    if status:
        q = q.filter(Quotation.status == status)
    if customer_id:
        q = q.filter(Quotation.customer_id == customer_id)
    return q.order_by(Quotation.created_at.desc(), Quotation.id.desc()).all()


def create_quotation(
    s: Session,
    *,
    user: User,
    customer_id: int | None,
    items: list[dict[str, Any]],
    valid_until: date | None = None,
    notes: str | None = None,
    tax_rate: Any = None,
) -> Quotation:
    customer = _billable_customer(s, user.lab_id, customer_id)
    lines = parse_lines(items)
    _check_samples(s, user.lab_id, lines)
    totals = compute_totals(lines, tax_rate)
    number, _ = generate_next_number(s, user.lab_id, "quotation", "QUO")
    now = datetime.utcnow()
    quo = Quotation(
        lab_id=user.lab_id,
        quotation_number=number,
        customer_id=customer.id,
        status="draft",
        valid_until=valid_until,
        notes=(notes or "").strip() or None,
        created_by_id=user.id,
        created_at=now,
        updated_at=now,
    )
    _apply_totals(quo, totals)
    quo.items = _make_items(QuotationItem, lines)
    s.add(quo)
    s.flush()
    record_event(
        s,
        actor=user,
        module="accounts",
        action="create",
        details=f"Created quotation {number}",
        entity_type="Quotation",
        entity_id=quo.id,
    )
    return quo


def update_quotation(
    s: Session,
    quo: Quotation,
    *,
    user: User,
    items: list[dict[str, Any]],
    valid_until: date | None = None,
    notes: str | None = None,
    tax_rate: Any = None,
) -> Quotation:
    if quo.status != "draft":
        raise ValueError("Can only edit quotations with draft status")
    lines = parse_lines(items)
    _check_samples(s, quo.lab_id, lines)
    _apply_totals(quo, compute_totals(lines, tax_rate))
    quo.items = _make_items(QuotationItem, lines)
    quo.valid_until = valid_until
    quo.notes = (notes or "").strip() or None
    quo.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        module="accounts",
        action="edit",
        details=f"Updated quotation {quo.quotation_number}",
        entity_type="Quotation",
        entity_id=quo.id,
    )
    return quo


def update_quotation_status(s: Session, quo: Quotation, status: str, *, user: User) -> Quotation:
    _check_transition("quotation", QUOTATION_TRANSITIONS, QUOTATION_STATUSES, quo.status, status)
    quo.status = status
    if status == "accepted":
        quo.accepted_date = datetime.utcnow()
    quo.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        module="accounts",
        action="edit",
        details=f"Updated quotation {quo.quotation_number} status to {status}",
        entity_type="Quotation",
        entity_id=quo.id,
    )
    return quo


def delete_quotation(s: Session, quo: Quotation, *, user: User) -> None:
    if quo.status != "draft":
        raise ValueError("Can only delete quotations with draft status")
    record_event(
        s,
        actor=user,
        module="accounts",
        action="delete",
        details=f"Deleted quotation {quo.quotation_number}",
        entity_type="Quotation",
        entity_id=quo.id,
    )
    s.delete(quo)


def convert_quotation_to_contract(s: Session, quo: Quotation, *, user: User) -> Contract:
    if quo.status != "accepted":
        raise ValueError("Can only convert accepted quotations to contracts")
    number, _ = generate_next_number(s, quo.lab_id, "contract", "CON")
    now = datetime.utcnow()
    con = Contract(
        lab_id=quo.lab_id,
        contract_number=number,
        customer_id=quo.customer_id,
        quotation_id=quo.id,
        status="draft",
        subtotal=quo.subtotal,
        tax_rate=quo.tax_rate,
        tax_amount=quo.tax_amount,
        total=quo.total,
        notes=quo.notes,
        created_by_id=user.id,
        created_at=now,
        updated_at=now,
    )
    con.items = _copy_items(ContractItem, quo.items)
    s.add(con)
    quo.status = "converted"
    quo.updated_at = now
    s.flush()
    quo.contracts.append(con)
    record_event(
        s,
        actor=user,
        module="accounts",
        action="create",
        details=f"Converted quotation {quo.quotation_number} to contract {number}",
        entity_type="Contract",
        entity_id=con.id,
        metadata={"quotation_id": quo.id},
    )
    return con


# ---------- Contracts ----------


def list_contracts(s: Session, lab_id: int, *, status: str = "", customer_id: int | None = None) -> list[Contract]:
    q = s.query(Contract).filter(Contract.lab_id == lab_id)
    if status:
        q = q.filter(Contract.status == status)
    if customer_id:
        q = q.filter(Contract.customer_id == customer_id)
    return q.order_by(Contract.created_at.desc(), Contract.id.desc()).all()


def _check_dates(start: date | None, end: date | None) -> None:
    if start and end and end < start:
        raise ValueError("End date cannot be before start date.")


def create_contract(
    s: Session,
    *,
    user: User,
    customer_id: int | None,
    items: list[dict[str, Any]],
    start_date: date | None = None,
    end_date: date | None = None,
    terms: str | None = None,
    notes: str | None = None,
    tax_rate: Any = None,
) -> Contract:
    customer = _billable_customer(s, user.lab_id, customer_id)
    _check_dates(start_date, end_date)
    lines = parse_lines(items)
    _check_samples(s, user.lab_id, lines)
    totals = compute_totals(lines, tax_rate)
    number, _ = generate_next_number(s, user.lab_id, "contract", "CON")
    now = datetime.utcnow()
    con = Contract(
        lab_id=user.lab_id,
        contract_number=number,
        customer_id=customer.id,
        status="draft",
        start_date=start_date,
        end_date=end_date,
        terms=(terms or "").strip() or None,
        notes=(notes or "").strip() or None,
        created_by_id=user.id,
        created_at=now,
        updated_at=now,
    )
    _apply_totals(con, totals)
    con.items = _make_items(ContractItem, lines)
    s.add(con)
    s.flush()
    record_event(
        s,
        actor=user,
        module="accounts",
        action="create",
        details=f"Created contract {number}",
        entity_type="Contract",
        entity_id=con.id,
    )
    return con


def update_contract(
    s: Session,
    con: Contract,
    *,
    user: User,
    items: list[dict[str, Any]],
    start_date: date | None = None,
    end_date: date | None = None,
    terms: str | None = None,
    notes: str | None = None,
    tax_rate: Any = None,
) -> Contract:
    if con.status != "draft":
        raise ValueError("Can only edit contracts with draft status")
    _check_dates(start_date, end_date)
    lines = parse_lines(items)
    _check_samples(s, con.lab_id, lines)
    _apply_totals(con, compute_totals(lines, tax_rate))
    con.items = _make_items(ContractItem, lines)
    con.start_date = start_date
    con.end_date = end_date
    con.terms = (terms or "").strip() or None
    con.notes = (notes or "").strip() or None
    con.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        module="accounts",
        action="edit",
        details=f"Updated contract {con.contract_number}",
        entity_type="Contract",
        entity_id=con.id,
    )
    return con


def update_contract_status(s: Session, con: Contract, status: str, *, user: User) -> Contract:
    _check_transition("contract", CONTRACT_TRANSITIONS, CONTRACT_STATUSES, con.status, status)
    con.status = status
    con.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        module="accounts",
        action="edit",
        details=f"Updated contract {con.contract_number} status to {status}",
        entity_type="Contract",
        entity_id=con.id,
    )
    return con


def delete_contract(s: Session, con: Contract, *, user: User) -> None:
    if con.status != "draft":
        raise ValueError("Can only delete contracts with draft status")
    record_event(
        s,
        actor=user,
        module="accounts",
        action="delete",
        details=f"Deleted contract {con.contract_number}",
        entity_type="Contract",
        entity_id=con.id,
    )
    s.delete(con)


# ---------- Invoices ----------


def list_invoices(
    s: Session,
    lab_id: int,
    *,
    status: str = "",
    invoice_type: str = "",
    customer_id: int | None = None,
) -> list[Invoice]:
    q = s.query(Invoice).filter(Invoice.lab_id == lab_id, Invoice.deleted_at.is_(None))
    if status:
        q = q.filter(Invoice.status == status)
    if invoice_type:
        q = q.filter(Invoice.invoice_type == invoice_type)
    if customer_id:
        q = q.filter(Invoice.customer_id == customer_id)
    return q.order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()


def _next_invoice_number(s: Session, lab_id: int, invoice_type: str) -> str:
    if invoice_type == "proforma":
        number, _ = generate_next_number(s, lab_id, "proforma", "PI")
    else:
        number, _ = generate_next_number(s, lab_id, "invoice", "INV")
    return number


def create_invoice(
    s: Session,
    *,
    user: User,
    customer_id: int | None,
    items: list[dict[str, Any]],
    invoice_type: str = "tax",
    due_date: date | None = None,
    notes: str | None = None,
    tax_rate: Any = None,
) -> Invoice:
    invoice_type = (invoice_type or "tax").strip()
    if invoice_type not in INVOICE_TYPES:
        raise ValueError(f"Invalid invoice type: {invoice_type}")
    customer = _billable_customer(s, user.lab_id, customer_id)
    lines = parse_lines(items)
    _check_samples(s, user.lab_id, lines)
    totals = compute_totals(lines, tax_rate)
    number = _next_invoice_number(s, user.lab_id, invoice_type)
    now = datetime.utcnow()
    inv = Invoice(
        lab_id=user.lab_id,
        invoice_number=number,
        invoice_type=invoice_type,
        customer_id=customer.id,
        status="draft",
        due_date=due_date,
        notes=(notes or "").strip() or None,
        created_by_id=user.id,
        created_at=now,
        updated_at=now,
    )
    _apply_totals(inv, totals)
    inv.items = _make_items(InvoiceItem, lines)
    s.add(inv)
    s.flush()
    record_event(
        s,
        actor=user,
        module="accounts",
        action="create",
        details=f"Created {'proforma' if invoice_type == 'proforma' else 'invoice'} {number}",
        entity_type="Invoice",
        entity_id=inv.id,
    )
    return inv


def update_invoice(
    s: Session,
    inv: Invoice,
    *,
    user: User,
    items: list[dict[str, Any]],
    due_date: date | None = None,
    notes: str | None = None,
    tax_rate: Any = None,
) -> Invoice:
    if inv.deleted_at is not None or inv.status != "draft":
        raise ValueError("Can only edit invoices with draft status")
    lines = parse_lines(items)
    _check_samples(s, inv.lab_id, lines)
    _apply_totals(inv, compute_totals(lines, tax_rate))
    inv.items = _make_items(InvoiceItem, lines)
    inv.due_date = due_date
    inv.notes = (notes or "").strip() or None
    inv.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        module="accounts",
        action="edit",
        details=f"Updated invoice {inv.invoice_number}",
        entity_type="Invoice",
        entity_id=inv.id,
    )
    return inv


def update_invoice_status(s: Session, inv: Invoice, status: str, *, user: User) -> Invoice:
    if inv.deleted_at is not None:
        raise ValueError("Invoice is in trash.")
    _check_transition("invoice", INVOICE_TRANSITIONS, INVOICE_STATUSES, inv.status, status)
    now = datetime.utcnow()
    inv.status = status
    if status == "paid":
        inv.paid_date = now
    inv.updated_at = now
    record_event(
        s,
        actor=user,
        module="accounts",
        action="edit",
        details=f"Updated invoice {inv.invoice_number} status to {status}",
        entity_type="Invoice",
        entity_id=inv.id,
    )
    return inv


def delete_invoice(s: Session, inv: Invoice, *, user: User) -> None:
    """
    Draft invoices only; moves the invoice to trash.

    Trashing a tax invoice made by conversion or consolidation reopens its proformas.
    """
    if inv.status != "draft":
        raise ValueError("Can only delete invoices with draft status")
    if inv.deleted_at is not None:
        raise ValueError("Invoice is already in trash.")
    inv.deleted_at = datetime.utcnow()
    inv.deleted_by_id = user.id
    record_event(
        s,
        actor=user,
        module="accounts",
        action="delete",
        details=f"Moved invoice {inv.invoice_number} to trash",
        entity_type="Invoice",
        entity_id=inv.id,
    )
    reopen_source_proformas(s, inv, user=user)


def reopen_source_proformas(s: Session, tax_inv: Invoice, *, user: User) -> list[Invoice]:
    """Proformas converted or consolidated into tax_inv go back to draft, unlinked."""
    s.flush()
    sources = (
        s.query(Invoice)
        .filter(
            Invoice.lab_id == tax_inv.lab_id,
            or_(Invoice.converted_to_id == tax_inv.id, Invoice.consolidated_into_id == tax_inv.id),
        )
        .order_by(Invoice.id.asc())
        .all()
    )
    if not sources:
        return []
    now = datetime.utcnow()
    for src in sources:
        src.status = "draft"
        src.converted_to_id = None
        src.consolidated_into_id = None
        src.updated_at = now
    record_event(
        s,
        actor=user,
        module="accounts",
        action="edit",
        details=f"Reopened {', '.join(src.invoice_number for src in sources)} after removing {tax_inv.invoice_number}",
        entity_type="Invoice",
        entity_id=tax_inv.id,
        metadata={"proforma_ids": [src.id for src in sources]},
    )
    return sources


def _check_open_proforma(inv: Invoice) -> None:
    if inv.deleted_at is not None:
        raise ValueError(f"Invoice {inv.invoice_number} is in trash.")
    if inv.invoice_type != "proforma":
        raise ValueError(f"Invoice {inv.invoice_number} is not a proforma invoice.")
    if inv.status in CLOSED_PROFORMA_STATUSES:
        raise ValueError(f"Proforma {inv.invoice_number} has already been {inv.status}.")
    if inv.status not in CONVERTIBLE_PROFORMA_STATUSES:
        raise ValueError(f"Proforma {inv.invoice_number} is {inv.status} and cannot be converted.")


def convert_proforma_to_tax(s: Session, proforma: Invoice, *, user: User) -> Invoice:
    _check_open_proforma(proforma)
    number = _next_invoice_number(s, proforma.lab_id, "tax")
    now = datetime.utcnow()
    tax_inv = Invoice(
        lab_id=proforma.lab_id,
        invoice_number=number,
        invoice_type="tax",
        customer_id=proforma.customer_id,
        status="draft",
        due_date=proforma.due_date,
        notes=proforma.notes,
        subtotal=proforma.subtotal,
        tax_rate=proforma.tax_rate,
        tax_amount=proforma.tax_amount,
        total=proforma.total,
        created_by_id=user.id,
        created_at=now,
        updated_at=now,
    )
    tax_inv.items = _copy_items(InvoiceItem, proforma.items)
    s.add(tax_inv)
    s.flush()
    proforma.status = "converted"
    proforma.converted_to_id = tax_inv.id
    proforma.updated_at = now
    record_event(
        s,
        actor=user,
        module="accounts",
        action="create",
        details=f"Converted proforma {proforma.invoice_number} to tax invoice {number}",
        entity_type="Invoice",
        entity_id=tax_inv.id,
        metadata={"proforma_id": proforma.id},
    )
    return tax_inv


def consolidate_proformas(s: Session, lab_id: int, invoice_ids: list[int], *, user: User) -> Invoice:
    """Merge two or more open proformas of one customer into a single tax invoice."""
    ids = list(dict.fromkeys(invoice_ids))
    if len(ids) < 2:
        raise ValueError("Select at least 2 proforma invoices to consolidate")
    sources = [get_scoped(s, Invoice, i, lab_id, label="Invoice") for i in ids]
    for inv in sources:
        _check_open_proforma(inv)
    if len({inv.customer_id for inv in sources}) != 1:
        raise ValueError("All proforma invoices must belong to the same customer")

    subtotal = sum((inv.subtotal for inv in sources), Decimal("0"))
    tax_amount = sum((inv.tax_amount for inv in sources), Decimal("0"))
    rates = {inv.tax_rate for inv in sources}
    if len(rates) == 1:
        rate = rates.pop()
    elif subtotal:
        rate = (tax_amount * Decimal("100") / subtotal).quantize(CENT, rounding=ROUND_HALF_UP)
    else:
        rate = DEFAULT_TAX_RATE

    number = _next_invoice_number(s, lab_id, "tax")
    now = datetime.utcnow()
    source_numbers = ", ".join(inv.invoice_number for inv in sources)
    tax_inv = Invoice(
        lab_id=lab_id,
        invoice_number=number,
        invoice_type="tax",
        customer_id=sources[0].customer_id,
        status="draft",
        due_date=max((inv.due_date for inv in sources if inv.due_date), default=None),
        notes=f"Consolidated from {source_numbers}",
        subtotal=subtotal,
        tax_rate=rate,
        tax_amount=tax_amount,
        total=sum((inv.total for inv in sources), Decimal("0")),
        created_by_id=user.id,
        created_at=now,
        updated_at=now,
    )
    tax_inv.items = [item for inv in sources for item in _copy_items(InvoiceItem, inv.items)]
    s.add(tax_inv)
    s.flush()
    for inv in sources:
        inv.status = "consolidated"
        inv.consolidated_into_id = tax_inv.id
        inv.updated_at = now
    record_event(
        s,
        actor=user,
        module="accounts",
        action="create",
        details=f"Consolidated {source_numbers} into tax invoice {number}",
        entity_type="Invoice",
        entity_id=tax_inv.id,
        metadata={"proforma_ids": ids},
    )
    return tax_inv
