"""
Registration and sample service layer.

Registrations expand into samples numbered after the registration:
  REG-260226-001-A01, -A02, -B01 ... when more than one sample type is registered
  REG-260226-001-01, -02 ...        when there is a single sample type
Standalone samples take their own SPL-YYMMDD-NNN number.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.lims.audit import record_event
from app.lims.constants import JOB_TYPES, SAMPLE_PRIORITIES, SAMPLE_STATUSES
from app.lims.db import get_scoped
from app.lims.models import User
from app.lims.modules.customers.models import Customer
from app.lims.modules.sample_types.models import SampleType
from app.lims.numbering import generate_next_number

from .models import Registration, Sample, TestResult

EDITABLE_STATUSES = frozenset({"pending", "registered", "assigned"})
ASSIGNABLE_STATUSES = frozenset({"pending", "registered", "assigned"})

STATUS_TRANSITIONS = {
    "pending": {"registered", "assigned", "testing"},
    "registered": {"assigned", "testing"},
    "assigned": {"registered", "testing"},
    "testing": {"completed"},
    "completed": {"testing", "reported"},
    "reported": set(),
}

MAX_QTY_PER_ROW = 99


@dataclass
class RegistrationRow:
    sample_type_id: int
    qty: int = 1
    bottle_qty: str | None = None
    sample_point: str | None = None
    description: str | None = None
    remarks: str | None = None
    # indices into SampleType.tests; None selects every default test
    selected_tests: list[int] | None = field(default=None)


def _clean(v: Any) -> str | None:
    return (str(v) if v is not None else "").strip() or None


def clamp_qty(qty: Any) -> int:
    try:
        n = int(qty)
    except (TypeError, ValueError):
        n = 1
    return max(1, min(MAX_QTY_PER_ROW, n))


def _active_customer(s: Session, lab_id: int, customer_id: int | None) -> Customer:
    customer = get_scoped(s, Customer, customer_id, lab_id)
    if customer.status != "active":
        raise ValueError(f"Cannot register samples for inactive customer: {customer.name}")
    return customer


def _lab_user_id(s: Session, lab_id: int, user_id: int | None) -> int | None:
    if not user_id:
        return None
    return get_scoped(s, User, user_id, lab_id, label="User").id


def select_tests(sample_type: SampleType, selected: list[int] | None) -> list[dict[str, Any]]:
    tests = sample_type.tests
    if selected is None:
        return tests
    wanted = set(selected)
    return [t for i, t in enumerate(tests) if i in wanted]


def build_test_results(tests: list[dict[str, Any]], base: datetime) -> list[TestResult]:
    """Pending TestResult rows; due date is `base` plus the test's TAT in days."""
    out: list[TestResult] = []
    for t in tests:
        tat = t.get("tat")
        try:
            tat_days = int(tat) if tat not in (None, "") else None
        except (TypeError, ValueError):
            tat_days = None
        out.append(
            TestResult(
                parameter=str(t.get("parameter") or "").strip(),
                test_method=_clean(t.get("method")) or _clean(t.get("testMethod")),
                unit=_clean(t.get("unit")),
                spec_min=_clean(t.get("specMin")),
                spec_max=_clean(t.get("specMax")),
                tat=tat_days,
                due_date=base + timedelta(days=tat_days) if tat_days else None,
                status="pending",
            )
        )
    return [tr for tr in out if tr.parameter]


def _assign_group_letters(rows: list[RegistrationRow]) -> dict[int, str]:
    letters: dict[int, str] = {}
    for row in rows:
        if row.sample_type_id not in letters:
            letters[row.sample_type_id] = chr(ord("A") + len(letters))
    return letters


def create_registration(
    s: Session,
    *,
    user: User,
    customer_id: int,
    rows: list[RegistrationRow],
    job_type: str | None = None,
    priority: str | None = None,
    reference: str | None = None,
    collected_by_id: int | None = None,
    collection_location: str | None = None,
    collection_date: datetime | None = None,
    sample_condition: str | None = None,
    sampling_method: str | None = None,
    sheet_number: str | None = None,
    notes: str | None = None,
) -> Registration:
    lab_id = user.lab_id
    customer = _active_customer(s, lab_id, customer_id)
    if not rows:
        raise ValueError("Add at least one sample row.")
    if len({r.sample_type_id for r in rows}) > 26:
        raise ValueError("A registration can hold at most 26 sample types.")

    sample_types: dict[int, SampleType] = {}
    for row in rows:
        if row.sample_type_id not in sample_types:
            sample_types[row.sample_type_id] = get_scoped(s, SampleType, row.sample_type_id, lab_id, label="Sample type")

    collected_by_id = _lab_user_id(s, lab_id, collected_by_id)
    record_date = collection_date or datetime.utcnow()
    job_type = _clean(job_type) or "testing"
    priority = _clean(priority) or "normal"
    if job_type not in JOB_TYPES:
        raise ValueError(f"Invalid job type: {job_type}")
    if priority not in SAMPLE_PRIORITIES:
        raise ValueError(f"Invalid priority: {priority}")

    registration_number, sequence_number = generate_next_number(s, lab_id, "registration", "REG")
    now = datetime.utcnow()
    reg = Registration(
        lab_id=lab_id,
        registration_number=registration_number,
        sequence_number=sequence_number,
        customer_id=customer.id,
        job_type=job_type,
        priority=priority,
        reference=_clean(reference),
        collection_date=record_date,
        collection_location=_clean(collection_location),
        sample_condition=_clean(sample_condition),
        sampling_method=_clean(sampling_method) or "NP",
        sheet_number=_clean(sheet_number),
        notes=_clean(notes),
        collected_by_id=collected_by_id,
        registered_by_id=user.id,
        registered_at=record_date,
        created_at=now,
        updated_at=now,
    )
    s.add(reg)
    s.flush()

    letters = _assign_group_letters(rows)
    multi_group = len(letters) > 1
    group_counters = {letter: 1 for letter in letters.values()}
    sub_counter = 1

    for row in rows:
        st = sample_types[row.sample_type_id]
        tests = select_tests(st, row.selected_tests)
        letter = letters[row.sample_type_id]
        for _ in range(clamp_qty(row.qty)):
            if multi_group:
                suffix = f"{letter}{group_counters[letter]:02d}"
                group_counters[letter] += 1
            else:
                suffix = f"{sub_counter:02d}"
            sample = Sample(
                lab_id=lab_id,
                sample_number=f"{registration_number}-{suffix}",
                sequence_number=sequence_number,
                registration_id=reg.id,
                sub_sample_number=sub_counter,
                sample_group=letter if multi_group else None,
                customer_id=customer.id,
                sample_type_id=st.id,
                description=_clean(row.description),
                quantity=_clean(row.bottle_qty),
                sample_condition=reg.sample_condition,
                priority=priority,
                job_type=job_type,
                reference=reg.reference,
                status="registered",
                registered_by_id=user.id,
                registered_at=record_date,
                collected_by_id=collected_by_id,
                collection_date=record_date,
                collection_location=reg.collection_location,
                sample_point=_clean(row.sample_point),
                notes=_clean(row.remarks),
                created_at=now,
                updated_at=now,
            )
            sample.test_results = build_test_results(tests, record_date)
            reg.samples.append(sample)
            sub_counter += 1

    s.flush()
    record_event(
        s,
        actor=user,
        module="process",
        action="create",
        details=f"Registered {registration_number} with {sub_counter - 1} samples",
        entity_type="Registration",
        entity_id=reg.id,
    )
    return reg


def update_registration(s: Session, reg: Registration, payload: dict[str, Any], *, user: User) -> Registration:
    """Header fields only. Priority/reference changes flow to samples that are still editable."""
    priority = _clean(payload.get("priority")) or reg.priority
    if priority not in SAMPLE_PRIORITIES:
        raise ValueError(f"Invalid priority: {priority}")
    reg.priority = priority
    reg.reference = _clean(payload.get("reference"))
    reg.collection_location = _clean(payload.get("collection_location"))
    reg.sample_condition = _clean(payload.get("sample_condition"))
    reg.sampling_method = _clean(payload.get("sampling_method")) or reg.sampling_method
    reg.sheet_number = _clean(payload.get("sheet_number"))
    reg.notes = _clean(payload.get("notes"))
    reg.updated_at = datetime.utcnow()
    for smp in reg.live_samples:
        if smp.status in EDITABLE_STATUSES:
            smp.priority = reg.priority
            smp.reference = reg.reference
            smp.collection_location = reg.collection_location
            smp.updated_at = reg.updated_at
    record_event(
        s,
        actor=user,
        module="process",
        action="edit",
        details=f"Updated registration {reg.registration_number}",
        entity_type="Registration",
        entity_id=reg.id,
    )
    return reg


def delete_registration(s: Session, reg: Registration, *, user: User) -> int:
    """Soft-delete every live sample of the registration. Returns how many were moved to trash."""
    now = datetime.utcnow()
    n = 0
    for smp in reg.live_samples:
        smp.deleted_at = now
        smp.deleted_by_id = user.id
        n += 1
    record_event(
        s,
        actor=user,
        module="process",
        action="delete",
        details=f"Deleted registration {reg.registration_number} ({n} samples moved to trash)",
        entity_type="Registration",
        entity_id=reg.id,
    )
    return n


def create_sample(
    s: Session,
    *,
    user: User,
    customer_id: int,
    sample_type_id: int,
    description: str | None = None,
    quantity: str | None = None,
    sample_condition: str | None = None,
    priority: str | None = None,
    job_type: str | None = None,
    reference: str | None = None,
    collected_by_id: int | None = None,
    collection_date: datetime | None = None,
    collection_location: str | None = None,
    sample_point: str | None = None,
    notes: str | None = None,
    selected_tests: list[int] | None = None,
) -> Sample:
    lab_id = user.lab_id
    customer = _active_customer(s, lab_id, customer_id)
    st = get_scoped(s, SampleType, sample_type_id, lab_id, label="Sample type")
    priority = _clean(priority) or "normal"
    if priority not in SAMPLE_PRIORITIES:
        raise ValueError(f"Invalid priority: {priority}")

    sample_number, sequence_number = generate_next_number(s, lab_id, "sample", "SPL")
    now = datetime.utcnow()
    sample = Sample(
        lab_id=lab_id,
        sample_number=sample_number,
        sequence_number=sequence_number,
        customer_id=customer.id,
        sample_type_id=st.id,
        description=_clean(description),
        quantity=_clean(quantity),
        sample_condition=_clean(sample_condition),
        priority=priority,
        job_type=_clean(job_type) or "testing",
        reference=_clean(reference),
        status="pending",
        collected_by_id=_lab_user_id(s, lab_id, collected_by_id) or user.id,
        collection_date=collection_date or now,
        collection_location=_clean(collection_location),
        sample_point=_clean(sample_point),
        notes=_clean(notes),
        registered_by_id=user.id,
        registered_at=now,
        created_at=now,
        updated_at=now,
    )
    sample.test_results = build_test_results(select_tests(st, selected_tests), now)
    s.add(sample)
    s.flush()
    record_event(
        s,
        actor=user,
        module="process",
        action="create",
        details=f"Created sample {sample.sample_number}",
        entity_type="Sample",
        entity_id=sample.id,
    )
    return sample


def update_sample(s: Session, sample: Sample, payload: dict[str, Any], *, user: User) -> Sample:
    if sample.status not in EDITABLE_STATUSES:
        raise ValueError(f"Cannot edit sample with status '{sample.status}'")
    priority = _clean(payload.get("priority")) or sample.priority
    if priority not in SAMPLE_PRIORITIES:
        raise ValueError(f"Invalid priority: {priority}")
    sample.priority = priority
    for f in ("description", "quantity", "sample_condition", "reference", "collection_location", "sample_point", "notes"):
        if f in payload:
            setattr(sample, f, _clean(payload.get(f)))
    sample.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        module="process",
        action="edit",
        details=f"Updated sample {sample.sample_number}",
        entity_type="Sample",
        entity_id=sample.id,
    )
    return sample


def assign_sample(s: Session, sample: Sample, assignee_id: int | None, *, user: User) -> Sample:
    if sample.status not in ASSIGNABLE_STATUSES:
        raise ValueError(f"Cannot assign sample with status '{sample.status}'")
    if assignee_id:
        assignee = get_scoped(s, User, assignee_id, sample.lab_id, label="User")
        sample.assigned_to_id = assignee.id
        sample.status = "assigned"
        details = f"Assigned {sample.sample_number} to {assignee.name}"
    else:
        sample.assigned_to_id = None
        sample.status = "registered"
        details = f"Unassigned {sample.sample_number}"
    sample.updated_at = datetime.utcnow()
    record_event(s, actor=user, module="process", action="edit", details=details, entity_type="Sample", entity_id=sample.id)
    return sample


def can_transition_to(sample: Sample, new_status: str) -> tuple[bool, list[str]]:
    blockers: list[str] = []
    if new_status not in SAMPLE_STATUSES:
        return False, [f"Invalid status: {new_status}"]
    if new_status not in STATUS_TRANSITIONS.get(sample.status, set()):
        blockers.append(f"Cannot move sample from '{sample.status}' to '{new_status}'.")
    if new_status == "completed" and sample.pending_count:
        blockers.append(f"{sample.pending_count} test(s) are still pending.")
    if new_status == "reported":
        if not any(r.status == "published" and r.deleted_at is None for r in sample.reports):
            blockers.append("Sample has no published report.")
    return (not blockers), blockers


def update_sample_status(s: Session, sample: Sample, new_status: str, *, user: User) -> Sample:
    ok, blockers = can_transition_to(sample, new_status)
    if not ok:
        raise ValueError(" ".join(blockers))
    old = sample.status
    sample.status = new_status
    sample.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        module="process",
        action="edit",
        details=f"Sample {sample.sample_number} status {old} -> {new_status}",
        entity_type="Sample",
        entity_id=sample.id,
        metadata={"from": old, "to": new_status},
    )
    return sample


def delete_sample(s: Session, sample: Sample, *, user: User) -> None:
    """Soft delete; allowed at any status. Restorable from trash."""
    if sample.deleted_at is not None:
        raise ValueError("Sample is already in trash.")
    sample.deleted_at = datetime.utcnow()
    sample.deleted_by_id = user.id
    record_event(
        s,
        actor=user,
        module="process",
        action="delete",
        details=f"Moved sample {sample.sample_number} to trash",
        entity_type="Sample",
        entity_id=sample.id,
    )


def list_registrations(s: Session, lab_id: int, *, search: str = "") -> list[Registration]:
    q = s.query(Registration).filter(Registration.lab_id == lab_id)
    if search:
        like = f"%{search}%"
        q = q.join(Customer, Customer.id == Registration.customer_id).filter(
            or_(
                Registration.registration_number.ilike(like),
                Registration.reference.ilike(like),
                Customer.name.ilike(like),
                Customer.company.ilike(like),
            )
        )
    regs = q.order_by(Registration.registered_at.desc(), Registration.id.desc()).all()
    return [r for r in regs if r.live_samples]


def list_samples(
    s: Session,
    lab_id: int,
    *,
    status: str = "",
    search: str = "",
    customer_id: int | None = None,
) -> list[Sample]:
    q = s.query(Sample).filter(Sample.lab_id == lab_id, Sample.deleted_at.is_(None))
    if status:
        q = q.filter(Sample.status == status)
    if customer_id:
        q = q.filter(Sample.customer_id == customer_id)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Sample.sample_number.ilike(like), Sample.description.ilike(like), Sample.reference.ilike(like)))
    return q.order_by(Sample.created_at.desc(), Sample.id.desc()).all()


def list_my_collections(s: Session, user: User) -> list[Sample]:
    """Live samples the user collected in the field, newest first."""
    return (
        s.query(Sample)
        .filter(Sample.lab_id == user.lab_id, Sample.collected_by_id == user.id, Sample.deleted_at.is_(None))
        .order_by(Sample.created_at.desc(), Sample.id.desc())
        .all()
    )
