"""
Test result entry.

Entering the last pending result completes the sample and opens a draft report for it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.lims.audit import record_event
from app.lims.constants import MANAGER_ROLES
from app.lims.models import User
from app.lims.modules.sample_types.service import normalize_test

from .models import Sample, TestResult
from .service import build_test_results

logger = logging.getLogger(__name__)

ENTRY_STATUSES = ("pending", "registered", "assigned", "testing", "completed")
LOCKED_STATUSES = frozenset({"reported"})


@dataclass(frozen=True)
class ResultUpdate:
    value: str | None
    remarks: str | None = None


def sees_all_samples(user: User) -> bool:
    return bool(user.role and user.role.name in MANAGER_ROLES)


def list_samples_for_entry(s: Session, user: User, *, status: str = "") -> list[Sample]:
    """Chemists see unassigned samples and their own; managers see everything."""
    q = s.query(Sample).filter(
        Sample.lab_id == user.lab_id,
        Sample.deleted_at.is_(None),
        Sample.status.in_(ENTRY_STATUSES),
    )
    if status:
        q = q.filter(Sample.status == status)
    if not sees_all_samples(user):
        q = q.filter(or_(Sample.assigned_to_id.is_(None), Sample.assigned_to_id == user.id))
    return q.order_by(Sample.priority.desc(), Sample.created_at.asc()).all()


def batch_update_test_results(
    s: Session,
    sample: Sample,
    updates: dict[int, ResultUpdate],
    *,
    user: User,
):
    """
    Apply entered values. Returns the draft report created when this call completed
    the sample, else None.
    """
    from app.lims.modules.reports.service import create_report_for_sample, live_report_for_sample

    if sample.deleted_at is not None:
        raise ValueError("Sample is in trash.")
    if sample.status in LOCKED_STATUSES:
        raise ValueError(f"Cannot change results of a {sample.status} sample.")

    by_id = {tr.id: tr for tr in sample.test_results}
    unknown = [rid for rid in updates if rid not in by_id]
    if unknown:
        raise ValueError("Test result does not belong to this sample.")

    now = datetime.utcnow()
    if sample.assigned_to_id is None:
        sample.assigned_to_id = user.id
        sample.status = "testing"

    changed = 0
    for rid, upd in updates.items():
        value = (upd.value or "").strip()
        if not value:
            continue
        tr = by_id[rid]
        tr.result_value = value
        tr.remarks = (upd.remarks or "").strip() or None
        tr.status = "completed"
        tr.entered_by_id = user.id
        tr.entered_at = now
        tr.updated_at = now
        changed += 1

    report = None
    if sample.test_results and sample.pending_count == 0:
        sample.status = "completed"
        if live_report_for_sample(sample) is None:
            report = create_report_for_sample(s, sample, user=user)
            logger.info("Auto-created report %s for sample %s", report.report_number, sample.sample_number)
    elif sample.status in ("pending", "registered", "assigned"):
        sample.status = "testing"
    sample.updated_at = now

    record_event(
        s,
        actor=user,
        module="process",
        action="edit",
        details=f"Entered {changed} result(s) for {sample.sample_number}",
        entity_type="Sample",
        entity_id=sample.id,
    )
    return report


def add_tests_to_sample(s: Session, sample: Sample, tests: list[dict[str, Any]], *, user: User) -> list[TestResult]:
    if sample.status in LOCKED_STATUSES:
        raise ValueError(f"Cannot add tests to a {sample.status} sample.")
    if not tests:
        raise ValueError("Select at least one test to add.")
    base = sample.registered_at or datetime.utcnow()
    new_rows = build_test_results([normalize_test(t) for t in tests], base)
    for tr in new_rows:
        sample.test_results.append(tr)
    if sample.status == "completed":
        sample.status = "testing"
    sample.updated_at = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=user,
        module="process",
        action="edit",
        details=f"Added {len(new_rows)} test(s) to {sample.sample_number}",
        entity_type="Sample",
        entity_id=sample.id,
    )
    return new_rows


def delete_test_result(s: Session, tr: TestResult, *, user: User) -> None:
    if tr.status == "completed":
        raise ValueError("Cannot delete a completed test result")
    sample = tr.sample
    record_event(
        s,
        actor=user,
        module="process",
        action="delete",
        details=f"Removed test {tr.parameter} from {sample.sample_number}",
        entity_type="TestResult",
        entity_id=tr.id,
    )
    sample.test_results.remove(tr)
