"""
Read-only aggregates for the dashboard and the status tracking page.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.lims.constants import SAMPLE_STATUSES
from app.lims.models import User
from app.lims.modules.accounts.models import Invoice
from app.lims.modules.customers.models import Customer
from app.lims.modules.reports.models import Report
from app.lims.modules.samples.models import Sample, TestResult

OUTSTANDING_INVOICE_STATUSES = ("sent", "overdue")


@dataclass
class DashboardStats:
    samples_by_status: dict[str, int]
    pending_tests: int
    reports_in_review: int
    outstanding_amount: Decimal
    revenue: Decimal
    customer_count: int
    user_count: int
    my_assigned: int
    my_pending_results: int
    recent_samples: list[Sample] = field(default_factory=list)
    recent_reports: list[Report] = field(default_factory=list)

    @property
    def total_samples(self) -> int:
        return sum(self.samples_by_status.values())


def _sum_invoices(s: Session, lab_id: int, statuses: tuple[str, ...], customer_id: int | None = None) -> Decimal:
    q = s.query(func.coalesce(func.sum(Invoice.total), 0)).filter(
        Invoice.lab_id == lab_id,
        Invoice.deleted_at.is_(None),
        Invoice.status.in_(statuses),
    )
    if customer_id is not None:
        q = q.filter(Invoice.customer_id == customer_id)
    return Decimal(str(q.scalar() or 0))


def outstanding_amount(s: Session, lab_id: int, *, customer_id: int | None = None) -> Decimal:
    return _sum_invoices(s, lab_id, OUTSTANDING_INVOICE_STATUSES, customer_id)


def sample_status_counts(s: Session, lab_id: int, *, customer_id: int | None = None) -> dict[str, int]:
    q = s.query(Sample.status, func.count(Sample.id)).filter(Sample.lab_id == lab_id, Sample.deleted_at.is_(None))
    if customer_id is not None:
        q = q.filter(Sample.customer_id == customer_id)
    counts = dict(q.group_by(Sample.status).all())
    return {st: int(counts.get(st, 0)) for st in SAMPLE_STATUSES}


def dashboard_stats(s: Session, user: User) -> DashboardStats:
    lab_id = user.lab_id
    live_samples = s.query(Sample).filter(Sample.lab_id == lab_id, Sample.deleted_at.is_(None))
    pending_tests = (
        s.query(func.count(TestResult.id))
        .join(Sample, Sample.id == TestResult.sample_id)
        .filter(Sample.lab_id == lab_id, Sample.deleted_at.is_(None), TestResult.status == "pending")
        .scalar()
        or 0
    )
    my_pending = (
        s.query(func.count(TestResult.id))
        .join(Sample, Sample.id == TestResult.sample_id)
        .filter(
            Sample.lab_id == lab_id,
            Sample.deleted_at.is_(None),
            Sample.assigned_to_id == user.id,
            TestResult.status == "pending",
        )
        .scalar()
        or 0
    )
    return DashboardStats(
        samples_by_status=sample_status_counts(s, lab_id),
        pending_tests=int(pending_tests),
        reports_in_review=s.query(Report)
        .filter(Report.lab_id == lab_id, Report.deleted_at.is_(None), Report.status == "review")
        .count(),
        outstanding_amount=outstanding_amount(s, lab_id),
        revenue=_sum_invoices(s, lab_id, ("paid",)),
        customer_count=s.query(Customer).filter(Customer.lab_id == lab_id).count(),
        user_count=s.query(User).filter(User.lab_id == lab_id).count(),
        my_assigned=live_samples.filter(
            Sample.assigned_to_id == user.id, Sample.status.in_(("assigned", "testing"))
        ).count(),
        my_pending_results=int(my_pending),
        recent_samples=live_samples.order_by(Sample.created_at.desc(), Sample.id.desc()).limit(5).all(),
        recent_reports=s.query(Report)
        .filter(Report.lab_id == lab_id, Report.deleted_at.is_(None))
        .order_by(Report.created_at.desc(), Report.id.desc())
        .limit(5)
        .all(),
    )


@dataclass(frozen=True)
class TrackedSample:
    sample: Sample
    due_date: datetime | None
    completion_date: datetime | None
    report: Report | None

    @property
    def overdue(self) -> bool:
        end = self.completion_date or datetime.utcnow()
        return bool(self.due_date and end > self.due_date)


def _completion_date(sample: Sample) -> datetime | None:
    results = sample.test_results
    if not results or any(tr.status != "completed" for tr in results):
        return None
    entered = [tr.entered_at for tr in results if tr.entered_at]
    return max(entered) if entered else None


def default_tracking_range(today: date | None = None) -> tuple[date, date]:
    today = today or datetime.utcnow().date()
    return today.replace(day=1), today


def status_tracking(
    s: Session,
    lab_id: int,
    *,
    start: date,
    end: date,
    customer_id: int | None = None,
    status: str = "",
) -> tuple[dict[str, int], list[TrackedSample]]:
    """Samples created within [start, end] with per-status counts, due and completion dates."""
    q = s.query(Sample).filter(
        Sample.lab_id == lab_id,
        Sample.deleted_at.is_(None),
        Sample.created_at >= datetime.combine(start, time.min),
        Sample.created_at < datetime.combine(end + timedelta(days=1), time.min),
    )
    if customer_id:
        q = q.filter(Sample.customer_id == customer_id)
    samples = q.order_by(Sample.created_at.desc(), Sample.id.desc()).all()

    counts = {st: 0 for st in SAMPLE_STATUSES}
    for smp in samples:
        counts[smp.status] = counts.get(smp.status, 0) + 1

    rows = []
    for smp in samples:
        if status and smp.status != status:
            continue
        live_reports = [r for r in smp.reports if r.deleted_at is None]
        rows.append(
            TrackedSample(
                sample=smp,
                due_date=smp.earliest_due_date,
                completion_date=_completion_date(smp),
                report=live_reports[-1] if live_reports else None,
            )
        )
    return counts, rows
