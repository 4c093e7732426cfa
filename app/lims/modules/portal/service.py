"""
Read-only queries behind the customer portal.

Every function takes the PortalUser and filters on both its lab and its customer,
so a portal login never sees another customer's records.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash

from app.lims.dashboard import outstanding_amount, sample_status_counts
from app.lims.errors import NotFoundError
from app.lims.models import PortalUser
from app.lims.modules.accounts.models import Invoice, Quotation
from app.lims.modules.reports.models import Report
from app.lims.modules.samples.models import Sample


@dataclass(frozen=True)
class PortalSummary:
    samples_by_status: dict[str, int]
    published_reports: int
    open_quotations: int
    outstanding_amount: Decimal

    @property
    def total_samples(self) -> int:
        return sum(self.samples_by_status.values())


def authenticate(s: Session, username: str, password: str) -> PortalUser | None:
    pu = s.query(PortalUser).filter(PortalUser.username == (username or "").strip().lower()).one_or_none()
    if not pu or not pu.is_active or not check_password_hash(pu.password_hash, password or ""):
        return None
    return pu


def _samples(s: Session, pu: PortalUser):
    return s.query(Sample).filter(
        Sample.lab_id == pu.lab_id,
        Sample.customer_id == pu.customer_id,
        Sample.deleted_at.is_(None),
    )


def _published_reports(s: Session, pu: PortalUser):
    return (
        s.query(Report)
        .join(Sample, Sample.id == Report.sample_id)
        .filter(
            Report.lab_id == pu.lab_id,
            Sample.customer_id == pu.customer_id,
            Report.deleted_at.is_(None),
            Report.status == "published",
        )
    )


def portal_summary(s: Session, pu: PortalUser) -> PortalSummary:
    return PortalSummary(
        samples_by_status=sample_status_counts(s, pu.lab_id, customer_id=pu.customer_id),
        published_reports=_published_reports(s, pu).count(),
        open_quotations=s.query(Quotation)
        .filter(
            Quotation.lab_id == pu.lab_id,
            Quotation.customer_id == pu.customer_id,
            Quotation.status.in_(("sent", "accepted")),
        )
        .count(),
        outstanding_amount=outstanding_amount(s, pu.lab_id, customer_id=pu.customer_id),
    )


def list_portal_samples(s: Session, pu: PortalUser, *, status: str = "") -> list[Sample]:
    q = _samples(s, pu)
    if status:
        q = q.filter(Sample.status == status)
    return q.order_by(Sample.created_at.desc(), Sample.id.desc()).all()


def get_portal_sample(s: Session, pu: PortalUser, sample_id: int) -> Sample:
    sample = _samples(s, pu).filter(Sample.id == sample_id).one_or_none()
    if sample is None:
        raise NotFoundError("Sample not found")
    return sample


def list_portal_reports(s: Session, pu: PortalUser) -> list[Report]:
    return _published_reports(s, pu).order_by(Report.published_at.desc(), Report.id.desc()).all()


def get_portal_report(s: Session, pu: PortalUser, report_id: int) -> Report:
    report = _published_reports(s, pu).filter(Report.id == report_id).one_or_none()
    if report is None:
        raise NotFoundError("Report not found")
    return report


def list_portal_quotations(s: Session, pu: PortalUser) -> list[Quotation]:
    return (
        s.query(Quotation)
        .filter(
            Quotation.lab_id == pu.lab_id,
            Quotation.customer_id == pu.customer_id,
        )
        .order_by(Quotation.created_at.desc(), Quotation.id.desc())
        .all()
    )


def list_portal_invoices(s: Session, pu: PortalUser) -> list[Invoice]:
    return (
        s.query(Invoice)
        .filter(
            Invoice.lab_id == pu.lab_id,
            Invoice.customer_id == pu.customer_id,
            Invoice.deleted_at.is_(None),
        )
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
        .all()
    )
