"""
Reports service layer: certificate numbering, the authentication workflow,
public verification records and report templates.
"""
from __future__ import annotations

import secrets
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.lims.audit import record_event
from app.lims.db import get_scoped
from app.lims.models import Lab, User
from app.lims.modules.samples.models import Sample
from app.lims.numbering import generate_linked_number, generate_next_number
from app.lims.storage import is_lab_key

from .models import Report, ReportTemplate, ReportVerification
from .pdf import CoaInput

STATUS_TRANSITIONS = {
    "draft": {"review"},
    "review": {"approved", "revision"},
    "revision": {"review"},
    "approved": {"published"},
    "published": set(),
}

EDITABLE_STATUSES = frozenset({"draft", "revision"})
COA_STATUSES = frozenset({"approved", "published"})


def _clean(v: Any) -> str | None:
    return (str(v) if v is not None else "").strip() or None


def list_reports(s: Session, lab_id: int, *, status: str = "", search: str = "") -> list[Report]:
    q = s.query(Report).filter(Report.lab_id == lab_id, Report.deleted_at.is_(None))
    if status:
        q = q.filter(Report.status == status)
    if search:
        like = f"%{search}%"
        q = q.join(Sample, Sample.id == Report.sample_id).filter(
            or_(Report.report_number.ilike(like), Report.title.ilike(like), Sample.sample_number.ilike(like))
        )
    return q.order_by(Report.created_at.desc(), Report.id.desc()).all()


def live_report_for_sample(sample: Sample) -> Report | None:
    for r in sample.reports:
        if r.deleted_at is None:
            return r
    return None


def get_default_template(s: Session, lab_id: int) -> ReportTemplate | None:
    return (
        s.query(ReportTemplate)
        .filter(ReportTemplate.lab_id == lab_id)
        .order_by(ReportTemplate.is_default.desc(), ReportTemplate.id.asc())
        .first()
    )


def report_number_for_sample(s: Session, sample: Sample) -> str:
    """
    Reuse the sample's sequence number so RPT-260226-001-A01 mirrors REG-260226-001-A01.
    Samples without a sequence number (or whose mirrored number is taken by a trashed
    report) get the next RPT number instead.
    """
    if sample.sequence_number is not None:
        suffix = None
        origin = sample.created_at
        if sample.registration is not None:
            prefix = sample.registration.registration_number + "-"
            if sample.sample_number.startswith(prefix):
                suffix = sample.sample_number[len(prefix) :]
            origin = sample.registration.created_at
        number = generate_linked_number(
            s,
            sample.lab_id,
            "report",
            sample.sequence_number,
            "RPT",
            on=origin.date() if origin else None,
            suffix=suffix,
        )
        taken = s.query(Report.id).filter(Report.lab_id == sample.lab_id, Report.report_number == number).first()
        if not taken:
            return number
    number, _ = generate_next_number(s, sample.lab_id, "report", "RPT")
    return number


def create_report_for_sample(
    s: Session,
    sample: Sample,
    *,
    user: User,
    title: str | None = None,
    summary: str | None = None,
    template_id: int | None = None,
) -> Report:
    if sample.deleted_at is not None:
        raise ValueError("Cannot create a report for a sample in trash.")
    if live_report_for_sample(sample) is not None:
        raise ValueError(f"A report already exists for sample {sample.sample_number}.")
    if template_id:
        template = get_scoped(s, ReportTemplate, template_id, sample.lab_id, label="Template")
    else:
        template = get_default_template(s, sample.lab_id)

    now = datetime.utcnow()
    type_name = sample.sample_type.name if sample.sample_type else "Sample"
    report = Report(
        lab_id=sample.lab_id,
        report_number=report_number_for_sample(s, sample),
        sample_id=sample.id,
        template_id=template.id if template else None,
        report_type="coa",
        title=_clean(title) or f"Certificate of Quality - {type_name}",
        summary=_clean(summary),
        status="draft",
        created_by_id=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(report)
    s.flush()
    sample.reports.append(report)
    record_event(
        s,
        actor=user,
        module="process",
        action="create",
        details=f"Created report {report.report_number} for {sample.sample_number}",
        entity_type="Report",
        entity_id=report.id,
    )
    return report


def update_report(s: Session, report: Report, payload: dict[str, Any], *, user: User) -> Report:
    if report.status not in EDITABLE_STATUSES:
        raise ValueError(f"Cannot edit report with status '{report.status}'")
    report.title = _clean(payload.get("title")) or report.title
    report.summary = _clean(payload.get("summary"))
    template_id = payload.get("template_id")
    if template_id:
        report.template_id = get_scoped(s, ReportTemplate, int(template_id), report.lab_id, label="Template").id
    report.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        module="process",
        action="edit",
        details=f"Updated report {report.report_number}",
        entity_type="Report",
        entity_id=report.id,
    )
    return report


def _transition(s: Session, report: Report, new_status: str, *, user: User, details: str | None = None) -> None:
    allowed = STATUS_TRANSITIONS.get(report.status, set())
    if new_status not in allowed:
        raise ValueError(f"Cannot move report from '{report.status}' to '{new_status}'.")
    old = report.status
    report.status = new_status
    report.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        module="reports",
        action="edit",
        details=details or f"Report {report.report_number} {old} -> {new_status}",
        entity_type="Report",
        entity_id=report.id,
        metadata={"from": old, "to": new_status},
    )


def submit_for_review(s: Session, report: Report, *, user: User) -> Report:
    if report.sample.pending_count:
        raise ValueError("All test results must be entered before submitting for review.")
    _transition(s, report, "review", user=user)
    return report


def approve_report(s: Session, report: Report, *, user: User) -> Report:
    _transition(s, report, "approved", user=user, details=f"Approved report {report.report_number}")
    report.reviewed_by_id = user.id
    report.reviewed_at = datetime.utcnow()
    return report


def request_revision(s: Session, report: Report, reason: str, *, user: User) -> Report:
    """Send a report back: its test results reopen and the sample returns to testing."""
    reason = (reason or "").strip()
    if not reason:
        raise ValueError("A reason is required when requesting a revision.")
    _transition(s, report, "revision", user=user, details=f"Revision requested for {report.report_number}: {reason}")
    report.summary = reason
    now = datetime.utcnow()
    for tr in report.sample.test_results:
        tr.status = "pending"
        tr.updated_at = now
    report.sample.status = "testing"
    report.sample.updated_at = now
    return report


def publish_report(s: Session, report: Report, *, user: User) -> Report:
    _transition(s, report, "published", user=user, details=f"Published report {report.report_number}")
    now = datetime.utcnow()
    report.published_at = now
    report.sample.status = "reported"
    report.sample.updated_at = now
    return report


def delete_report(s: Session, report: Report, *, user: User) -> None:
    if report.status != "draft":
        raise ValueError("Can only delete reports with draft status")
    report.deleted_at = datetime.utcnow()
    report.deleted_by_id = user.id
    record_event(
        s,
        actor=user,
        module="process",
        action="delete",
        details=f"Moved report {report.report_number} to trash",
        entity_type="Report",
        entity_id=report.id,
    )


def ensure_coa_allowed(report: Report) -> None:
    if report.deleted_at is not None or report.status not in COA_STATUSES:
        raise ValueError("Report must be approved or published to generate COA")


# ---------- Verification ----------


def new_verification_code() -> str:
    return secrets.token_urlsafe(12)


def get_or_create_verification(s: Session, report: Report, *, user: User | None) -> ReportVerification:
    """The first COA issued for a report pins a verification snapshot; later issues reuse it."""
    if report.verifications:
        return report.verifications[0]
    sample = report.sample
    customer = sample.customer
    lab = s.get(Lab, report.lab_id)
    v = ReportVerification(
        lab_id=report.lab_id,
        report_id=report.id,
        code=new_verification_code(),
        report_number=report.report_number,
        sample_number=sample.sample_number,
        client_name=customer.display_name if customer else None,
        sample_type_name=sample.sample_type.name if sample.sample_type else None,
        test_count=len(sample.test_results),
        lab_name=lab.name if lab else None,
        issued_by_name=(report.reviewed_by.name if report.reviewed_by else (user.name if user else None)),
        issued_at=datetime.utcnow(),
    )
    s.add(v)
    s.flush()
    report.verifications.append(v)
    return v


def find_verification(s: Session, code: str) -> ReportVerification | None:
    code = (code or "").strip()
    if not code:
        return None
    v = s.query(ReportVerification).filter(ReportVerification.code == code).one_or_none()
    if v is None or v.report is None or v.report.deleted_at is not None:
        return None
    return v


# ---------- Templates ----------

_TEMPLATE_TEXT_FIELDS = ("header_text", "footer_text", "accreditation_text")
_TEMPLATE_KEY_FIELDS = ("logo_key", "accreditation_logo_key", "seal_key")


def list_templates(s: Session, lab_id: int) -> list[ReportTemplate]:
    return (
        s.query(ReportTemplate)
        .filter(ReportTemplate.lab_id == lab_id)
        .order_by(ReportTemplate.is_default.desc(), ReportTemplate.name.asc())
        .all()
    )


def _unset_other_defaults(s: Session, t: ReportTemplate) -> None:
    s.query(ReportTemplate).filter(
        ReportTemplate.lab_id == t.lab_id, ReportTemplate.id != t.id, ReportTemplate.is_default.is_(True)
    ).update({ReportTemplate.is_default: False}, synchronize_session="fetch")


def _apply_template_payload(t: ReportTemplate, payload: dict[str, Any]) -> None:
    name = _clean(payload.get("name"))
    if not name:
        raise ValueError("Template name is required.")
    t.name = name
    for f in _TEMPLATE_TEXT_FIELDS:
        setattr(t, f, _clean(payload.get(f)))
    for f in _TEMPLATE_KEY_FIELDS:
        if f in payload:
            key = _clean(payload.get(f))
            if key and not is_lab_key(t.lab_id, key):
                raise ValueError("Image must be uploaded to this lab's storage.")
            setattr(t, f, key)
    t.show_lab_logo = bool(payload.get("show_lab_logo"))
    t.is_default = bool(payload.get("is_default"))


def create_template(s: Session, payload: dict[str, Any], *, user: User) -> ReportTemplate:
    now = datetime.utcnow()
    t = ReportTemplate(lab_id=user.lab_id, created_at=now, updated_at=now)
    _apply_template_payload(t, payload)
    first = not s.query(ReportTemplate.id).filter(ReportTemplate.lab_id == user.lab_id).first()
    if first:
        t.is_default = True
    s.add(t)
    s.flush()
    if t.is_default:
        _unset_other_defaults(s, t)
    record_event(
        s,
        actor=user,
        module="admin",
        action="create",
        details=f"Created report template {t.name}",
        entity_type="ReportTemplate",
        entity_id=t.id,
    )
    return t


def update_template(s: Session, t: ReportTemplate, payload: dict[str, Any], *, user: User) -> ReportTemplate:
    _apply_template_payload(t, payload)
    t.updated_at = datetime.utcnow()
    s.flush()
    if t.is_default:
        _unset_other_defaults(s, t)
    record_event(
        s,
        actor=user,
        module="admin",
        action="edit",
        details=f"Updated report template {t.name}",
        entity_type="ReportTemplate",
        entity_id=t.id,
    )
    return t


def set_default_template(s: Session, t: ReportTemplate, *, user: User) -> ReportTemplate:
    t.is_default = True
    t.updated_at = datetime.utcnow()
    s.flush()
    _unset_other_defaults(s, t)
    record_event(
        s,
        actor=user,
        module="admin",
        action="edit",
        details=f"Set {t.name} as default report template",
        entity_type="ReportTemplate",
        entity_id=t.id,
    )
    return t


def delete_template(s: Session, t: ReportTemplate, *, user: User) -> None:
    n = s.query(func.count(Report.id)).filter(Report.template_id == t.id).scalar() or 0
    if n:
        raise ValueError(f"Cannot delete template. {n} report(s) use this template.")
    record_event(
        s,
        actor=user,
        module="admin",
        action="delete",
        details=f"Deleted report template {t.name}",
        entity_type="ReportTemplate",
        entity_id=t.id,
    )
    s.delete(t)


# ---------- COA ----------


def verify_url(base_url: str, code: str) -> str:
    return f"{base_url.rstrip('/')}/verify/{code}"


def coa_inputs(s: Session, reports: list[Report], *, user: User | None, base_url: str) -> list[CoaInput]:
    """Check every report may be issued and pin its verification code before rendering."""
    out: list[CoaInput] = []
    for report in reports:
        ensure_coa_allowed(report)
        v = get_or_create_verification(s, report, user=user)
        template = report.template or get_default_template(s, report.lab_id)
        out.append(
            CoaInput(
                report=report,
                lab=s.get(Lab, report.lab_id),
                template=template,
                verify_url=verify_url(base_url, v.code),
            )
        )
    return out
