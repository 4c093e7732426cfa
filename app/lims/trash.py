"""
Trash: soft-deleted samples, reports and invoices.

Restore clears deleted_at. Permanent delete removes the row and its children
(test results and reports for a sample, verifications for a report, items for an invoice).
Purging a tax invoice reopens any proformas still linked to it.
"""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.lims.audit import record_event
from app.lims.db import get_scoped
from app.lims.models import User
from app.lims.modules.accounts.models import Invoice
from app.lims.modules.accounts.service import reopen_source_proformas
from app.lims.modules.reports.models import Report
from app.lims.modules.samples.models import Sample

TRASH_KINDS = {
    "sample": (Sample, "sample_number", "process"),
    "report": (Report, "report_number", "reports"),
    "invoice": (Invoice, "invoice_number", "accounts"),
}


@dataclass(frozen=True)
class TrashContents:
    samples: list[Sample]
    reports: list[Report]
    invoices: list[Invoice]

    @property
    def total(self) -> int:
        return len(self.samples) + len(self.reports) + len(self.invoices)


def _trashed(s: Session, model, lab_id: int) -> list:
    return (
        s.query(model)
        .filter(model.lab_id == lab_id, model.deleted_at.is_not(None))
        .order_by(model.deleted_at.desc())
        .all()
    )


def list_trash(s: Session, lab_id: int) -> TrashContents:
    return TrashContents(
        samples=_trashed(s, Sample, lab_id),
        reports=_trashed(s, Report, lab_id),
        invoices=_trashed(s, Invoice, lab_id),
    )


def _get_trashed(s: Session, kind: str, obj_id: int, lab_id: int):
    if kind not in TRASH_KINDS:
        raise ValueError(f"Unknown trash item type: {kind}")
    model, _, _ = TRASH_KINDS[kind]
    obj = get_scoped(s, model, obj_id, lab_id, label=kind.title())
    if obj.deleted_at is None:
        raise ValueError(f"{kind.title()} is not in trash.")
    return obj


def restore_item(s: Session, kind: str, obj_id: int, *, user: User) -> str:
    obj = _get_trashed(s, kind, obj_id, user.lab_id)
    _, number_attr, module = TRASH_KINDS[kind]
    if kind == "report":
        sample = obj.sample
        if sample.deleted_at is not None:
            raise ValueError("Restore the sample before restoring its report.")
        if any(r.id != obj.id and r.deleted_at is None for r in sample.reports):
            raise ValueError(f"Sample {sample.sample_number} already has a live report.")
    obj.deleted_at = None
    obj.deleted_by_id = None
    number = getattr(obj, number_attr)
    record_event(
        s,
        actor=user,
        module=module,
        action="edit",
        details=f"Restored {kind} {number} from trash",
        entity_type=type(obj).__name__,
        entity_id=obj.id,
    )
    return number


def permanently_delete_item(s: Session, kind: str, obj_id: int, *, user: User) -> str:
    obj = _get_trashed(s, kind, obj_id, user.lab_id)
    _, number_attr, module = TRASH_KINDS[kind]
    number = getattr(obj, number_attr)
    if kind == "sample":
        for report in list(obj.reports):
            s.delete(report)
    elif kind == "invoice":
        reopen_source_proformas(s, obj, user=user)
    record_event(
        s,
        actor=user,
        module=module,
        action="delete",
        details=f"Permanently deleted {kind} {number}",
        entity_type=type(obj).__name__,
        entity_id=obj.id,
    )
    s.delete(obj)
    return number
