"""
Per-lab document numbering.

Each (lab, module) pair owns one FormatID counter row. Numbers look like
``{prefix}-{YYMMDD}-{seq:03d}``, e.g. ``REG-260226-001``.
"""
from __future__ import annotations

import re
from datetime import date, datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.lims.constants import DEFAULT_FORMAT_IDS
from app.lims.models import FormatID

_PREFIX_RE = re.compile(r"[A-Z0-9-]+")


def format_number(prefix: str, sequence_number: int, on: date | None = None, suffix: str | None = None) -> str:
    d = on or datetime.utcnow().date()
    number = f"{prefix}-{d.strftime('%y%m%d')}-{sequence_number:03d}"
    if suffix:
        number = f"{number}-{suffix}"
    return number


def _increment(s: Session, lab_id: int, module: str) -> tuple[str, int] | None:
    res = s.execute(
        update(FormatID)
        .where(FormatID.lab_id == lab_id, FormatID.module == module)
        .values(last_number=FormatID.last_number + 1)
        .execution_options(synchronize_session=False)
    )
    if not res.rowcount:
        return None
    prefix, last_number = s.execute(
        select(FormatID.prefix, FormatID.last_number).where(FormatID.lab_id == lab_id, FormatID.module == module)
    ).one()
    return prefix, int(last_number)


def generate_next_number(
    s: Session,
    lab_id: int,
    module: str,
    fallback_prefix: str,
    *,
    today: date | None = None,
) -> tuple[str, int]:
    """
    Atomically bump the (lab, module) counter and return (formatted_number, sequence_number).

    The increment is a single UPDATE, so the row lock it takes serializes concurrent
    callers until the surrounding transaction commits. A missing counter row is created
    with fallback_prefix; a concurrent insert of the same row is absorbed by the savepoint.
    """
    bumped = _increment(s, lab_id, module)
    if bumped is None:
        try:
            with s.begin_nested():
                s.add(FormatID(lab_id=lab_id, module=module, prefix=fallback_prefix, last_number=0))
        except IntegrityError:
            pass
        bumped = _increment(s, lab_id, module)
        if bumped is None:
            raise RuntimeError(f"Could not allocate a number for module '{module}'")
    prefix, sequence_number = bumped
    return format_number(prefix, sequence_number, today), sequence_number


def generate_linked_number(
    s: Session,
    lab_id: int,
    module: str,
    sequence_number: int,
    fallback_prefix: str,
    *,
    on: date | None = None,
    suffix: str | None = None,
) -> str:
    """
    Format a number for `module` that reuses an existing sequence number
    (e.g. a report numbered after its sample). The counter is not touched.
    """
    prefix = s.execute(
        select(FormatID.prefix).where(FormatID.lab_id == lab_id, FormatID.module == module)
    ).scalar_one_or_none()
    return format_number(prefix or fallback_prefix, sequence_number, on, suffix)


def ensure_format_ids(s: Session, lab_id: int) -> list[FormatID]:
    """Create any missing default counters for a lab (idempotent)."""
    existing = {
        f.module: f for f in s.query(FormatID).filter(FormatID.lab_id == lab_id).all()
    }
    out: list[FormatID] = []
    for module, prefix in DEFAULT_FORMAT_IDS.items():
        row = existing.get(module)
        if row is None:
            row = FormatID(lab_id=lab_id, module=module, prefix=prefix, last_number=0)
            s.add(row)
        out.append(row)
    s.flush()
    return out


def update_format_prefix(s: Session, lab_id: int, module: str, prefix: str) -> FormatID:
    prefix = (prefix or "").strip().upper()
    if not _PREFIX_RE.fullmatch(prefix):
        raise ValueError("Prefix may only contain letters A-Z, digits and dashes.")
    row = s.query(FormatID).filter(FormatID.lab_id == lab_id, FormatID.module == module).one_or_none()
    if row is None:
        row = FormatID(lab_id=lab_id, module=module, prefix=prefix, last_number=0)
        s.add(row)
    else:
        row.prefix = prefix
    s.flush()
    return row
