from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.lims.audit import record_event
from app.lims.constants import SAMPLE_TYPE_STATUSES
from app.lims.csv_io import CsvRowError, ImportResult, iter_csv_rows, write_csv
from app.lims.models import User
from app.lims.modules.sample_types.models import SampleType

SAMPLE_TYPE_CSV_HEADERS = ["name", "description", "specificationStandard", "status", "tests"]

_TEST_KEYS = ("parameter", "method", "unit", "specMin", "specMax", "tat")


def _clean(v: Any) -> str | None:
    return (str(v) if v is not None else "").strip() or None


def normalize_test(raw: dict[str, Any]) -> dict[str, Any]:
    """Canonical shape of one default test. `testMethod` is accepted as an alias of `method`."""
    parameter = _clean(raw.get("parameter"))
    if not parameter:
        raise ValueError("Every test needs a parameter name.")
    tat_raw = raw.get("tat")
    tat: int | None = None
    if tat_raw not in (None, ""):
        try:
            tat = int(tat_raw)
        except (TypeError, ValueError):
            raise ValueError(f"TAT for '{parameter}' must be a whole number of days.") from None
        if tat < 0:
            raise ValueError(f"TAT for '{parameter}' cannot be negative.")
    out: dict[str, Any] = {
        "parameter": parameter,
        "method": _clean(raw.get("method")) or _clean(raw.get("testMethod")),
        "unit": _clean(raw.get("unit")),
        "specMin": _clean(raw.get("specMin")),
        "specMax": _clean(raw.get("specMax")),
        "tat": tat,
    }
    return {k: out[k] for k in _TEST_KEYS}


def parse_default_tests(raw: str | list | None) -> list[dict[str, Any]]:
    if raw is None or raw == "":
        return []
    value = raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Tests JSON is invalid: {e}") from None
    if not isinstance(value, list):
        raise ValueError("Tests must be a JSON array.")
    tests = []
    for item in value:
        if not isinstance(item, dict):
            raise ValueError("Each test must be a JSON object.")
        tests.append(normalize_test(item))
    return tests


def list_sample_types(s: Session, lab_id: int, *, active_only: bool = False) -> list[SampleType]:
    q = s.query(SampleType).filter(SampleType.lab_id == lab_id)
    if active_only:
        q = q.filter(SampleType.status == "active")
    return q.order_by(SampleType.name.asc()).all()


def _apply_payload(st: SampleType, payload: dict[str, Any]) -> None:
    name = _clean(payload.get("name"))
    if not name:
        raise ValueError("Name is required.")
    status = _clean(payload.get("status")) or "active"
    if status not in SAMPLE_TYPE_STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(SAMPLE_TYPE_STATUSES)}")
    st.name = name
    st.description = _clean(payload.get("description"))
    st.specification_standard = _clean(payload.get("specification_standard"))
    st.status = status
    st.default_tests = json.dumps(parse_default_tests(payload.get("tests")))


def create_sample_type(s: Session, payload: dict[str, Any], *, user: User) -> SampleType:
    now = datetime.utcnow()
    st = SampleType(lab_id=user.lab_id, created_at=now, updated_at=now)
    _apply_payload(st, payload)
    s.add(st)
    s.flush()
    record_event(
        s,
        actor=user,
        module="masters",
        action="create",
        details=f"Created sample type {st.name} ({len(st.tests)} tests)",
        entity_type="SampleType",
        entity_id=st.id,
    )
    return st


def update_sample_type(s: Session, st: SampleType, payload: dict[str, Any], *, user: User) -> SampleType:
    _apply_payload(st, payload)
    st.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        module="masters",
        action="edit",
        details=f"Updated sample type {st.name}",
        entity_type="SampleType",
        entity_id=st.id,
    )
    return st


def delete_sample_type(s: Session, st: SampleType, *, user: User) -> None:
    from app.lims.modules.samples.models import Sample

    n = s.query(func.count(Sample.id)).filter(Sample.sample_type_id == st.id).scalar() or 0
    if n:
        raise ValueError(f"Cannot delete sample type. There are {n} sample(s) using this sample type.")
    record_event(
        s,
        actor=user,
        module="masters",
        action="delete",
        details=f"Deleted sample type {st.name}",
        entity_type="SampleType",
        entity_id=st.id,
    )
    s.delete(st)


# ---------- CSV import / export ----------


def export_sample_types_csv(s: Session, lab_id: int) -> str:
    return write_csv(
        SAMPLE_TYPE_CSV_HEADERS,
        (
            [st.name, st.description, st.specification_standard, st.status, json.dumps(st.tests)]
            for st in list_sample_types(s, lab_id)
        ),
    )


def import_sample_types_csv(s: Session, file_bytes: bytes, *, user: User) -> ImportResult:
    """Rows match existing sample types on (name, specification standard)."""
    result = ImportResult()
    for row_number, row in iter_csv_rows(file_bytes, required=("name",)):
        name = row.get("name", "")
        if not name:
            result.errors.append(CsvRowError(row_number, "Name is required"))
            continue
        spec = row.get("specificationStandard", "") or None
        payload = {
            "name": name,
            "description": row.get("description", ""),
            "specification_standard": spec,
            "status": row.get("status", "") or "active",
            "tests": row.get("tests", "") or "[]",
        }
        try:
            with s.begin_nested():
                existing = (
                    s.query(SampleType)
                    .filter(
                        SampleType.lab_id == user.lab_id,
                        SampleType.name == name,
                        SampleType.specification_standard.is_(None)
                        if spec is None
                        else SampleType.specification_standard == spec,
                    )
                    .first()
                )
                if existing:
                    update_sample_type(s, existing, payload, user=user)
                    result.updated += 1
                else:
                    create_sample_type(s, payload, user=user)
                    result.created += 1
        except (ValueError, IntegrityError) as e:
            result.errors.append(CsvRowError(row_number, f"({name}) {e}"))

    record_event(
        s,
        actor=user,
        module="admin",
        action="import",
        details=f"Imported sample types: {result.created} created, {result.updated} updated",
    )
    return result
