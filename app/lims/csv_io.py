from __future__ import annotations

import csv
import io
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field


@dataclass(frozen=True)
class CsvRowError:
    row_number: int
    message: str

    def __str__(self) -> str:
        return f"Row {self.row_number}: {self.message}"


@dataclass
class ImportResult:
    created: int = 0
    updated: int = 0
    errors: list[CsvRowError] = field(default_factory=list)

    @property
    def summary(self) -> str:
        return f"{self.created} created, {self.updated} updated, {len(self.errors)} error(s)"


def iter_csv_rows(file_bytes: bytes, *, required: Iterable[str] = ()) -> Iterator[tuple[int, dict[str, str]]]:
    """
    Yield (row_number, row) for every non-blank data row. Row 1 is the header.
    Values are stripped; missing cells come back as "".
    """
    text = file_bytes.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValueError("CSV has no header row.")
    headers = {(h or "").strip() for h in reader.fieldnames}
    missing = [h for h in required if h not in headers]
    if missing:
        raise ValueError(f"CSV is missing required column(s): {', '.join(missing)}")

    for idx, raw in enumerate(reader, start=2):
        row = {(k or "").strip(): (v or "").strip() for k, v in raw.items() if k is not None}
        if all(v == "" for v in row.values()):
            continue
        yield idx, row


def write_csv(headers: list[str], rows: Iterable[Iterable[object]]) -> str:
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(headers)
    for r in rows:
        w.writerow(["" if v is None else v for v in r])
    return out.getvalue()
