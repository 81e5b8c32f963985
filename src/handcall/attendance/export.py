"""
CONTRACT: inline
ROLE: Roster <-> tabular text.

INPUTS:
  - Roster (any iterable of Subject, roster order)
OUTPUTS:
  - text: header "Name, Identifier, Status", one row per subject

CONFIG KEYS:
  - attendance.export.path: file written by write_export (default <run_dir>/attendance/attendance_list.csv)

PERF / TIMING:
  - O(n) per export; called from UI/CLI threads on a snapshot

FAILURE MODES:
  - malformed text -> parse_roster_export raises ValueError

LOG EVENTS:
  - n/a

TESTS:
  - tests/test_sink_and_export.py must cover the exact two-row example and quoting

CONTRACT DETAILS:
# Export format

- Values are joined with ", " and rows with "\\n"; no trailing newline.
- A value that contains a comma, a quote, a line break or surrounding
  whitespace is wrapped in double quotes with inner quotes doubled, so that
  parse_roster_export(export_roster(r)) gives back the same names,
  identifiers and statuses.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, List

from handcall.contracts.messages import Subject


HEADER = ("Name", "Identifier", "Status")
SEPARATOR = ", "


def export_roster(subjects: Iterable[Subject]) -> str:
    rows = [SEPARATOR.join(HEADER)]
    for subject in subjects:
        rows.append(SEPARATOR.join(_quote(v) for v in (subject.display_name, subject.identifier, subject.status)))
    return "\n".join(rows)


def parse_roster_export(text: str) -> List[Subject]:
    """Parse export_roster output back into subjects."""
    reader = csv.reader(text.splitlines(keepends=True), skipinitialspace=True)
    rows = [row for row in reader if row]
    if not rows:
        raise ValueError("empty roster export")
    header = tuple(cell.strip() for cell in rows[0])
    if header[:2] != HEADER[:2]:
        raise ValueError(f"unexpected export header: {rows[0]!r}")
    subjects: List[Subject] = []
    for line_no, row in enumerate(rows[1:], start=2):
        if len(row) < 2:
            raise ValueError(f"line {line_no}: expected at least name and identifier, got {row!r}")
        status = row[2] if len(row) > 2 and row[2] else "Absent"
        subjects.append(Subject(identifier=row[1], display_name=row[0], status=status))
    return subjects


def write_export(subjects: Iterable[Subject], path: str) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(export_roster(subjects), encoding="utf-8")
    return out


def _quote(value: str) -> str:
    text = str(value)
    if any(ch in text for ch in (",", '"', "\n", "\r")) or text != text.strip():
        return '"' + text.replace('"', '""') + '"'
    return text
