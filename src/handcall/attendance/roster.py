"""
CONTRACT: inline
ROLE: Ordered roster and the cursor that guards confirmations.

INPUTS:
  - confirm(identifier) from the session machine
OUTPUTS:
  - Subject.status mutations (Absent -> Present)

CONFIG KEYS:
  - attendance.strict_sequencing: confirmations must follow roster order
  - attendance.max_subjects: only the first N subjects are eligible (null = all)
  - attendance.roster_path: YAML list or exported CSV to load
  - attendance.roster: inline list of {name, identifier}

PERF / TIMING:
  - active_subject() is O(n); rosters are class-sized

FAILURE MODES:
  - duplicate identifier at load -> raise ValueError
  - confirm guard failure -> raise AlreadyConfirmed / NotActive / UnknownSubject

LOG EVENTS:
  - n/a (the session logs guard rejections)

TESTS:
  - tests/test_roster.py must cover duplicate guard, strict order and bounded windows

CONTRACT DETAILS:
# Roster cursor

- Active subject = first subject in roster order, within the first
  max_subjects entries, that is not yet confirmed this session.
- A subject is confirmed at most once per session.
- Strict sequencing accepts only the active subject.
- The cursor is the single writer of Subject.status.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

import yaml

from handcall.attendance.errors import AlreadyConfirmed, NotActive, UnknownSubject
from handcall.attendance.export import parse_roster_export
from handcall.contracts.messages import STATUS_ABSENT, STATUS_PRESENT, Subject, record_identifier


class Roster:
    """Ordered subjects with unique identifiers."""

    def __init__(self, subjects: Iterable[Subject]) -> None:
        self._subjects: List[Subject] = list(subjects)
        self._by_id: Dict[str, Subject] = {}
        for subject in self._subjects:
            if subject.identifier in self._by_id:
                raise ValueError(f"duplicate subject identifier: {subject.identifier}")
            self._by_id[subject.identifier] = subject

    @classmethod
    def from_records(cls, records: Iterable[Dict[str, Any]]) -> "Roster":
        subjects = []
        for record in records:
            identifier = record_identifier(record)
            name = record.get("display_name", record.get("name", ""))
            status = record.get("status") or STATUS_ABSENT
            subjects.append(Subject(identifier=identifier, display_name=str(name or ""), status=str(status)))
        return cls(subjects)

    def __iter__(self) -> Iterator[Subject]:
        return iter(self._subjects)

    def __len__(self) -> int:
        return len(self._subjects)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._by_id

    def get(self, identifier: str) -> Optional[Subject]:
        return self._by_id.get(identifier)

    def at(self, index: int) -> Subject:
        return self._subjects[index]

    def index_of(self, identifier: str) -> int:
        subject = self._by_id.get(identifier)
        if subject is None:
            raise UnknownSubject(identifier)
        return self._subjects.index(subject)

    def present_count(self) -> int:
        return sum(1 for s in self._subjects if s.status == STATUS_PRESENT)

    def absent_count(self) -> int:
        return len(self._subjects) - self.present_count()

    def mark_all_absent(self) -> None:
        for subject in self._subjects:
            subject.status = STATUS_ABSENT

    def snapshot(self) -> List[Subject]:
        """Copies safe to hand to readers outside the session lock."""
        return [Subject(s.identifier, s.display_name, s.status) for s in self._subjects]


class RosterCursor:
    """Tracks the next subject eligible for confirmation."""

    def __init__(self, roster: Roster, strict_sequencing: bool = False, max_subjects: Optional[int] = None) -> None:
        if max_subjects is not None and int(max_subjects) < 0:
            raise ValueError("max_subjects must be >= 0")
        self._roster = roster
        self._strict = bool(strict_sequencing)
        self._max_subjects = len(roster) if max_subjects is None else min(int(max_subjects), len(roster))
        self._confirmed: Set[str] = set()
        self._order: List[str] = []

    @property
    def roster(self) -> Roster:
        return self._roster

    @property
    def strict_sequencing(self) -> bool:
        return self._strict

    def eligible(self) -> List[Subject]:
        return [self._roster.at(i) for i in range(self._max_subjects)]

    def active_subject(self) -> Optional[Subject]:
        for subject in self.eligible():
            if subject.identifier not in self._confirmed:
                return subject
        return None

    def is_exhausted(self) -> bool:
        return self.active_subject() is None

    def is_confirmed(self, identifier: str) -> bool:
        return identifier in self._confirmed

    def confirmed_identifiers(self) -> List[str]:
        """Identifiers in the order they were confirmed."""
        return list(self._order)

    def check(self, identifier: str) -> Subject:
        """Return the subject if confirm(identifier) would succeed, else raise."""
        subject = self._roster.get(identifier)
        if subject is None:
            raise UnknownSubject(identifier)
        if identifier in self._confirmed:
            raise AlreadyConfirmed(identifier)
        if self._roster.index_of(identifier) >= self._max_subjects:
            raise NotActive(identifier, f"not_active: {identifier} is outside the first {self._max_subjects} subjects")
        if self._strict:
            active = self.active_subject()
            if active is None or active.identifier != identifier:
                raise NotActive(identifier)
        return subject

    def confirm(self, identifier: str) -> Subject:
        subject = self.check(identifier)
        subject.status = STATUS_PRESENT
        self._confirmed.add(identifier)
        self._order.append(identifier)
        return subject

    def clear(self) -> None:
        """Forget this session's confirmations (statuses are left to the caller)."""
        self._confirmed.clear()
        self._order.clear()


def load_roster(path: str) -> Roster:
    """Load a roster from YAML (list of mappings) or an exported CSV file."""
    file_path = Path(path)
    text = file_path.read_text(encoding="utf-8")
    if file_path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(text) or []
        if isinstance(data, dict):
            data = data.get("roster", data.get("subjects", []))
        if not isinstance(data, list):
            raise ValueError(f"roster file must hold a list: {path}")
        return Roster.from_records(data)
    return Roster(parse_roster_export(text))


def roster_from_config(config: Dict[str, Any]) -> Roster:
    attendance = config.get("attendance", {}) or {}
    roster_path = str(attendance.get("roster_path", "") or "")
    if roster_path:
        return load_roster(roster_path)
    return Roster.from_records(attendance.get("roster", []) or [])
