# src/turtleops/reporting.py
"""
Tag-change reporting and exports.

Pipeline:
1. Pre-filter history rows by date range and tag search.  A row matches the
   search when any of its eight tag values (4 previous + 4 current) contains
   the term, even if that position did not change.
2. Sort (newest encounter first by default).
3. Flatten each row into one TagChangeRow per changed position.
4. Render as the fixed-column CMTTP table or a generic CSV table.

Everything except :func:`load_history_entries` is pure and works on
:class:`HistoryEntry` snapshots.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import desc, or_, select
from sqlalchemy.orm import Session

from turtleops.config import REPORT_SORTS, valid_timezone
from turtleops.errors import ValidationError
from turtleops.models import TagHistory, Turtle, _as_utc_str, _to_utc
from turtleops.tags import POSITIONS, ChangeKind, TagPosition, TagSet, diff

NONE_LABEL = "(none)"

CMTTP_HEADER = [
    "Turtle Name",
    "Tag Number",
    "Tag Position",
    "Tag Applied Date",
    "Tag Applied By",
    "Tag Status",
    "Previous Tag",
    "Tag Change Type",
    "Notes",
]

HISTORY_HEADER = [
    "history_id",
    "turtle_id",
    "turtle_name",
    "observation_id",
    "encounter_utc",
    "observer_name",
    "previous_lrf",
    "previous_rrf",
    "previous_rff",
    "previous_lff",
    "lrf",
    "rrf",
    "rff",
    "lff",
    "notes",
]

TURTLES_HEADER = [
    "ID",
    "Name",
    "Species",
    "LRF",
    "RRF",
    "RFF",
    "LFF",
    "First Encountered",
    "Last Encountered",
    "Encounter Count",
    "Needs Research",
    "Suggested Name",
]


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    turtle_id: str
    turtle_name: str
    observation_id: str
    encounter_date: datetime
    observer_name: str
    previous: TagSet
    current: TagSet
    notes: str | None = None

    @classmethod
    def from_row(cls, row: TagHistory, turtle_name: str | None) -> "HistoryEntry":
        return cls(
            id=row.id,
            turtle_id=row.turtle_id,
            turtle_name=turtle_name or "Unknown",
            observation_id=row.observation_id,
            encounter_date=_to_utc(row.encounter_date),
            observer_name=row.observer_name,
            previous=row.previous_tags,
            current=row.current_tags,
            notes=row.notes,
        )

    def tag_values(self) -> list[str]:
        return self.previous.values() + self.current.values()


@dataclass(frozen=True)
class ReportFilters:
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None
    change_type: ChangeKind | None = None
    sort: str = "date_desc"

    def __post_init__(self) -> None:
        if self.sort not in REPORT_SORTS:
            raise ValidationError(f"unknown sort {self.sort!r}; expected one of {', '.join(REPORT_SORTS)}")
        if self.date_from and self.date_to and _to_utc(self.date_from) > _to_utc(self.date_to):
            raise ValidationError("date_from must not be after date_to")

    @property
    def search_term(self) -> str | None:
        term = (self.search or "").strip()
        return term or None


@dataclass(frozen=True)
class TagChangeRow:
    turtle_name: str
    encounter_date: datetime
    observer_name: str
    position: TagPosition
    old_tag: str
    new_tag: str
    change_type: ChangeKind

    @property
    def tag_number(self) -> str:
        # A lost row still names the physical tag that was lost.
        return self.new_tag if self.new_tag != NONE_LABEL else self.old_tag

    @property
    def status(self) -> str:
        return self.change_type.status


def matches_filters(entry: HistoryEntry, filters: ReportFilters) -> bool:
    ts = _to_utc(entry.encounter_date)
    if filters.date_from is not None and ts < _to_utc(filters.date_from):
        return False
    if filters.date_to is not None and ts > _to_utc(filters.date_to):
        return False
    term = filters.search_term
    if term is not None:
        needle = term.lower()
        if not any(needle in v.lower() for v in entry.tag_values()):
            return False
    return True


def sort_entries(entries: Iterable[HistoryEntry], sort: str = "date_desc") -> list[HistoryEntry]:
    items = list(entries)
    if sort == "date_asc":
        return sorted(items, key=lambda e: _to_utc(e.encounter_date))
    if sort == "turtle":
        items.sort(key=lambda e: _to_utc(e.encounter_date), reverse=True)
        return sorted(items, key=lambda e: e.turtle_name)
    return sorted(items, key=lambda e: _to_utc(e.encounter_date), reverse=True)


def changes_for_entry(entry: HistoryEntry) -> list[TagChangeRow]:
    return [
        TagChangeRow(
            turtle_name=entry.turtle_name,
            encounter_date=entry.encounter_date,
            observer_name=entry.observer_name,
            position=t.position,
            old_tag=t.previous_value or NONE_LABEL,
            new_tag=t.current_value or NONE_LABEL,
            change_type=t.kind,
        )
        for t in diff(entry.previous, entry.current)
    ]


def build_report(entries: Iterable[HistoryEntry], filters: ReportFilters | None = None) -> list[TagChangeRow]:
    """
    Flatten history entries into per-position change rows.

    Date range and search are applied to whole entries before classification;
    ``change_type`` narrows the resulting rows.
    """
    f = filters or ReportFilters()
    selected = [e for e in entries if matches_filters(e, f)]
    rows: list[TagChangeRow] = []
    for entry in sort_entries(selected, f.sort):
        rows.extend(changes_for_entry(entry))
    if f.change_type is not None:
        rows = [r for r in rows if r.change_type is f.change_type]
    return rows


def change_stats(entries: Sequence[HistoryEntry], rows: Sequence[TagChangeRow]) -> dict[str, int]:
    stats = {"records": len(entries), "changes": len(rows)}
    for kind in ChangeKind:
        stats[kind.value] = sum(1 for r in rows if r.change_type is kind)
    return stats


# ----------------------------
# Rendering
# ----------------------------

def format_report_date(dt: datetime, tz: str) -> str:
    """``Jun 15, 2025`` in the project timezone."""
    local = _to_utc(dt).astimezone(ZoneInfo(valid_timezone(tz)))
    return f"{local:%b} {local.day}, {local.year}"


def cmttp_table(rows: Iterable[TagChangeRow], tz: str) -> list[list[str]]:
    out: list[list[str]] = []
    for r in rows:
        out.append(
            [
                r.turtle_name,
                r.tag_number,
                r.position.label,
                format_report_date(r.encounter_date, tz),
                r.observer_name,
                r.status,
                r.old_tag,
                r.change_type.value.capitalize(),
                "",
            ]
        )
    return out


def history_table(entries: Iterable[HistoryEntry]) -> list[list[Any]]:
    out: list[list[Any]] = []
    for e in entries:
        out.append(
            [
                e.id,
                e.turtle_id,
                e.turtle_name,
                e.observation_id,
                _as_utc_str(e.encounter_date) or "",
                e.observer_name,
                *[e.previous.get(p) or "" for p in POSITIONS],
                *[e.current.get(p) or "" for p in POSITIONS],
                e.notes or "",
            ]
        )
    return out


def turtles_table(turtles: Iterable[Turtle], tz: str) -> list[list[Any]]:
    out: list[list[Any]] = []
    for t in turtles:
        out.append(
            [
                t.id,
                t.name,
                t.species or "",
                t.lrf or "",
                t.rrf or "",
                t.rff or "",
                t.lff or "",
                format_report_date(t.first_encountered_at, tz) if t.first_encountered_at else "",
                format_report_date(t.last_encountered_at, tz) if t.last_encountered_at else "",
                int(t.encounter_count or 0),
                "Yes" if t.needs_research else "No",
                t.suggested_name or "",
            ]
        )
    return out


# ----------------------------
# Loading
# ----------------------------

def load_history_entries(
    session: Session,
    *,
    org_id: str,
    filters: ReportFilters | None = None,
) -> list[HistoryEntry]:
    """
    Fetch history rows for an organization with the date/search pre-filter
    pushed into SQL.  Same semantics as :func:`matches_filters`.
    """
    f = filters or ReportFilters()
    q = (
        select(TagHistory, Turtle.name)
        .join(Turtle, Turtle.id == TagHistory.turtle_id)
        .where(TagHistory.org_id == org_id)
    )
    if f.date_from is not None:
        q = q.where(TagHistory.encounter_date >= _to_utc(f.date_from))
    if f.date_to is not None:
        q = q.where(TagHistory.encounter_date <= _to_utc(f.date_to))
    term = f.search_term
    if term is not None:
        pat = f"%{term}%"
        q = q.where(
            or_(
                *[getattr(TagHistory, p.value).ilike(pat) for p in POSITIONS],
                *[getattr(TagHistory, f"previous_{p.value}").ilike(pat) for p in POSITIONS],
            )
        )
    q = q.order_by(desc(TagHistory.encounter_date))
    return [HistoryEntry.from_row(row, name) for row, name in session.execute(q).all()]
