# tests/test_reporting.py
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import add_observation, add_turtle, ts
from turtleops.errors import ValidationError
from turtleops.history import record_tag_history
from turtleops.reporting import (
    CMTTP_HEADER,
    HistoryEntry,
    ReportFilters,
    build_report,
    change_stats,
    cmttp_table,
    format_report_date,
    history_table,
    load_history_entries,
    turtles_table,
)
from turtleops.tags import EMPTY_TAGS, ChangeKind, TagPosition, TagSet


def _entry(
    name: str,
    previous: TagSet,
    current: TagSet,
    at: datetime,
    observer: str = "Pat",
) -> HistoryEntry:
    return HistoryEntry(
        id=f"h-{name}-{at:%Y%m%d}",
        turtle_id=f"t-{name}",
        turtle_name=name,
        observation_id=f"o-{name}-{at:%Y%m%d}",
        encounter_date=at,
        observer_name=observer,
        previous=previous,
        current=current,
    )


MABEL = _entry("MABEL", TagSet(lrf="AB100", rrf="AB101"), TagSet(lrf="AB200"), ts(2025, 6, 15))
CORAL = _entry("CORAL", EMPTY_TAGS, TagSet(lff="XY900"), ts(2025, 6, 1), observer="Sam")
PEARL = _entry("PEARL", TagSet(lrf="QQ1", rff="QQ2"), TagSet(lrf="QQ1", rff="QQ3"), ts(2025, 7, 4))


def test_replace_and_lose_rows():
    rows = build_report([MABEL])

    assert len(rows) == 2
    first, second = rows
    assert (first.position, first.old_tag, first.new_tag, first.change_type) == (
        TagPosition.LRF,
        "AB100",
        "AB200",
        ChangeKind.REPLACED,
    )
    assert (second.position, second.old_tag, second.new_tag, second.change_type) == (
        TagPosition.RRF,
        "AB101",
        "(none)",
        ChangeKind.LOST,
    )
    assert second.tag_number == "AB101"
    assert second.status == "Lost"


def test_row_count_equals_changed_positions():
    rows = build_report([MABEL, CORAL, PEARL])
    assert len(rows) == 2 + 1 + 1


def test_default_sort_is_newest_first():
    rows = build_report([CORAL, MABEL, PEARL])
    assert [r.turtle_name for r in rows] == ["PEARL", "MABEL", "MABEL", "CORAL"]


def test_sort_options():
    asc = build_report([MABEL, PEARL, CORAL], ReportFilters(sort="date_asc"))
    assert [r.turtle_name for r in asc][0] == "CORAL"

    by_turtle = build_report([MABEL, PEARL, CORAL], ReportFilters(sort="turtle"))
    assert [r.turtle_name for r in by_turtle] == ["CORAL", "MABEL", "MABEL", "PEARL"]

    with pytest.raises(ValidationError):
        ReportFilters(sort="random")


def test_search_matches_unchanged_position():
    # QQ1 did not change for PEARL, the record still matches and its RFF row is kept.
    rows = build_report([MABEL, CORAL, PEARL], ReportFilters(search="qq1"))
    assert [(r.turtle_name, r.position) for r in rows] == [("PEARL", TagPosition.RFF)]


def test_search_matches_previous_values():
    rows = build_report([MABEL, CORAL, PEARL], ReportFilters(search="AB101"))
    assert {r.turtle_name for r in rows} == {"MABEL"}
    assert len(rows) == 2


def test_blank_search_is_ignored():
    assert len(build_report([MABEL, CORAL], ReportFilters(search="   "))) == 3


def test_date_range_is_inclusive():
    f = ReportFilters(date_from=ts(2025, 6, 1), date_to=ts(2025, 6, 15))
    names = {r.turtle_name for r in build_report([MABEL, CORAL, PEARL], f)}
    assert names == {"MABEL", "CORAL"}


def test_date_range_must_be_ordered():
    with pytest.raises(ValidationError):
        ReportFilters(date_from=ts(2025, 7, 1), date_to=ts(2025, 6, 1))


def test_change_type_filter():
    rows = build_report([MABEL, CORAL, PEARL], ReportFilters(change_type=ChangeKind.LOST))
    assert [(r.turtle_name, r.position) for r in rows] == [("MABEL", TagPosition.RRF)]


def test_empty_input():
    assert build_report([]) == []
    assert cmttp_table([], "America/New_York") == []
    assert change_stats([], []) == {"records": 0, "changes": 0, "new": 0, "replaced": 0, "lost": 0}


def test_change_stats():
    entries = [MABEL, CORAL, PEARL]
    rows = build_report(entries)
    assert change_stats(entries, rows) == {"records": 3, "changes": 4, "new": 1, "replaced": 2, "lost": 1}


def test_format_report_date_uses_project_timezone():
    late = datetime(2025, 6, 16, 2, 30, tzinfo=timezone.utc)
    assert format_report_date(late, "America/New_York") == "Jun 15, 2025"
    assert format_report_date(late, "UTC") == "Jun 16, 2025"


def test_cmttp_table_row():
    out = cmttp_table(build_report([MABEL]), "America/New_York")
    assert len(CMTTP_HEADER) == len(out[0]) == 9
    assert out[0] == [
        "MABEL",
        "AB200",
        "LRF (Left Rear)",
        "Jun 15, 2025",
        "Pat",
        "Replaced",
        "AB100",
        "Replaced",
        "",
    ]
    assert out[1][1] == "AB101"
    assert out[1][5] == "Lost"
    assert out[1][7] == "Lost"


def test_cmttp_new_tag_row():
    out = cmttp_table(build_report([CORAL]), "America/New_York")
    assert out == [["CORAL", "XY900", "LFF (Left Front)", "Jun 1, 2025", "Sam", "Active", "(none)", "New", ""]]


def test_history_table_columns():
    out = history_table([MABEL])
    assert out[0][2] == "MABEL"
    assert out[0][6:14] == ["AB100", "AB101", "", "", "AB200", "", "", ""]


def test_load_history_entries_filters_in_sql(session):
    t = add_turtle(session, "MABEL", tags=TagSet(lrf="AB200"))
    for day, prev, cur in (
        (1, EMPTY_TAGS, TagSet(lrf="AB100", rrf="AB101")),
        (15, TagSet(lrf="AB100", rrf="AB101"), TagSet(lrf="AB200")),
    ):
        obs = add_observation(session, t, at=ts(2025, 6, day))
        record_tag_history(
            session,
            turtle=t,
            observation_id=obs.id,
            previous=prev,
            current=cur,
            encounter_at=ts(2025, 6, day),
            observer_id=None,
            observer_name="Pat",
        )
    session.commit()

    all_entries = load_history_entries(session, org_id=t.org_id)
    assert [e.encounter_date.day for e in all_entries] == [15, 1]
    assert all_entries[0].turtle_name == "MABEL"

    searched = load_history_entries(session, org_id=t.org_id, filters=ReportFilters(search="ab2"))
    assert len(searched) == 1

    ranged = load_history_entries(
        session,
        org_id=t.org_id,
        filters=ReportFilters(date_from=ts(2025, 6, 10), date_to=ts(2025, 6, 30)),
    )
    assert [e.encounter_date.day for e in ranged] == [15]

    assert load_history_entries(session, org_id="other-org") == []


def test_turtles_table(session):
    t = add_turtle(session, "MABEL", tags=TagSet(lrf="AB200"), species="Loggerhead", needs_research=True)
    row = turtles_table([t], "America/New_York")[0]
    assert row[1:4] == ["MABEL", "Loggerhead", "AB200"]
    assert row[10] == "Yes"
