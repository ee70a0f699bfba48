# tests/test_tags.py
from __future__ import annotations

import pytest

from turtleops.tags import (
    EMPTY_TAGS,
    POSITIONS,
    ChangeKind,
    TagPosition,
    TagSet,
    classify,
    diff,
    normalize_tag,
    summarize_transitions,
)


def test_positions_order_and_labels():
    assert [p.code for p in POSITIONS] == ["LRF", "RRF", "RFF", "LFF"]
    assert TagPosition.LRF.label == "LRF (Left Rear)"
    assert TagPosition.RFF.label == "RFF (Right Front)"


@pytest.mark.parametrize(
    "prev,cur,expected",
    [
        (None, "A1", ChangeKind.NEW),
        ("", "A1", ChangeKind.NEW),
        ("A1", "A2", ChangeKind.REPLACED),
        ("A1", None, ChangeKind.LOST),
        ("A1", "  ", ChangeKind.LOST),
        ("A1", "A1", None),
        (None, "", None),
    ],
)
def test_classify(prev, cur, expected):
    assert classify(prev, cur) is expected


def test_classify_is_case_sensitive():
    assert classify("ab1", "AB1") is ChangeKind.REPLACED


def test_diff_scenario_replace_and_lose():
    prev = TagSet(lrf="AB100", rrf="AB101")
    cur = TagSet(lrf="AB200")
    out = diff(prev, cur)

    assert [(t.position, t.kind) for t in out] == [
        (TagPosition.LRF, ChangeKind.REPLACED),
        (TagPosition.RRF, ChangeKind.LOST),
    ]
    assert out[0].previous_value == "AB100"
    assert out[0].current_value == "AB200"
    assert out[1].current_value is None


def test_diff_identical_is_empty():
    tags = TagSet(lrf="X1", rff="X2")
    assert diff(tags, tags) == []
    assert diff(EMPTY_TAGS, EMPTY_TAGS) == []


def test_diff_from_empty_is_all_new():
    cur = TagSet(lrf="A", rrf="B", rff="C", lff="D")
    out = diff(EMPTY_TAGS, cur)
    assert len(out) == 4
    assert all(t.kind is ChangeKind.NEW for t in out)


def test_diff_row_count_matches_changed_positions():
    prev = TagSet(lrf="A", rrf="B", rff="C")
    cur = TagSet(lrf="A", rrf="B2", lff="D")
    changed = sum(1 for p in POSITIONS if prev.get(p) != cur.get(p))
    assert len(diff(prev, cur)) == changed == 3


def test_tagset_treats_blank_as_none():
    t = TagSet(lrf="", rrf="   ", rff="X")
    assert t.lrf is None
    assert t.rrf is None
    assert t.values() == ["X"]
    assert not t.is_empty()
    assert TagSet(lrf="").is_empty()


def test_tagset_normalized():
    t = TagSet.normalized(lrf=" ab123 ", rrf="")
    assert t.lrf == "AB123"
    assert t.rrf is None
    assert TagSet.normalized() == EMPTY_TAGS


def test_tagset_with_value_returns_new_set():
    base = TagSet(lrf="A")
    changed = base.with_value(TagPosition.RRF, "B")
    assert base.rrf is None
    assert changed.as_dict() == {"lrf": "A", "rrf": "B", "rff": None, "lff": None}


def test_normalize_tag():
    assert normalize_tag("  mm42 ") == "MM42"
    assert normalize_tag("") is None
    assert normalize_tag(None) is None
    assert normalize_tag(1234) == "1234"


def test_summarize_transitions():
    prev = TagSet(lrf="A", rrf="B")
    cur = TagSet(lrf="C", rff="D")
    assert summarize_transitions(diff(prev, cur)) == "Tags updated: LRF replaced, RRF fell_off, RFF new"
    assert summarize_transitions([]) is None


def test_change_kind_status():
    assert ChangeKind.NEW.status == "Active"
    assert ChangeKind.REPLACED.status == "Replaced"
    assert ChangeKind.LOST.status == "Lost"
    assert ChangeKind.LOST.form_verb == "fell_off"
