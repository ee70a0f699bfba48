# tests/test_history.py
from __future__ import annotations

import pytest

from conftest import add_observation, add_turtle, ts
from turtleops.errors import AuditWriteFailure
from turtleops.history import list_tag_history, needs_history, record_tag_history
from turtleops.models import TagHistory, Turtle
from turtleops.tags import EMPTY_TAGS, TagSet


def test_needs_history():
    a = TagSet(lrf="A")
    assert needs_history(a, TagSet(lrf="B"), is_new_turtle=False)
    assert not needs_history(a, a, is_new_turtle=False)
    assert needs_history(EMPTY_TAGS, a, is_new_turtle=True)
    assert not needs_history(EMPTY_TAGS, EMPTY_TAGS, is_new_turtle=True)


def test_records_both_tag_sets(session):
    t = add_turtle(session, "MABEL", tags=TagSet(lrf="AB200"))
    obs = add_observation(session, t, at=ts(2025, 6, 15))

    entry = record_tag_history(
        session,
        turtle=t,
        observation_id=obs.id,
        previous=TagSet(lrf="AB100", rrf="AB101"),
        current=TagSet(lrf="AB200"),
        encounter_at=ts(2025, 6, 15),
        observer_id="u1",
        observer_name="Pat",
    )
    session.commit()

    assert entry is not None
    assert entry.previous_tags == TagSet(lrf="AB100", rrf="AB101")
    assert entry.current_tags == TagSet(lrf="AB200")
    assert entry.notes == "Tags updated: LRF replaced, RRF fell_off"
    assert entry.observer_name == "Pat"


def test_no_row_when_unchanged(session):
    t = add_turtle(session, "MABEL", tags=TagSet(lrf="AB200"))
    obs = add_observation(session, t)

    entry = record_tag_history(
        session,
        turtle=t,
        observation_id=obs.id,
        previous=TagSet(lrf="AB200"),
        current=TagSet(lrf="AB200"),
        encounter_at=ts(2025, 6, 15),
        observer_id=None,
        observer_name="Pat",
    )
    session.commit()

    assert entry is None
    assert session.query(TagHistory).count() == 0


def test_new_turtle_row_has_empty_previous(session):
    t = add_turtle(session, "UNNAMED-20250615-001", tags=TagSet(lrf="AB123"))
    obs = add_observation(session, t)

    entry = record_tag_history(
        session,
        turtle=t,
        observation_id=obs.id,
        previous=EMPTY_TAGS,
        current=TagSet(lrf="AB123"),
        encounter_at=ts(2025, 6, 15),
        observer_id=None,
        observer_name="Pat",
        is_new_turtle=True,
    )
    session.commit()

    assert entry is not None
    assert entry.previous_tags.is_empty()
    assert entry.notes == "Tags updated: LRF new"


def test_failed_insert_rolls_back_only_the_audit_row(session):
    t = add_turtle(session, "MABEL", tags=TagSet(lrf="A"), encounter_count=1)
    obs = add_observation(session, t)

    t.encounter_count = 2
    session.flush()
    with pytest.raises(AuditWriteFailure):
        record_tag_history(
            session,
            turtle=t,
            observation_id=obs.id,
            previous=TagSet(lrf="A"),
            current=TagSet(lrf="B"),
            encounter_at=ts(2025, 6, 15),
            observer_id=None,
            observer_name=None,  # violates NOT NULL
        )
    session.commit()

    session.expire_all()
    assert session.get(Turtle, t.id).encounter_count == 2
    assert session.query(TagHistory).count() == 0


def test_list_tag_history_newest_first(session):
    t = add_turtle(session, "MABEL")
    for day, tag in ((1, "A"), (20, "C"), (10, "B")):
        obs = add_observation(session, t, at=ts(2025, 6, day))
        record_tag_history(
            session,
            turtle=t,
            observation_id=obs.id,
            previous=EMPTY_TAGS,
            current=TagSet(lrf=tag),
            encounter_at=ts(2025, 6, day),
            observer_id=None,
            observer_name="Pat",
        )
    session.commit()

    rows = list_tag_history(session, t.id, org_id=t.org_id)
    assert [r.lrf for r in rows] == ["C", "B", "A"]
    assert list_tag_history(session, t.id, org_id="other-org") == []
