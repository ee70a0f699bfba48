# tests/test_intake.py
from __future__ import annotations

import pytest

import turtleops.intake as intake_mod
from conftest import ORG, add_turtle, ts
from turtleops.errors import AuditWriteFailure, NotFoundError, ValidationError
from turtleops.intake import (
    AUDIT_WARNING,
    ClearTurtle,
    EncounterDraft,
    SelectTurtle,
    SetComments,
    SetEncounterTime,
    SetObserver,
    SetTag,
    reduce_draft,
    submit_encounter,
)
from turtleops.models import Observation, Photo, TagHistory, Turtle
from turtleops.reporting import build_report, cmttp_table, load_history_entries
from turtleops.schema import EncounterIn, TagValuesIn
from turtleops.tags import ChangeKind, TagPosition, TagSet


def _intake(**kw) -> EncounterIn:
    data = {
        "encounter_timestamp": ts(2025, 6, 15),
        "observer_name": "Pat",
        "org_id": ORG,
    }
    data.update(kw)
    return EncounterIn(**data)


# ----------------------------
# Draft
# ----------------------------

def test_select_turtle_prefills_both_tag_sets():
    tags = TagSet(lrf="AB100", rrf="AB101")
    d = reduce_draft(EncounterDraft(), SelectTurtle("t1", "MABEL", tags))

    assert d.is_recapture
    assert d.previous == tags
    assert d.current == tags
    assert d.transitions() == []


def test_edit_tags_previews_transitions():
    d = reduce_draft(EncounterDraft(), SelectTurtle("t1", "MABEL", TagSet(lrf="AB100", rrf="AB101")))
    d = reduce_draft(d, SetTag(TagPosition.LRF, " ab200 "))
    d = reduce_draft(d, SetTag(TagPosition.RRF, ""))

    assert d.current == TagSet(lrf="AB200")
    assert [(t.position, t.kind) for t in d.transitions()] == [
        (TagPosition.LRF, ChangeKind.REPLACED),
        (TagPosition.RRF, ChangeKind.LOST),
    ]


def test_clear_turtle_resets_previous_only():
    d = reduce_draft(EncounterDraft(), SelectTurtle("t1", "MABEL", TagSet(lrf="A")))
    d = reduce_draft(d, ClearTurtle())
    assert not d.is_recapture
    assert d.previous.is_empty()
    assert d.current == TagSet(lrf="A")


def test_draft_is_immutable_across_edits():
    base = EncounterDraft()
    edited = reduce_draft(base, SetComments("nested at 3am"))
    assert base.comments == ""
    assert edited.comments == "nested at 3am"


def test_draft_to_intake():
    d = EncounterDraft()
    for edit in (
        SetTag(TagPosition.LFF, "xy9"),
        SetEncounterTime(ts(2025, 6, 15)),
        SetObserver("u1", "  Pat "),
    ):
        d = reduce_draft(d, edit)

    payload = d.to_intake(ORG)
    assert payload.tag_values.lff == "XY9"
    assert payload.observer_name == "Pat"
    assert payload.matched_turtle_id is None

    with pytest.raises(ValidationError):
        EncounterDraft().to_intake(ORG)


def test_unknown_edit_type():
    with pytest.raises(TypeError):
        reduce_draft(EncounterDraft(), object())  # type: ignore[arg-type]


# ----------------------------
# Submit
# ----------------------------

def test_new_turtle_encounter(session):
    result = submit_encounter(session, _intake(tag_values=TagValuesIn(lrf="ab123")))
    session.commit()

    assert result.is_new_turtle is True
    assert result.turtle_name == "UNNAMED-20250615-001"
    assert result.warnings == []

    turtle = session.get(Turtle, result.turtle_id)
    assert turtle.lrf == "AB123"
    assert turtle.encounter_count == 1

    obs = session.get(Observation, result.observation_id)
    assert obs.is_recapture is False
    assert obs.tags == TagSet(lrf="AB123")

    history = session.get(TagHistory, result.tag_history_id)
    assert history.previous_tags.is_empty()
    assert history.current_tags == TagSet(lrf="AB123")


def test_recapture_with_tag_changes(session):
    t = add_turtle(session, "MABEL", tags=TagSet(lrf="AB100", rrf="AB101"), encounter_count=3)

    result = submit_encounter(
        session,
        _intake(matched_turtle_id=t.id, tag_values=TagValuesIn(lrf="AB200")),
    )
    session.commit()

    assert result.is_new_turtle is False
    turtle = session.get(Turtle, t.id)
    assert turtle.encounter_count == 4
    assert turtle.tags == TagSet(lrf="AB200")

    history = session.get(TagHistory, result.tag_history_id)
    assert history.previous_tags == TagSet(lrf="AB100", rrf="AB101")
    assert history.current_tags == TagSet(lrf="AB200")
    assert history.notes == "Tags updated: LRF replaced, RRF fell_off"


def test_recapture_losing_one_tag(session):
    t = add_turtle(session, "MABEL", tags=TagSet(lrf="AB12", rrf="CD34"), encounter_count=2)

    result = submit_encounter(
        session,
        _intake(matched_turtle_id=t.id, tag_values=TagValuesIn(lrf="ab12", rrf="")),
    )
    session.commit()

    turtle = session.get(Turtle, t.id)
    assert turtle.encounter_count == 3
    assert turtle.lrf == "AB12"
    assert turtle.rrf is None

    history = session.query(TagHistory).all()
    assert len(history) == 1
    assert history[0].id == result.tag_history_id
    assert history[0].current_tags == TagSet(lrf="AB12")

    rows = build_report(load_history_entries(session, org_id=ORG))
    assert [(r.position, r.old_tag, r.new_tag, r.status) for r in rows] == [
        (TagPosition.RRF, "CD34", "(none)", "Lost"),
    ]
    assert cmttp_table(rows, "UTC") == [
        ["MABEL", "CD34", "RRF (Right Rear)", "Jun 15, 2025", "Pat", "Lost", "CD34", "Lost", ""],
    ]


def test_recapture_without_changes_writes_no_history(session):
    t = add_turtle(session, "MABEL", tags=TagSet(lrf="AB100"))

    result = submit_encounter(session, _intake(matched_turtle_id=t.id, tag_values=TagValuesIn(lrf="AB100")))
    session.commit()

    assert result.tag_history_id is None
    assert session.query(TagHistory).count() == 0
    assert session.get(Turtle, t.id).encounter_count == 2


@pytest.mark.parametrize(
    "override,message",
    [
        ({"org_id": ""}, "organization is required"),
        ({"observer_name": "  "}, "observer name is required"),
        ({}, "select an existing turtle or enter at least one tag value"),
    ],
)
def test_validation_happens_before_any_write(session, override, message):
    with pytest.raises(ValidationError) as ei:
        submit_encounter(session, _intake(**override))
    assert ei.value.message == message
    session.rollback()
    assert session.query(Turtle).count() == 0
    assert session.query(Observation).count() == 0


def test_unknown_matched_turtle(session):
    with pytest.raises(NotFoundError):
        submit_encounter(session, _intake(matched_turtle_id="nope"))


def test_audit_failure_keeps_encounter(session, monkeypatch):
    t = add_turtle(session, "MABEL", tags=TagSet(lrf="AB100"), encounter_count=1)

    def _boom(*args, **kwargs):
        raise AuditWriteFailure("disk full")

    monkeypatch.setattr(intake_mod, "record_tag_history", _boom)

    result = submit_encounter(session, _intake(matched_turtle_id=t.id, tag_values=TagValuesIn(lrf="AB200")))
    session.commit()

    assert result.warnings == [AUDIT_WARNING]
    assert result.tag_history_id is None
    session.expire_all()
    turtle = session.get(Turtle, t.id)
    assert turtle.encounter_count == 2
    assert turtle.lrf == "AB200"
    assert session.get(Observation, result.observation_id) is not None


def test_photos_are_attached(session):
    result = submit_encounter(
        session,
        _intake(
            tag_values=TagValuesIn(lrf="AB1"),
            photos=[{"photoType": "tags", "remoteUrl": "https://example.org/p/1.jpg"}],
        ),
    )
    session.commit()

    photos = session.query(Photo).filter_by(observation_id=result.observation_id).all()
    assert len(photos) == 1
    assert photos[0].remote_url == "https://example.org/p/1.jpg"
