# src/turtleops/intake.py
"""
Encounter intake.

Two pieces:

- ``EncounterDraft`` + ``reduce_draft``: the intake form as an immutable value.
  Each field edit produces a new draft; nothing touches the database until
  the draft is submitted.
- ``submit_encounter``: the submit pipeline.  Resolve the turtle, write the
  observation, record tag history, attach photo records.  Runs inside the
  caller's transaction (``session_scope`` or the request session) so the
  turtle update and its history row commit together.

Tag history and photo records are best-effort: a failed write is logged and
reported back as a warning, the encounter itself still commits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from turtleops.errors import AuditWriteFailure, PersistenceError, ValidationError
from turtleops.history import record_tag_history
from turtleops.identity import require_org, resolve_turtle
from turtleops.models import Observation, Photo
from turtleops.schema import EncounterIn, TagValuesIn
from turtleops.tags import EMPTY_TAGS, PositionTransition, TagPosition, TagSet, diff, normalize_tag

logger = logging.getLogger(__name__)

AUDIT_WARNING = "Encounter saved, but the tag history entry could not be recorded."
PHOTO_WARNING = "Encounter saved, but {count} photo record(s) could not be attached."


# ----------------------------
# Draft state
# ----------------------------

@dataclass(frozen=True)
class EncounterDraft:
    matched_turtle_id: str | None = None
    matched_turtle_name: str | None = None
    previous: TagSet = EMPTY_TAGS
    current: TagSet = EMPTY_TAGS
    encounter_at: datetime | None = None
    observer_id: str | None = None
    observer_name: str = ""
    comments: str = ""

    @property
    def is_recapture(self) -> bool:
        return self.matched_turtle_id is not None

    def transitions(self) -> list[PositionTransition]:
        """Preview of what the history recorder will classify."""
        return diff(self.previous, self.current)

    def to_intake(self, org_id: str) -> EncounterIn:
        if self.encounter_at is None:
            raise ValidationError("encounter date and time is required")
        return EncounterIn(
            matched_turtle_id=self.matched_turtle_id,
            tag_values=TagValuesIn(**self.current.as_dict()),
            encounter_timestamp=self.encounter_at,
            observer_id=self.observer_id,
            observer_name=self.observer_name,
            org_id=org_id,
            comments=self.comments or None,
        )


@dataclass(frozen=True)
class SelectTurtle:
    turtle_id: str
    turtle_name: str
    tags: TagSet


@dataclass(frozen=True)
class ClearTurtle:
    pass


@dataclass(frozen=True)
class SetTag:
    position: TagPosition
    value: str | None


@dataclass(frozen=True)
class SetEncounterTime:
    at: datetime


@dataclass(frozen=True)
class SetObserver:
    observer_id: str | None
    observer_name: str


@dataclass(frozen=True)
class SetComments:
    text: str


DraftEdit = Union[SelectTurtle, ClearTurtle, SetTag, SetEncounterTime, SetObserver, SetComments]


def reduce_draft(draft: EncounterDraft, edit: DraftEdit) -> EncounterDraft:
    """
    Apply one form edit.  Selecting a turtle pre-fills both the previous and
    the current tag-set with what the turtle holds; the observer then edits
    the current one.
    """
    if isinstance(edit, SelectTurtle):
        return replace(
            draft,
            matched_turtle_id=edit.turtle_id,
            matched_turtle_name=edit.turtle_name,
            previous=edit.tags,
            current=edit.tags,
        )
    if isinstance(edit, ClearTurtle):
        return replace(draft, matched_turtle_id=None, matched_turtle_name=None, previous=EMPTY_TAGS)
    if isinstance(edit, SetTag):
        return replace(draft, current=draft.current.with_value(edit.position, normalize_tag(edit.value)))
    if isinstance(edit, SetEncounterTime):
        return replace(draft, encounter_at=edit.at)
    if isinstance(edit, SetObserver):
        return replace(draft, observer_id=edit.observer_id, observer_name=edit.observer_name.strip())
    if isinstance(edit, SetComments):
        return replace(draft, comments=edit.text)
    raise TypeError(f"unsupported draft edit: {type(edit).__name__}")


# ----------------------------
# Submit
# ----------------------------

@dataclass
class EncounterResult:
    turtle_id: str
    turtle_name: str
    is_new_turtle: bool
    observation_id: str
    tag_history_id: str | None = None
    warnings: list[str] = field(default_factory=list)


def validate_intake(intake: EncounterIn) -> str:
    org = require_org(intake.org_id)
    if not intake.observer_name.strip():
        raise ValidationError("observer name is required")
    if not intake.matched_turtle_id and intake.tag_values.to_tagset().is_empty():
        raise ValidationError("select an existing turtle or enter at least one tag value")
    return org


def _attach_photos(session: Session, intake: EncounterIn, org_id: str, observation_id: str) -> int:
    failed = 0
    for p in intake.photos:
        try:
            with session.begin_nested():
                session.add(
                    Photo(
                        org_id=org_id,
                        observation_id=observation_id,
                        photo_type=p.photo_type,
                        remote_url=p.remote_url,
                        caption=p.caption,
                    )
                )
        except SQLAlchemyError:
            logger.exception("failed to attach %s photo to observation %s", p.photo_type.value, observation_id)
            failed += 1
    return failed


def submit_encounter(session: Session, intake: EncounterIn) -> EncounterResult:
    """
    Record one encounter.  The caller commits.

    Raises:
        ValidationError: missing organization/observer/tags, or unknown
            matched turtle.  Nothing has been written.
        PersistenceError: turtle or observation write failed.  The caller
            must roll back; no counters or timestamps advance.
    """
    org = validate_intake(intake)
    observed = intake.tag_values.to_tagset()

    resolved = resolve_turtle(
        session,
        org_id=org,
        matched_turtle_id=intake.matched_turtle_id,
        observed=observed,
        encounter_at=intake.encounter_timestamp,
        created_by=intake.observer_id,
        species=intake.species,
    )
    turtle = resolved.turtle

    observation = Observation(
        org_id=org,
        turtle_id=turtle.id,
        turtle_name=turtle.name,
        encounter_date=intake.encounter_timestamp,
        observer=intake.observer_id,
        observer_name=intake.observer_name.strip(),
        latitude=intake.latitude,
        longitude=intake.longitude,
        beach_sector=intake.beach_sector,
        did_she_nest=intake.did_she_nest,
        egg_count=intake.egg_count,
        chamber_depth=intake.chamber_depth,
        is_recapture=not resolved.is_new,
        comments=intake.comments,
    )
    observation.set_tags(observed)
    session.add(observation)
    try:
        session.flush()
    except SQLAlchemyError as e:
        raise PersistenceError(f"failed to create observation: {e}") from e

    result = EncounterResult(
        turtle_id=turtle.id,
        turtle_name=turtle.name,
        is_new_turtle=resolved.is_new,
        observation_id=observation.id,
    )

    try:
        entry = record_tag_history(
            session,
            turtle=turtle,
            observation_id=observation.id,
            previous=resolved.previous_tags,
            current=observed,
            encounter_at=intake.encounter_timestamp,
            observer_id=intake.observer_id,
            observer_name=intake.observer_name.strip(),
            is_new_turtle=resolved.is_new,
        )
    except AuditWriteFailure as e:
        logger.warning("%s (observation %s)", e.message, observation.id)
        result.warnings.append(AUDIT_WARNING)
    else:
        result.tag_history_id = entry.id if entry is not None else None

    failed_photos = _attach_photos(session, intake, org, observation.id)
    if failed_photos:
        result.warnings.append(PHOTO_WARNING.format(count=failed_photos))

    logger.info(
        "encounter recorded: turtle=%s new=%s observation=%s",
        turtle.name,
        resolved.is_new,
        observation.id,
    )
    return result
