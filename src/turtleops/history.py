# src/turtleops/history.py
"""
Tag history recorder.

One audit row per encounter whose tag-set differs from what the turtle held
before, plus one for every newly created turtle that arrived with tags.  The
row keeps both tag-sets so later reports can classify each position without
looking at neighbouring rows.

The insert runs in a SAVEPOINT: if it fails, only the audit row is lost and
the surrounding encounter (turtle + observation) still commits.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import desc, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from turtleops.errors import AuditWriteFailure
from turtleops.models import TagHistory, Turtle, _to_utc
from turtleops.tags import TagSet, diff, summarize_transitions

logger = logging.getLogger(__name__)


def needs_history(previous: TagSet, current: TagSet, *, is_new_turtle: bool) -> bool:
    if diff(previous, current):
        return True
    return is_new_turtle and not current.is_empty()


def record_tag_history(
    session: Session,
    *,
    turtle: Turtle,
    observation_id: str,
    previous: TagSet,
    current: TagSet,
    encounter_at: datetime,
    observer_id: str | None,
    observer_name: str,
    is_new_turtle: bool = False,
) -> TagHistory | None:
    """
    Write the audit row for one encounter if the tag-set changed.

    Returns the new row, or ``None`` when nothing changed.

    Raises:
        AuditWriteFailure: the insert was rejected.  The savepoint has been
            rolled back; the caller's transaction is still usable.
    """
    if not needs_history(previous, current, is_new_turtle=is_new_turtle):
        return None

    transitions = diff(previous, current)
    entry = TagHistory(
        org_id=turtle.org_id,
        turtle_id=turtle.id,
        observation_id=observation_id,
        encounter_date=_to_utc(encounter_at),
        observer_id=observer_id,
        observer_name=observer_name,
        lrf=current.lrf,
        rrf=current.rrf,
        rff=current.rff,
        lff=current.lff,
        previous_lrf=previous.lrf,
        previous_rrf=previous.rrf,
        previous_rff=previous.rff,
        previous_lff=previous.lff,
        notes=summarize_transitions(transitions),
    )
    try:
        with session.begin_nested():
            session.add(entry)
    except SQLAlchemyError as e:
        raise AuditWriteFailure(f"failed to record tag history for turtle {turtle.name}: {e}") from e

    logger.info("tag history for %s: %s", turtle.name, entry.notes)
    return entry


def list_tag_history(session: Session, turtle_id: str, *, org_id: str) -> list[TagHistory]:
    q = (
        select(TagHistory)
        .where(TagHistory.turtle_id == turtle_id, TagHistory.org_id == org_id)
        .order_by(desc(TagHistory.encounter_date))
    )
    return list(session.execute(q).scalars().all())
