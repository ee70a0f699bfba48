# src/turtleops/identity.py
"""
Turtle identity: new individual vs recapture, naming and research workflows.

Identity is always decided by a person.  The intake form supplies the id of
the turtle the coordinator matched (via search), or nothing for a first
sighting.  Nothing here guesses a match.

All functions work inside the caller's transaction and never commit.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import desc, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from turtleops.errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from turtleops.models import (
    UNNAMED_PREFIX,
    AlertPriority,
    AlertType,
    Observation,
    Turtle,
    TurtleAlert,
    _to_utc,
    utcnow,
)
from turtleops.tags import EMPTY_TAGS, TagSet

logger = logging.getLogger(__name__)

# Retries when a concurrent create took the same UNNAMED- sequence number.
UNNAMED_MAX_ATTEMPTS = 5

_UNNAMED_RE = re.compile(r"^UNNAMED-(\d{8})-(\d+)$")


@dataclass(frozen=True)
class ResolvedTurtle:
    turtle: Turtle
    previous_tags: TagSet
    is_new: bool


@dataclass(frozen=True)
class TurtleFilters:
    search: str | None = None       # name or any tag, case-insensitive
    species: str | None = None
    has_name: bool | None = None    # True: permanent name, False: UNNAMED-
    needs_research: bool | None = None


def require_org(org_id: str | None) -> str:
    org = (org_id or "").strip()
    if not org:
        raise ValidationError("organization is required")
    return org


def normalize_name(name: str | None) -> str:
    return (name or "").strip().upper()


def unnamed_name(day: date, seq: int) -> str:
    return f"{UNNAMED_PREFIX}{day:%Y%m%d}-{seq:03d}"


def next_unnamed_sequence(session: Session, org_id: str, day: date) -> int:
    """
    1 + the highest UNNAMED- sequence already used for ``day``.  Best-effort:
    two concurrent creates can read the same value; the unique constraint on
    (org_id, name) plus retry in :func:`resolve_turtle` covers that.
    """
    prefix = f"{UNNAMED_PREFIX}{day:%Y%m%d}-"
    names = session.execute(
        select(Turtle.name).where(Turtle.org_id == org_id, Turtle.name.like(f"{prefix}%"))
    ).scalars().all()
    highest = 0
    for n in names:
        m = _UNNAMED_RE.match(n)
        if m:
            highest = max(highest, int(m.group(2)))
    return highest + 1


def get_turtle(session: Session, turtle_id: str, *, org_id: str, for_update: bool = False) -> Turtle:
    q = select(Turtle).where(Turtle.id == turtle_id, Turtle.org_id == org_id)
    if for_update:
        q = q.with_for_update()
    turtle = session.execute(q).scalar_one_or_none()
    if turtle is None:
        raise NotFoundError(f"turtle {turtle_id} not found")
    return turtle


def _flush(session: Session, what: str) -> None:
    try:
        session.flush()
    except SQLAlchemyError as e:
        raise PersistenceError(f"failed to save {what}: {e}") from e


def _create_turtle(
    session: Session,
    *,
    org_id: str,
    observed: TagSet,
    encounter_at: datetime,
    created_by: str | None,
    species: str | None,
) -> Turtle:
    day = encounter_at.date()
    seq = next_unnamed_sequence(session, org_id, day)
    for attempt in range(UNNAMED_MAX_ATTEMPTS):
        turtle = Turtle(
            org_id=org_id,
            name=unnamed_name(day, seq + attempt),
            species=species,
            first_encountered_at=encounter_at,
            last_encountered_at=encounter_at,
            encounter_count=1,
            created_by=created_by,
        )
        turtle.set_tags(observed)
        try:
            with session.begin_nested():
                session.add(turtle)
        except IntegrityError:
            logger.warning("UNNAMED name %s already taken; trying next sequence", turtle.name)
            continue
        except SQLAlchemyError as e:
            raise PersistenceError(f"failed to create turtle: {e}") from e
        logger.info("created turtle %s (%s) org=%s", turtle.name, turtle.id, org_id)
        return turtle
    raise PersistenceError(f"could not allocate an UNNAMED name for {day:%Y-%m-%d}")


def resolve_turtle(
    session: Session,
    *,
    org_id: str | None,
    matched_turtle_id: str | None,
    observed: TagSet,
    encounter_at: datetime,
    created_by: str | None = None,
    species: str | None = None,
) -> ResolvedTurtle:
    """
    Create a turtle for a first sighting or update the matched one.

    Returns the turtle and the tag-set it held before this encounter (all
    empty for a new turtle).  Observed tags overwrite the stored ones,
    including empty values, which clear a tag confirmed missing.

    Raises:
        ValidationError: organization missing.
        NotFoundError: matched turtle not in this organization.
        PersistenceError: the store rejected the write.  The caller's
            transaction must be rolled back.
    """
    org = require_org(org_id)
    encounter_at = _to_utc(encounter_at)

    if not matched_turtle_id:
        turtle = _create_turtle(
            session,
            org_id=org,
            observed=observed,
            encounter_at=encounter_at,
            created_by=created_by,
            species=species,
        )
        return ResolvedTurtle(turtle=turtle, previous_tags=EMPTY_TAGS, is_new=True)

    turtle = get_turtle(session, matched_turtle_id, org_id=org, for_update=True)
    previous = turtle.tags

    last_seen = _to_utc(turtle.last_encountered_at)
    if encounter_at > last_seen:
        turtle.last_encountered_at = encounter_at
    # Historical entry older than the first sighting.
    if encounter_at < _to_utc(turtle.first_encountered_at):
        turtle.first_encountered_at = encounter_at
    turtle.encounter_count = int(turtle.encounter_count or 0) + 1
    turtle.set_tags(observed)
    if species and not turtle.species:
        turtle.species = species
    _flush(session, f"turtle {turtle.name}")

    logger.info(
        "recapture of %s (%s): encounter_count=%d", turtle.name, turtle.id, turtle.encounter_count
    )
    return ResolvedTurtle(turtle=turtle, previous_tags=previous, is_new=False)


# ----------------------------
# Naming workflow
# ----------------------------

def find_turtle_by_name(session: Session, name: str, *, org_id: str) -> Turtle | None:
    return session.execute(
        select(Turtle).where(Turtle.org_id == org_id, func.upper(Turtle.name) == normalize_name(name))
    ).scalars().first()


def _check_name_available(session: Session, turtle: Turtle, name: str) -> None:
    existing = find_turtle_by_name(session, name, org_id=turtle.org_id)
    if existing is not None and existing.id != turtle.id:
        raise ConflictError(f'a turtle named "{name}" already exists')


def _validate_permanent_name(raw: str | None) -> str:
    name = normalize_name(raw)
    if not name:
        raise ValidationError("name is required")
    if name.startswith(UNNAMED_PREFIX):
        raise ValidationError(f"names starting with {UNNAMED_PREFIX} are reserved for new turtles")
    if len(name) > 128:
        raise ValidationError("name too long")
    return name


def assign_name(session: Session, turtle_id: str, name: str | None, *, org_id: str | None) -> Turtle:
    """
    Give a turtle a permanent name.  Refuses a name held by another turtle;
    clears any pending suggestion in the same write.
    """
    org = require_org(org_id)
    new_name = _validate_permanent_name(name)
    turtle = get_turtle(session, turtle_id, org_id=org, for_update=True)
    _check_name_available(session, turtle, new_name)

    old_name = turtle.name
    turtle.name = new_name
    turtle.clear_suggestion()
    try:
        session.flush()
        # Observations keep a copy of the name for review and export.
        session.execute(
            update(Observation)
            .where(Observation.turtle_id == turtle.id)
            .values(turtle_name=new_name)
            .execution_options(synchronize_session="fetch")
        )
    except IntegrityError as e:
        # Lost a race with another assignment of the same name.
        raise ConflictError(f'a turtle named "{new_name}" already exists') from e
    except SQLAlchemyError as e:
        raise PersistenceError(f"failed to rename turtle: {e}") from e
    logger.info("renamed turtle %s: %s -> %s", turtle.id, old_name, new_name)
    return turtle


def suggest_name(
    session: Session,
    turtle_id: str,
    name: str | None,
    *,
    org_id: str | None,
    suggested_by: str | None,
    suggested_by_name: str | None,
) -> Turtle:
    org = require_org(org_id)
    new_name = _validate_permanent_name(name)
    turtle = get_turtle(session, turtle_id, org_id=org)
    if not turtle.is_unnamed:
        raise ValidationError(f"turtle {turtle.name} already has a permanent name")
    _check_name_available(session, turtle, new_name)

    turtle.suggested_name = new_name
    turtle.suggested_by = suggested_by
    turtle.suggested_by_name = suggested_by_name
    turtle.suggested_at = utcnow()
    _flush(session, "name suggestion")
    return turtle


def approve_suggested_name(session: Session, turtle_id: str, *, org_id: str | None) -> Turtle:
    org = require_org(org_id)
    turtle = get_turtle(session, turtle_id, org_id=org)
    if not turtle.suggested_name:
        raise ValidationError(f"turtle {turtle.name} has no pending name suggestion")
    suggested_by_name = turtle.suggested_by_name
    suggested_by = turtle.suggested_by

    turtle = assign_name(session, turtle_id, turtle.suggested_name, org_id=org)
    if suggested_by_name:
        session.add(
            TurtleAlert(
                org_id=org,
                turtle_id=turtle.id,
                alert_type=AlertType.NAMED_BY,
                priority=AlertPriority.LOW,
                message=f"Named by {suggested_by_name}",
                created_by=suggested_by,
                created_by_name=suggested_by_name,
            )
        )
        _flush(session, "naming alert")
    return turtle


def reject_suggested_name(session: Session, turtle_id: str, *, org_id: str | None) -> Turtle:
    org = require_org(org_id)
    turtle = get_turtle(session, turtle_id, org_id=org)
    turtle.clear_suggestion()
    _flush(session, "turtle")
    return turtle


# ----------------------------
# Research workflow
# ----------------------------

def flag_for_research(
    session: Session,
    turtle_id: str,
    *,
    org_id: str | None,
    flagged_by: str | None,
    flagged_by_name: str | None,
    notes: str | None = None,
) -> Turtle:
    org = require_org(org_id)
    turtle = get_turtle(session, turtle_id, org_id=org)
    turtle.needs_research = True
    turtle.research_flagged_by = flagged_by
    turtle.research_flagged_by_name = flagged_by_name
    turtle.research_flagged_at = utcnow()
    turtle.research_resolved_at = None
    turtle.research_resolved_by = None
    if notes:
        turtle.research_notes = notes
    _flush(session, "research flag")
    return turtle


def update_research_notes(session: Session, turtle_id: str, notes: str, *, org_id: str | None) -> Turtle:
    org = require_org(org_id)
    turtle = get_turtle(session, turtle_id, org_id=org)
    turtle.research_notes = notes
    _flush(session, "research notes")
    return turtle


def resolve_research(session: Session, turtle_id: str, *, org_id: str | None, resolved_by: str | None) -> Turtle:
    org = require_org(org_id)
    turtle = get_turtle(session, turtle_id, org_id=org)
    turtle.needs_research = False
    turtle.research_resolved_at = utcnow()
    turtle.research_resolved_by = resolved_by
    _flush(session, "research resolution")
    return turtle


def reopen_research(session: Session, turtle_id: str, *, org_id: str | None) -> Turtle:
    org = require_org(org_id)
    turtle = get_turtle(session, turtle_id, org_id=org)
    turtle.needs_research = True
    turtle.research_resolved_at = None
    turtle.research_resolved_by = None
    _flush(session, "research flag")
    return turtle


# ----------------------------
# Search
# ----------------------------

def search_turtles(
    session: Session,
    *,
    org_id: str | None,
    filters: TurtleFilters | None = None,
    limit: int = 200,
) -> list[Turtle]:
    org = require_org(org_id)
    f = filters or TurtleFilters()
    q = select(Turtle).where(Turtle.org_id == org)
    if f.search and f.search.strip():
        pat = f"%{f.search.strip()}%"
        q = q.where(
            or_(
                Turtle.name.ilike(pat),
                Turtle.lrf.ilike(pat),
                Turtle.rrf.ilike(pat),
                Turtle.rff.ilike(pat),
                Turtle.lff.ilike(pat),
            )
        )
    if f.species:
        q = q.where(Turtle.species == f.species)
    if f.has_name is True:
        q = q.where(~Turtle.name.ilike(f"{UNNAMED_PREFIX}%"))
    elif f.has_name is False:
        q = q.where(Turtle.name.ilike(f"{UNNAMED_PREFIX}%"))
    if f.needs_research is not None:
        q = q.where(Turtle.needs_research.is_(f.needs_research))
    q = q.order_by(Turtle.name).limit(max(1, int(limit)))
    return list(session.execute(q).scalars().all())


def find_turtles_by_tag(session: Session, tag: str, *, org_id: str | None) -> list[Turtle]:
    """Exact match on any of the four positions (after normalization)."""
    org = require_org(org_id)
    code = (tag or "").strip().upper()
    if not code:
        return []
    q = (
        select(Turtle)
        .where(
            Turtle.org_id == org,
            or_(Turtle.lrf == code, Turtle.rrf == code, Turtle.rff == code, Turtle.lff == code),
        )
        .order_by(Turtle.name)
    )
    return list(session.execute(q).scalars().all())


def list_unnamed_turtles(session: Session, *, org_id: str | None) -> list[Turtle]:
    org = require_org(org_id)
    q = (
        select(Turtle)
        .where(Turtle.org_id == org, Turtle.name.ilike(f"{UNNAMED_PREFIX}%"))
        .order_by(desc(Turtle.first_encountered_at))
    )
    return list(session.execute(q).scalars().all())


def list_research_turtles(session: Session, *, org_id: str | None, resolved: bool = False) -> list[Turtle]:
    """
    Turtles under research.  ``resolved=False`` lists open flags,
    ``resolved=True`` lists flags already resolved.
    """
    org = require_org(org_id)
    q = select(Turtle).where(Turtle.org_id == org)
    if resolved:
        q = q.where(Turtle.research_resolved_at.is_not(None)).order_by(desc(Turtle.research_resolved_at))
    else:
        q = q.where(Turtle.needs_research.is_(True)).order_by(desc(Turtle.research_flagged_at))
    return list(session.execute(q).scalars().all())
