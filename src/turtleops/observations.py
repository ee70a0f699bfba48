# src/turtleops/observations.py
"""
Observation review: list, detail and CSV export of recorded encounters.

Filters mirror the review screen: turtle name, observer, date range, nesting
outcome, beach sector and a free-text search over turtle name, observer and
comments.  Text filters are case-insensitive substring matches.  Results are
newest encounter first.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import desc, or_, select
from sqlalchemy.orm import Session

from turtleops.errors import NotFoundError, ValidationError
from turtleops.identity import require_org
from turtleops.models import Observation, Photo, Turtle, _to_utc
from turtleops.reporting import format_report_date

DEFAULT_PAGE_SIZE = 25

OBSERVATIONS_HEADER = [
    "ID",
    "Turtle Name",
    "Species",
    "Encounter Date",
    "Observer",
    "Beach Sector",
    "Did Nest",
    "Egg Count",
    "LRF",
    "RRF",
    "RFF",
    "LFF",
    "Latitude",
    "Longitude",
    "Comments",
]


@dataclass(frozen=True)
class ObservationFilters:
    turtle_name: str | None = None
    observer_name: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    did_nest: bool | None = None
    beach_sector: str | None = None
    search: str | None = None
    limit: int | None = None
    offset: int = 0

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit < 1:
            raise ValidationError("limit must be at least 1")
        if self.offset < 0:
            raise ValidationError("offset must not be negative")
        if self.date_from and self.date_to and _to_utc(self.date_from) > _to_utc(self.date_to):
            raise ValidationError("date_from must not be after date_to")


def _text(value: str | None) -> str | None:
    v = (value or "").strip()
    return v or None


def list_observations(
    session: Session,
    *,
    org_id: str | None,
    filters: ObservationFilters | None = None,
) -> list[Observation]:
    org = require_org(org_id)
    f = filters or ObservationFilters()
    q = select(Observation).where(Observation.org_id == org)

    name = _text(f.turtle_name)
    observer = _text(f.observer_name)
    sector = _text(f.beach_sector)
    term = _text(f.search)

    if name is not None:
        q = q.where(Observation.turtle_name.ilike(f"%{name}%"))
    if observer is not None:
        q = q.where(Observation.observer_name.ilike(f"%{observer}%"))
    if f.date_from is not None:
        q = q.where(Observation.encounter_date >= _to_utc(f.date_from))
    if f.date_to is not None:
        q = q.where(Observation.encounter_date <= _to_utc(f.date_to))
    if f.did_nest is not None:
        q = q.where(Observation.did_she_nest.is_(f.did_nest))
    if sector is not None:
        q = q.where(Observation.beach_sector == sector)
    if term is not None:
        pat = f"%{term}%"
        q = q.where(
            or_(
                Observation.turtle_name.ilike(pat),
                Observation.observer_name.ilike(pat),
                Observation.comments.ilike(pat),
            )
        )

    q = q.order_by(desc(Observation.encounter_date))
    if f.offset:
        # A page without an explicit size uses the review screen's default.
        q = q.offset(f.offset).limit(f.limit or DEFAULT_PAGE_SIZE)
    elif f.limit is not None:
        q = q.limit(f.limit)
    return list(session.execute(q).scalars().all())


def get_observation(session: Session, observation_id: str, *, org_id: str | None) -> Observation:
    org = require_org(org_id)
    obs = session.execute(
        select(Observation).where(Observation.id == observation_id, Observation.org_id == org)
    ).scalar_one_or_none()
    if obs is None:
        raise NotFoundError(f"observation {observation_id} not found")
    return obs


def list_turtle_observations(session: Session, turtle_id: str, *, org_id: str | None) -> list[Observation]:
    org = require_org(org_id)
    q = (
        select(Observation)
        .where(Observation.turtle_id == turtle_id, Observation.org_id == org)
        .order_by(desc(Observation.encounter_date))
    )
    return list(session.execute(q).scalars().all())


def list_observation_photos(session: Session, observation_id: str, *, org_id: str) -> list[Photo]:
    q = (
        select(Photo)
        .where(Photo.observation_id == observation_id, Photo.org_id == org_id)
        .order_by(Photo.created_at)
    )
    return list(session.execute(q).scalars().all())


def species_by_turtle(session: Session, turtle_ids: Iterable[str]) -> dict[str, str | None]:
    ids = sorted(set(turtle_ids))
    if not ids:
        return {}
    rows = session.execute(select(Turtle.id, Turtle.species).where(Turtle.id.in_(ids))).all()
    return {tid: species for tid, species in rows}


def _yes_no(v: bool | None) -> str:
    if v is None:
        return ""
    return "Yes" if v else "No"


def _blank(v: Any) -> Any:
    return "" if v is None else v


def observations_table(
    observations: Iterable[Observation],
    species: dict[str, str | None],
    tz: str,
) -> list[list[Any]]:
    out: list[list[Any]] = []
    for o in observations:
        out.append(
            [
                o.id,
                o.turtle_name or "",
                species.get(o.turtle_id) or "",
                format_report_date(o.encounter_date, tz),
                o.observer_name,
                o.beach_sector or "",
                _yes_no(o.did_she_nest),
                _blank(o.egg_count),
                o.tag_lrf or "",
                o.tag_rrf or "",
                o.tag_rff or "",
                o.tag_lff or "",
                _blank(o.latitude),
                _blank(o.longitude),
                o.comments or "",
            ]
        )
    return out
