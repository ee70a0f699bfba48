# src/turtleops/models.py
"""
SQLAlchemy ORM models for turtleops.

Tables:
- turtles: 1 row per identified individual (named or UNNAMED- placeholder)
- observations: 1 row per nightly encounter
- tag_history: immutable audit of tag-set transitions, 1 row per encounter
  where the tag-set changed (or the turtle was first seen)
- photos: photo records attached to an observation (upload handled elsewhere)
- turtle_alerts: coordinator notes surfaced when a turtle is encountered
- project_config: per-organization settings (timezone, beach, species)

Every row carries an org_id; all queries are scoped by it.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from turtleops.tags import TagSet

__all__ = [
    "Base",
    "Turtle",
    "Observation",
    "TagHistory",
    "Photo",
    "PhotoType",
    "TurtleAlert",
    "AlertType",
    "AlertPriority",
    "ProjectConfig",
    "UNNAMED_PREFIX",
    "utcnow",
]

UNNAMED_PREFIX = "UNNAMED-"


class Base(DeclarativeBase):
    """Base class for SQLAlchemy ORM models."""
    pass


def utcnow() -> datetime:
    """Return the current UTC timestamp.  Separated into its own function for
    easier testing/mocking.
    """
    return datetime.now(timezone.utc)


def _to_utc(dt: datetime) -> datetime:
    """
    Normalize a datetime to UTC, assuming naive values are already UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _as_utc_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return _to_utc(dt).isoformat(timespec="seconds").replace("+00:00", "Z")


def _new_id() -> str:
    return str(uuid.uuid4())


class PhotoType(str, enum.Enum):
    INJURY = "injury"
    DATASHEET = "datasheet"
    TAGS = "tags"
    TURTLE = "turtle"
    OTHER = "other"


class AlertType(str, enum.Enum):
    NAMED_BY = "named_by"
    HEALTH_NOTE = "health_note"
    CUSTOM = "custom"


class AlertPriority(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class Turtle(Base):
    __tablename__ = "turtles"
    __table_args__ = (
        UniqueConstraint("org_id", "name", name="uq_turtles_org_name"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    species: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Flipper tags (upper-case codes)
    lrf: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rrf: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rff: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lff: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Name suggestion (pending coordinator approval)
    suggested_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    suggested_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    suggested_by_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    suggested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Research flag
    needs_research: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    research_flagged_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    research_flagged_by_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    research_flagged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    research_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    research_resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    research_resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Encounter stats
    first_encountered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_encountered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    encounter_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    observations: Mapped[list["Observation"]] = relationship(back_populates="turtle")
    tag_history: Mapped[list["TagHistory"]] = relationship(back_populates="turtle")

    # ---------- Convenience ----------

    @property
    def tags(self) -> TagSet:
        return TagSet.of(self)

    def set_tags(self, tags: TagSet) -> None:
        self.lrf = tags.lrf
        self.rrf = tags.rrf
        self.rff = tags.rff
        self.lff = tags.lff

    @property
    def is_unnamed(self) -> bool:
        return self.name.upper().startswith(UNNAMED_PREFIX)

    def clear_suggestion(self) -> None:
        self.suggested_name = None
        self.suggested_by = None
        self.suggested_by_name = None
        self.suggested_at = None


class Observation(Base):
    __tablename__ = "observations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    turtle_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("turtles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    turtle_name: Mapped[str | None] = mapped_column(String(128), nullable=True)

    encounter_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    observer: Mapped[str | None] = mapped_column(String(64), nullable=True)
    observer_name: Mapped[str] = mapped_column(String(128), nullable=False)

    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    beach_sector: Mapped[str | None] = mapped_column(String(64), nullable=True)

    did_she_nest: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    egg_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    chamber_depth: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Tags as observed at this encounter
    tag_lrf: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tag_rrf: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tag_rff: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tag_lff: Mapped[str | None] = mapped_column(String(64), nullable=True)

    is_recapture: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    turtle: Mapped["Turtle"] = relationship(back_populates="observations")
    photos: Mapped[list["Photo"]] = relationship(back_populates="observation")

    @property
    def tags(self) -> TagSet:
        return TagSet.of(self, prefix="tag_")

    def set_tags(self, tags: TagSet) -> None:
        self.tag_lrf = tags.lrf
        self.tag_rrf = tags.rrf
        self.tag_rff = tags.rff
        self.tag_lff = tags.lff


class TagHistory(Base):
    """
    Tag-set transition observed at one encounter.  Rows are written once by
    the history recorder and never updated.
    """
    __tablename__ = "tag_history"
    __table_args__ = (
        Index("ix_tag_history_org_encounter", "org_id", "encounter_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False)

    turtle_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("turtles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    observation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("observations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    encounter_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    observer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    observer_name: Mapped[str] = mapped_column(String(128), nullable=False)

    # Tags as observed at this encounter
    lrf: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rrf: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rff: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lff: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Tags held before this encounter
    previous_lrf: Mapped[str | None] = mapped_column(String(64), nullable=True)
    previous_rrf: Mapped[str | None] = mapped_column(String(64), nullable=True)
    previous_rff: Mapped[str | None] = mapped_column(String(64), nullable=True)
    previous_lff: Mapped[str | None] = mapped_column(String(64), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    turtle: Mapped["Turtle"] = relationship(back_populates="tag_history")

    @property
    def current_tags(self) -> TagSet:
        return TagSet.of(self)

    @property
    def previous_tags(self) -> TagSet:
        return TagSet.of(self, prefix="previous_")


class Photo(Base):
    __tablename__ = "photos"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    observation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("observations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    photo_type: Mapped[PhotoType] = mapped_column(
        Enum(PhotoType, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=PhotoType.OTHER,
    )
    remote_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    caption: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    observation: Mapped["Observation"] = relationship(back_populates="photos")


class TurtleAlert(Base):
    __tablename__ = "turtle_alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    turtle_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("turtles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    alert_type: Mapped[AlertType] = mapped_column(
        Enum(AlertType, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=AlertType.CUSTOM,
    )
    priority: Mapped[AlertPriority] = mapped_column(
        Enum(AlertPriority, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=AlertPriority.NORMAL,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_by_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    turtle: Mapped["Turtle"] = relationship()


class ProjectConfig(Base):
    __tablename__ = "project_config"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    organization_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    coordinator_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    coordinator_email: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    beach_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/New_York")
    primary_species: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    current_season_year: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
