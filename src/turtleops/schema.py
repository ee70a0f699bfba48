# src/turtleops/schema.py
"""
Pydantic schemas for the turtleops JSON API.

The encounter intake payload follows the mobile/intake contract and uses
camelCase keys (snake_case is accepted too).  Everything else is snake_case.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from turtleops.config import valid_timezone
from turtleops.models import AlertPriority, AlertType, PhotoType
from turtleops.tags import ChangeKind, TagPosition, TagSet


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TagValuesIn(BaseModel):
    lrf: str | None = None
    rrf: str | None = None
    rff: str | None = None
    lff: str | None = None

    def to_tagset(self) -> TagSet:
        """Upper-cased, blank-as-empty tag-set."""
        return TagSet.normalized(lrf=self.lrf, rrf=self.rrf, rff=self.rff, lff=self.lff)


class PhotoIn(_CamelModel):
    photo_type: PhotoType = PhotoType.OTHER
    remote_url: str = Field(..., min_length=1, max_length=1024)
    caption: str | None = Field(default=None, max_length=512)


class EncounterIn(_CamelModel):
    """
    One encounter submitted from the intake form.
    """
    matched_turtle_id: str | None = None
    tag_values: TagValuesIn = Field(default_factory=TagValuesIn)
    encounter_timestamp: datetime
    observer_id: str | None = None
    observer_name: str = ""
    org_id: str = ""

    species: str | None = None
    latitude: float | None = Field(default=None, ge=-90.0, le=90.0)
    longitude: float | None = Field(default=None, ge=-180.0, le=180.0)
    beach_sector: str | None = None
    did_she_nest: bool | None = None
    egg_count: int | None = Field(default=None, ge=0)
    chamber_depth: float | None = Field(default=None, ge=0.0)
    comments: str | None = None
    photos: list[PhotoIn] = Field(default_factory=list)

    @field_validator("encounter_timestamp")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        # Naive timestamps from datetime-local inputs are treated as UTC.
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @field_validator("matched_turtle_id", "observer_id")
    @classmethod
    def _blank_to_none(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v.strip()


class EncounterOut(_CamelModel):
    turtle_id: str
    turtle_name: str
    is_new_turtle: bool
    observation_id: str
    tag_history_id: str | None = None
    warnings: list[str] = Field(default_factory=list)


class TurtleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    species: str | None
    lrf: str | None
    rrf: str | None
    rff: str | None
    lff: str | None
    first_encountered_at: datetime
    last_encountered_at: datetime
    encounter_count: int
    suggested_name: str | None = None
    suggested_by_name: str | None = None
    suggested_at: datetime | None = None
    needs_research: bool = False
    research_flagged_by_name: str | None = None
    research_flagged_at: datetime | None = None
    research_notes: str | None = None
    research_resolved_at: datetime | None = None
    research_resolved_by: str | None = None


class TagHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    turtle_id: str
    observation_id: str
    encounter_date: datetime
    observer_name: str
    lrf: str | None
    rrf: str | None
    rff: str | None
    lff: str | None
    previous_lrf: str | None
    previous_rrf: str | None
    previous_rff: str | None
    previous_lff: str | None
    notes: str | None


class PhotoOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    photo_type: PhotoType
    remote_url: str
    caption: str | None
    created_at: datetime


class ObservationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    turtle_id: str
    turtle_name: str | None
    encounter_date: datetime
    observer: str | None
    observer_name: str
    latitude: float | None
    longitude: float | None
    beach_sector: str | None
    did_she_nest: bool | None
    egg_count: int | None
    chamber_depth: float | None
    tag_lrf: str | None
    tag_rrf: str | None
    tag_rff: str | None
    tag_lff: str | None
    is_recapture: bool
    comments: str | None


class ObservationDetailOut(ObservationOut):
    photos: list[PhotoOut] = Field(default_factory=list)


class TagChangeOut(BaseModel):
    turtle_name: str
    encounter_date: datetime
    observer_name: str
    position: TagPosition
    position_label: str
    old_tag: str
    new_tag: str
    tag_number: str
    change_type: ChangeKind
    status: str


class TagChangesOut(BaseModel):
    rows: list[TagChangeOut]
    stats: dict[str, int]


class NameIn(BaseModel):
    name: str = Field(..., max_length=128)


class SuggestNameIn(BaseModel):
    name: str = Field(..., max_length=128)
    suggested_by: str | None = None
    suggested_by_name: str | None = None


class ResearchFlagIn(BaseModel):
    flagged_by: str | None = None
    flagged_by_name: str | None = None
    notes: str | None = None


class ResearchNotesIn(BaseModel):
    notes: str


class ResearchResolveIn(BaseModel):
    resolved_by: str | None = None


class AlertIn(BaseModel):
    alert_type: AlertType = AlertType.CUSTOM
    priority: AlertPriority = AlertPriority.NORMAL
    message: str = Field(..., min_length=1)
    created_by: str | None = None
    created_by_name: str | None = None


class AlertUpdateIn(BaseModel):
    """Fields left out of the request body keep their stored value."""
    alert_type: AlertType | None = None
    priority: AlertPriority | None = None
    message: str | None = Field(default=None, min_length=1)
    is_active: bool | None = None


class AlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    turtle_id: str
    alert_type: AlertType
    priority: AlertPriority
    message: str
    is_active: bool
    created_by_name: str | None
    created_at: datetime


class ProjectConfigIn(BaseModel):
    organization_name: str = ""
    coordinator_name: str = ""
    coordinator_email: str = ""
    beach_name: str = ""
    timezone: str = "America/New_York"
    primary_species: str = ""
    current_season_year: int | None = None

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, v: str) -> str:
        if not valid_timezone(v, ""):
            raise ValueError(f"unknown timezone {v!r}")
        return v


class ProjectConfigOut(ProjectConfigIn):
    model_config = ConfigDict(from_attributes=True)

    org_id: str


class HealthOut(BaseModel):
    ok: bool
    version: str
    db_ok: bool
