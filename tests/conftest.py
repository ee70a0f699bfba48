# tests/conftest.py
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import turtleops.db as db
from turtleops.cache import reset_cache_client
from turtleops.models import Observation, Turtle
from turtleops.tags import TagSet

ORG = "org-1"


@pytest.fixture()
def db_env(tmp_path: Path, monkeypatch) -> Iterator[Path]:
    data_dir = tmp_path / "data"
    db_path = tmp_path / "turtleops.sqlite"
    monkeypatch.setenv("TURTLEOPS_DATA_DIR", str(data_dir))
    monkeypatch.setenv("TURTLEOPS_DB_URL", f"sqlite:///{db_path}")
    monkeypatch.delenv("TURTLEOPS_REDIS_URL", raising=False)
    monkeypatch.delenv("TURTLEOPS_TIMEZONE", raising=False)
    reset_cache_client()
    db.reset_db_state()
    db.init_db()
    yield db_path
    db.reset_db_state()


@pytest.fixture()
def session(db_env: Path) -> Iterator[Session]:
    s = db.get_session_factory()()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def client(db_env: Path) -> Iterator[TestClient]:
    from turtleops.web import make_app

    with TestClient(make_app()) as c:
        yield c


def ts(year: int, month: int, day: int, hour: int = 22, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def add_turtle(
    session: Session,
    name: str,
    *,
    org_id: str = ORG,
    tags: TagSet | None = None,
    seen: datetime | None = None,
    encounter_count: int = 1,
    **extra,
) -> Turtle:
    seen = seen or ts(2025, 6, 1)
    turtle = Turtle(
        org_id=org_id,
        name=name,
        first_encountered_at=seen,
        last_encountered_at=seen,
        encounter_count=encounter_count,
        **extra,
    )
    turtle.set_tags(tags or TagSet())
    session.add(turtle)
    session.commit()
    return turtle


def add_observation(session: Session, turtle: Turtle, *, at: datetime | None = None) -> Observation:
    obs = Observation(
        org_id=turtle.org_id,
        turtle_id=turtle.id,
        turtle_name=turtle.name,
        encounter_date=at or ts(2025, 6, 1),
        observer_name="Pat",
    )
    session.add(obs)
    session.commit()
    return obs
