# src/turtleops/web.py
"""
FastAPI JSON API for the turtleops admin console.

Every org-scoped route reads the organization from the ``X-Org-Id`` header
(authentication happens in front of this app).

Intake:
- POST /api/encounters                     Record an encounter (new turtle or recapture)

Observations:
- GET  /api/observations                   Review list (name, observer, dates, nesting, sector, search, paging)
- GET  /api/observations/{id}              One encounter with its photos

Turtles:
- GET  /api/turtles                        Search (q, species, named, needs_research)
- GET  /api/turtles/by-tag/{tag}           Exact tag lookup
- GET  /api/turtles/unnamed                UNNAMED- turtles awaiting a name
- GET  /api/turtles/research               Research queue (resolved=0|1)
- GET  /api/turtles/{id}                   Turtle detail
- GET  /api/turtles/{id}/tag-history       Audit rows, newest first
- GET  /api/turtles/{id}/observations      Encounters for one turtle, newest first
- POST /api/turtles/{id}/name              Assign permanent name
- POST /api/turtles/{id}/suggest-name      Record a suggestion
- POST /api/turtles/{id}/approve-name      Approve pending suggestion
- POST /api/turtles/{id}/reject-name       Reject pending suggestion
- POST /api/turtles/{id}/research/flag|notes|resolve|reopen

Alerts:
- GET  /api/alerts, GET/POST /api/turtles/{id}/alerts
- PATCH/DELETE /api/alerts/{id}, POST /api/alerts/{id}/deactivate

Reporting:
- GET  /api/tag-changes                    Change rows + counts (response cached in Redis)
- GET  /export/cmttp.csv                   CMTTP tag report
- GET  /export/tag_history.csv             Raw history rows
- GET  /export/turtles.csv                 Turtle roster
- GET  /export/observations.csv            Observation review list

Misc:
- GET  /api/health
- GET/PUT /api/config                      Project config (timezone etc.)
"""

from __future__ import annotations

import csv
import io
import logging
import time as _time
from contextlib import asynccontextmanager
from datetime import date, datetime, time
from functools import partial
from typing import Any, Callable, Iterable, Iterator, TypeVar
from zoneinfo import ZoneInfo

import anyio
from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy import desc, select, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from turtleops import __version__
from turtleops.cache import cache_delete_prefix, cache_get_json, cache_key, cache_set_json
from turtleops.config import ensure_dirs, load_settings, valid_timezone
from turtleops.db import get_db, init_db
from turtleops.errors import NotFoundError, PersistenceError, TurtleOpsError
from turtleops.history import list_tag_history
from turtleops.identity import (
    TurtleFilters,
    approve_suggested_name,
    assign_name,
    find_turtles_by_tag,
    flag_for_research,
    get_turtle,
    list_research_turtles,
    list_unnamed_turtles,
    reject_suggested_name,
    reopen_research,
    require_org,
    resolve_research,
    search_turtles,
    suggest_name,
    update_research_notes,
)
from turtleops.intake import submit_encounter
from turtleops.models import ProjectConfig, Turtle, TurtleAlert
from turtleops.observations import (
    OBSERVATIONS_HEADER,
    ObservationFilters,
    get_observation,
    list_observation_photos,
    list_observations,
    list_turtle_observations,
    observations_table,
    species_by_turtle,
)
from turtleops.reporting import (
    CMTTP_HEADER,
    HISTORY_HEADER,
    TURTLES_HEADER,
    ReportFilters,
    build_report,
    change_stats,
    cmttp_table,
    history_table,
    load_history_entries,
    turtles_table,
)
from turtleops.schema import (
    AlertIn,
    AlertOut,
    AlertUpdateIn,
    EncounterIn,
    EncounterOut,
    HealthOut,
    NameIn,
    ObservationDetailOut,
    ObservationOut,
    PhotoOut,
    ProjectConfigIn,
    ProjectConfigOut,
    ResearchFlagIn,
    ResearchNotesIn,
    ResearchResolveIn,
    SuggestNameIn,
    TagChangeOut,
    TagChangesOut,
    TagHistoryOut,
    TurtleOut,
)
from turtleops.tags import ChangeKind

logger = logging.getLogger(__name__)

_PRIORITY_RANK = {"high": 0, "normal": 1, "low": 2}

COMMIT_RETRIES = 3
COMMIT_RETRY_DELAY = 0.5

T = TypeVar("T")


async def _run_blocking(func: Any, *args: Any, **kwargs: Any) -> Any:
    return await anyio.to_thread.run_sync(partial(func, *args, **kwargs))


def org_scope(x_org_id: str | None = Header(default=None)) -> str:
    return require_org(x_org_id)


def _is_locked(e: BaseException) -> bool:
    cause = e if isinstance(e, OperationalError) else e.__cause__
    return isinstance(cause, OperationalError) and "database is locked" in str(cause).lower()


def _write(db: Session, work: Callable[[], T]) -> T:
    """
    Run ``work`` and commit it as one unit.  A locked SQLite database rolls
    the unit back and runs it again from the start; any other failure, or a
    lock on the last attempt, surfaces as PersistenceError.
    """
    for i in range(COMMIT_RETRIES):
        try:
            result = work()
            db.commit()
            return result
        except (TurtleOpsError, SQLAlchemyError) as e:
            db.rollback()
            if _is_locked(e) and i < COMMIT_RETRIES - 1:
                logger.warning("write retry due to lock (attempt %d/%d)", i + 1, COMMIT_RETRIES)
                _time.sleep(COMMIT_RETRY_DELAY)
                continue
            if isinstance(e, TurtleOpsError):
                raise
            raise PersistenceError(f"failed to save changes: {e}") from e
    raise PersistenceError("failed to save changes")


def project_timezone(db: Session, org_id: str) -> str:
    cfg = db.execute(select(ProjectConfig).where(ProjectConfig.org_id == org_id)).scalar_one_or_none()
    fallback = load_settings().default_timezone
    if cfg is None:
        return fallback
    return valid_timezone(cfg.timezone, fallback)


def _day_bounds(
    date_from: date | None,
    date_to: date | None,
    tz: str,
) -> tuple[datetime | None, datetime | None]:
    """Calendar days in the project timezone -> inclusive UTC instants."""
    zone = ZoneInfo(tz)
    start = datetime.combine(date_from, time.min, tzinfo=zone) if date_from else None
    end = datetime.combine(date_to, time.max, tzinfo=zone) if date_to else None
    return start, end


def _report_filters(
    db: Session,
    org_id: str,
    date_from: date | None,
    date_to: date | None,
    search: str | None,
    change_type: ChangeKind | None,
    sort: str | None,
) -> tuple[ReportFilters, str]:
    tz = project_timezone(db, org_id)
    start, end = _day_bounds(date_from, date_to, tz)
    filters = ReportFilters(
        date_from=start,
        date_to=end,
        search=search,
        change_type=change_type,
        sort=sort or load_settings().report_sort,
    )
    return filters, tz


def _observation_filters(
    db: Session,
    org_id: str,
    turtle_name: str | None,
    observer_name: str | None,
    date_from: date | None,
    date_to: date | None,
    did_nest: bool | None,
    beach_sector: str | None,
    search: str | None,
    limit: int | None = None,
    offset: int = 0,
) -> tuple[ObservationFilters, str]:
    tz = project_timezone(db, org_id)
    start, end = _day_bounds(date_from, date_to, tz)
    filters = ObservationFilters(
        turtle_name=turtle_name,
        observer_name=observer_name,
        date_from=start,
        date_to=end,
        did_nest=did_nest,
        beach_sector=beach_sector,
        search=search,
        limit=limit,
        offset=offset,
    )
    return filters, tz


def _stream_csv(
    rows: Iterable[list[Any]],
    header: list[str],
    filename: str,
    quote_all: bool = False,
) -> StreamingResponse:
    def gen() -> Iterator[bytes]:
        sio = io.StringIO()
        w = csv.writer(sio, quoting=csv.QUOTE_ALL if quote_all else csv.QUOTE_MINIMAL)
        w.writerow(header)
        yield sio.getvalue().encode("utf-8")
        sio.seek(0)
        sio.truncate(0)

        for r in rows:
            w.writerow(r)
            yield sio.getvalue().encode("utf-8")
            sio.seek(0)
            sio.truncate(0)

    return StreamingResponse(
        gen(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def make_app() -> FastAPI:
    """
    Create and return the FastAPI application.
    """
    ensure_dirs()

    @asynccontextmanager
    async def _lifespan(_: FastAPI):
        init_db()
        yield

    app = FastAPI(
        title="turtleops",
        description=(
            "Admin console API for a sea-turtle nesting program: encounter intake, "
            "turtle identity and naming, flipper-tag history and CMTTP exports."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=_lifespan,
    )

    @app.exception_handler(TurtleOpsError)
    async def _turtleops_error(request: Request, exc: TurtleOpsError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.middleware("http")
    async def _disable_cache_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        return response

    # ----------------------------
    # Health / config
    # ----------------------------

    @app.get("/api/health", response_model=HealthOut)
    def health(db: Session = Depends(get_db)) -> HealthOut:
        db_ok = True
        try:
            db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.warning("health check db failure: %s", e)
            db_ok = False
        return HealthOut(ok=True, version=__version__, db_ok=db_ok)

    @app.get("/api/config", response_model=ProjectConfigOut)
    def get_config(
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        cfg = db.execute(select(ProjectConfig).where(ProjectConfig.org_id == org_id)).scalar_one_or_none()
        if cfg is None:
            return ProjectConfigOut(org_id=org_id, timezone=load_settings().default_timezone)
        return cfg

    @app.put("/api/config", response_model=ProjectConfigOut)
    async def put_config(
        payload: ProjectConfigIn,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        def _save() -> ProjectConfig:
            cfg = db.execute(select(ProjectConfig).where(ProjectConfig.org_id == org_id)).scalar_one_or_none()
            if cfg is None:
                cfg = ProjectConfig(org_id=org_id)
                db.add(cfg)
            for k, v in payload.model_dump().items():
                setattr(cfg, k, v)
            return cfg

        cfg = await _run_blocking(_write, db, _save)
        # Report dates depend on the timezone.
        await cache_delete_prefix(f"tag_changes:{org_id}")
        return cfg

    # ----------------------------
    # Intake
    # ----------------------------

    @app.post("/api/encounters", response_model=EncounterOut, status_code=201)
    async def create_encounter(
        intake: EncounterIn,
        x_org_id: str | None = Header(default=None),
        db: Session = Depends(get_db),
    ) -> EncounterOut:
        if not intake.org_id and x_org_id:
            intake = intake.model_copy(update={"org_id": x_org_id})

        def _submit() -> EncounterOut:
            result = submit_encounter(db, intake)
            return EncounterOut(
                turtle_id=result.turtle_id,
                turtle_name=result.turtle_name,
                is_new_turtle=result.is_new_turtle,
                observation_id=result.observation_id,
                tag_history_id=result.tag_history_id,
                warnings=result.warnings,
            )

        out = await _run_blocking(_write, db, _submit)
        await cache_delete_prefix(f"tag_changes:{intake.org_id}")
        return out

    # ----------------------------
    # Observations
    # ----------------------------

    @app.get("/api/observations", response_model=list[ObservationOut])
    def observation_list(
        turtle_name: str | None = None,
        observer_name: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        did_nest: bool | None = None,
        beach_sector: str | None = None,
        search: str | None = None,
        limit: int | None = None,
        offset: int = 0,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        filters, _ = _observation_filters(
            db, org_id, turtle_name, observer_name, date_from, date_to,
            did_nest, beach_sector, search, limit, offset,
        )
        return list_observations(db, org_id=org_id, filters=filters)

    @app.get("/api/observations/{observation_id}", response_model=ObservationDetailOut)
    def observation_detail(
        observation_id: str,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> ObservationDetailOut:
        obs = get_observation(db, observation_id, org_id=org_id)
        photos = list_observation_photos(db, obs.id, org_id=org_id)
        out = ObservationDetailOut.model_validate(obs)
        out.photos = [PhotoOut.model_validate(p) for p in photos]
        return out

    # ----------------------------
    # Turtles
    # ----------------------------

    @app.get("/api/turtles", response_model=list[TurtleOut])
    def list_turtles(
        q: str | None = None,
        species: str | None = None,
        named: bool | None = None,
        needs_research: bool | None = None,
        limit: int | None = None,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        cap = load_settings().search_limit
        lim = max(1, min(int(limit or cap), cap))
        filters = TurtleFilters(search=q, species=species, has_name=named, needs_research=needs_research)
        return search_turtles(db, org_id=org_id, filters=filters, limit=lim)

    @app.get("/api/turtles/by-tag/{tag}", response_model=list[TurtleOut])
    def turtles_by_tag(
        tag: str,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        return find_turtles_by_tag(db, tag, org_id=org_id)

    @app.get("/api/turtles/unnamed", response_model=list[TurtleOut])
    def unnamed_turtles(
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        return list_unnamed_turtles(db, org_id=org_id)

    @app.get("/api/turtles/research", response_model=list[TurtleOut])
    def research_turtles(
        resolved: bool = False,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        return list_research_turtles(db, org_id=org_id, resolved=resolved)

    @app.get("/api/turtles/{turtle_id}", response_model=TurtleOut)
    def turtle_detail(
        turtle_id: str,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        return get_turtle(db, turtle_id, org_id=org_id)

    @app.get("/api/turtles/{turtle_id}/tag-history", response_model=list[TagHistoryOut])
    def turtle_tag_history(
        turtle_id: str,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        get_turtle(db, turtle_id, org_id=org_id)
        return list_tag_history(db, turtle_id, org_id=org_id)

    @app.get("/api/turtles/{turtle_id}/observations", response_model=list[ObservationOut])
    def turtle_observations(
        turtle_id: str,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        get_turtle(db, turtle_id, org_id=org_id)
        return list_turtle_observations(db, turtle_id, org_id=org_id)

    @app.post("/api/turtles/{turtle_id}/name", response_model=TurtleOut)
    async def name_turtle(
        turtle_id: str,
        payload: NameIn,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        turtle = await _run_blocking(
            _write, db, lambda: assign_name(db, turtle_id, payload.name, org_id=org_id)
        )
        # Report rows carry the turtle name.
        await cache_delete_prefix(f"tag_changes:{org_id}")
        return turtle

    @app.post("/api/turtles/{turtle_id}/suggest-name", response_model=TurtleOut)
    def suggest_turtle_name(
        turtle_id: str,
        payload: SuggestNameIn,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        return _write(
            db,
            lambda: suggest_name(
                db,
                turtle_id,
                payload.name,
                org_id=org_id,
                suggested_by=payload.suggested_by,
                suggested_by_name=payload.suggested_by_name,
            ),
        )

    @app.post("/api/turtles/{turtle_id}/approve-name", response_model=TurtleOut)
    async def approve_turtle_name(
        turtle_id: str,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        turtle = await _run_blocking(
            _write, db, lambda: approve_suggested_name(db, turtle_id, org_id=org_id)
        )
        await cache_delete_prefix(f"tag_changes:{org_id}")
        return turtle

    @app.post("/api/turtles/{turtle_id}/reject-name", response_model=TurtleOut)
    def reject_turtle_name(
        turtle_id: str,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        return _write(db, lambda: reject_suggested_name(db, turtle_id, org_id=org_id))

    @app.post("/api/turtles/{turtle_id}/research/flag", response_model=TurtleOut)
    def flag_turtle(
        turtle_id: str,
        payload: ResearchFlagIn,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        return _write(
            db,
            lambda: flag_for_research(
                db,
                turtle_id,
                org_id=org_id,
                flagged_by=payload.flagged_by,
                flagged_by_name=payload.flagged_by_name,
                notes=payload.notes,
            ),
        )

    @app.post("/api/turtles/{turtle_id}/research/notes", response_model=TurtleOut)
    def research_notes(
        turtle_id: str,
        payload: ResearchNotesIn,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        return _write(db, lambda: update_research_notes(db, turtle_id, payload.notes, org_id=org_id))

    @app.post("/api/turtles/{turtle_id}/research/resolve", response_model=TurtleOut)
    def research_resolve(
        turtle_id: str,
        payload: ResearchResolveIn,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        return _write(db, lambda: resolve_research(db, turtle_id, org_id=org_id, resolved_by=payload.resolved_by))

    @app.post("/api/turtles/{turtle_id}/research/reopen", response_model=TurtleOut)
    def research_reopen(
        turtle_id: str,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        return _write(db, lambda: reopen_research(db, turtle_id, org_id=org_id))

    # ----------------------------
    # Alerts
    # ----------------------------

    def _sorted_alerts(alerts: Iterable[TurtleAlert]) -> list[TurtleAlert]:
        return sorted(alerts, key=lambda a: _PRIORITY_RANK.get(a.priority.value, 99))

    def _get_alert(db: Session, alert_id: str, org_id: str) -> TurtleAlert:
        alert = db.execute(
            select(TurtleAlert).where(TurtleAlert.id == alert_id, TurtleAlert.org_id == org_id)
        ).scalar_one_or_none()
        if alert is None:
            raise NotFoundError(f"alert {alert_id} not found")
        return alert

    @app.get("/api/alerts", response_model=list[AlertOut])
    def list_alerts(
        active_only: bool = False,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        q = select(TurtleAlert).where(TurtleAlert.org_id == org_id)
        if active_only:
            q = q.where(TurtleAlert.is_active.is_(True))
        return list(db.execute(q.order_by(desc(TurtleAlert.created_at))).scalars().all())

    @app.get("/api/turtles/{turtle_id}/alerts", response_model=list[AlertOut])
    def turtle_alerts(
        turtle_id: str,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        get_turtle(db, turtle_id, org_id=org_id)
        alerts = db.execute(
            select(TurtleAlert).where(
                TurtleAlert.org_id == org_id,
                TurtleAlert.turtle_id == turtle_id,
                TurtleAlert.is_active.is_(True),
            )
        ).scalars().all()
        return _sorted_alerts(alerts)

    @app.post("/api/turtles/{turtle_id}/alerts", response_model=AlertOut, status_code=201)
    def create_alert(
        turtle_id: str,
        payload: AlertIn,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        def _create() -> TurtleAlert:
            get_turtle(db, turtle_id, org_id=org_id)
            alert = TurtleAlert(org_id=org_id, turtle_id=turtle_id, **payload.model_dump())
            db.add(alert)
            return alert

        return _write(db, _create)

    @app.patch("/api/alerts/{alert_id}", response_model=AlertOut)
    def update_alert(
        alert_id: str,
        payload: AlertUpdateIn,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        def _update() -> TurtleAlert:
            alert = _get_alert(db, alert_id, org_id)
            for k, v in payload.model_dump(exclude_unset=True, exclude_none=True).items():
                setattr(alert, k, v)
            return alert

        return _write(db, _update)

    @app.post("/api/alerts/{alert_id}/deactivate", response_model=AlertOut)
    def deactivate_alert(
        alert_id: str,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Any:
        def _deactivate() -> TurtleAlert:
            alert = _get_alert(db, alert_id, org_id)
            alert.is_active = False
            return alert

        return _write(db, _deactivate)

    @app.delete("/api/alerts/{alert_id}", status_code=204)
    def delete_alert(
        alert_id: str,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> Response:
        _write(db, lambda: db.delete(_get_alert(db, alert_id, org_id)))
        return Response(status_code=204)

    # ----------------------------
    # Reporting
    # ----------------------------

    @app.get("/api/tag-changes", response_model=TagChangesOut)
    async def tag_changes(
        date_from: date | None = None,
        date_to: date | None = None,
        search: str | None = None,
        change_type: ChangeKind | None = None,
        sort: str | None = None,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> TagChangesOut:
        key = cache_key(
            f"tag_changes:{org_id}",
            date_from=date_from,
            date_to=date_to,
            search=search,
            change_type=change_type.value if change_type else None,
            sort=sort,
        )
        cached = await cache_get_json(key)
        if isinstance(cached, dict) and {"rows", "stats"} <= cached.keys():
            return TagChangesOut.model_validate(cached)

        def _load() -> TagChangesOut:
            filters, _ = _report_filters(db, org_id, date_from, date_to, search, change_type, sort)
            entries = load_history_entries(db, org_id=org_id, filters=filters)
            rows = build_report(entries, filters)
            out = [
                TagChangeOut(
                    turtle_name=r.turtle_name,
                    encounter_date=r.encounter_date,
                    observer_name=r.observer_name,
                    position=r.position,
                    position_label=r.position.label,
                    old_tag=r.old_tag,
                    new_tag=r.new_tag,
                    tag_number=r.tag_number,
                    change_type=r.change_type,
                    status=r.status,
                )
                for r in rows
            ]
            return TagChangesOut(rows=out, stats=change_stats(entries, rows))

        result = await _run_blocking(_load)
        await cache_set_json(key, result.model_dump(mode="json"))
        return result

    @app.get("/export/cmttp.csv")
    def export_cmttp_csv(
        date_from: date | None = None,
        date_to: date | None = None,
        search: str | None = None,
        change_type: ChangeKind | None = None,
        sort: str | None = None,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> StreamingResponse:
        filters, tz = _report_filters(db, org_id, date_from, date_to, search, change_type, sort)
        rows = build_report(load_history_entries(db, org_id=org_id, filters=filters), filters)
        stamp = datetime.now(ZoneInfo(tz)).strftime("%Y-%m-%d")
        return _stream_csv(
            cmttp_table(rows, tz),
            header=CMTTP_HEADER,
            filename=f"cmttp_tag_history_{stamp}.csv",
            quote_all=True,
        )

    @app.get("/export/tag_history.csv")
    def export_tag_history_csv(
        date_from: date | None = None,
        date_to: date | None = None,
        search: str | None = None,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> StreamingResponse:
        filters, _ = _report_filters(db, org_id, date_from, date_to, search, None, None)
        entries = load_history_entries(db, org_id=org_id, filters=filters)
        return _stream_csv(history_table(entries), header=HISTORY_HEADER, filename="tag_history.csv")

    @app.get("/export/turtles.csv")
    def export_turtles_csv(
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> StreamingResponse:
        tz = project_timezone(db, org_id)
        turtles = db.execute(select(Turtle).where(Turtle.org_id == org_id).order_by(Turtle.name)).scalars().all()
        return _stream_csv(turtles_table(turtles, tz), header=TURTLES_HEADER, filename="turtles.csv")

    @app.get("/export/observations.csv")
    def export_observations_csv(
        turtle_name: str | None = None,
        observer_name: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        did_nest: bool | None = None,
        beach_sector: str | None = None,
        search: str | None = None,
        org_id: str = Depends(org_scope),
        db: Session = Depends(get_db),
    ) -> StreamingResponse:
        filters, tz = _observation_filters(
            db, org_id, turtle_name, observer_name, date_from, date_to,
            did_nest, beach_sector, search,
        )
        obs = list_observations(db, org_id=org_id, filters=filters)
        species = species_by_turtle(db, (o.turtle_id for o in obs))
        return _stream_csv(
            observations_table(obs, species, tz),
            header=OBSERVATIONS_HEADER,
            filename="observations.csv",
        )

    return app


# Default ASGI app for uvicorn - lazy initialization to avoid
# running make_app() at import time (which causes issues in tests)
_app_instance: Any = None


def get_app() -> Any:
    """Get or create the FastAPI app instance (lazy singleton)."""
    global _app_instance
    if _app_instance is None:
        _app_instance = make_app()
    return _app_instance


# For uvicorn: create app lazily on first access
def __getattr__(name: str) -> Any:
    """Module-level __getattr__ for lazy app initialization."""
    if name == "app":
        return get_app()
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
