"""FastAPI application exposing the tracker as a local JSON API."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict

from . import __version__
from .config import TrackerSettings
from .db import SqliteStore
from .engine import PollReport, TrackerEngine
from .errors import ImportFormatError, NoticeKind
from .paths import get_db_path
from .poller import PollScheduler

logger = logging.getLogger(__name__)


class GuildConfigPayload(BaseModel):
    guild_name: str
    guild_id: Optional[str] = None
    members: List[str] = []
    members_text: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class StartActivityPayload(BaseModel):
    name: str
    participants: List[str] = []
    city: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class ActivityUpdate(BaseModel):
    city: Optional[str] = None
    chest_name: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class PollPayload(BaseModel):
    include_all: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")


class ConfirmKillPayload(BaseModel):
    """``items`` are positions in the victim inventory; omitted means keep everything."""

    items: Optional[List[int]] = None

    model_config = ConfigDict(extra="forbid")


class ParticipantPayload(BaseModel):
    name: str

    model_config = ConfigDict(extra="forbid")


def _build_engine(db_path: Path, settings: TrackerSettings) -> TrackerEngine:
    from .sources import AlbionEventSource
    from .valuation import AlbionPriceService

    source = AlbionEventSource(settings)
    return TrackerEngine(
        source,
        AlbionPriceService(settings),
        SqliteStore(db_path),
        settings,
        directory=source,
    )


def create_app(
    *,
    db_path: Optional[Path] = None,
    settings: Optional[TrackerSettings] = None,
    engine: Optional[TrackerEngine] = None,
    autopoll: bool = True,
) -> FastAPI:
    """Instantiate the FastAPI application.

    ``engine`` may be supplied pre-built (tests do this); otherwise one is
    created over the public kill and price feeds. With ``autopoll`` the kill
    poller runs in the background whenever an activity is active.
    """
    resolved_db_path = Path(db_path or get_db_path())
    resolved_settings = settings or (engine.settings if engine else TrackerSettings())
    resolved_engine = engine or _build_engine(resolved_db_path, resolved_settings)
    poller = PollScheduler(resolved_engine, resolved_settings.poll_interval)

    app = FastAPI(title="Guild Loot Tracker", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.db_path = resolved_db_path
    app.state.engine = resolved_engine
    app.state.poller = poller

    def ensure_polling() -> None:
        activity = resolved_engine.current_activity
        if autopoll and activity is not None and activity.is_active:
            poller.start()

    @app.on_event("startup")
    async def _startup() -> None:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        resolved_engine.load()
        ensure_polling()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        poller.stop()
        for adapter in (resolved_engine.source, resolved_engine.prices):
            close = getattr(adapter, "close", None)
            if close is not None:
                close()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        activity = resolved_engine.current_activity
        return {
            "poller_running": request.app.state.poller.is_running(),
            "database_path": str(request.app.state.db_path),
            "poll_seconds": resolved_settings.poll_interval.total_seconds(),
            "guild_name": resolved_engine.config.guild_name if resolved_engine.config else None,
            "activity_id": activity.id if activity else None,
            "activity_status": activity.status.value if activity else None,
            "last_event_id": activity.last_event_id if activity else None,
        }

    @app.get("/api/notices")
    def notices(limit: int = Query(default=50, ge=1, le=200)) -> Dict[str, Any]:
        recent = resolved_engine.notices[-limit:]
        return {"notices": [notice.to_dict() for notice in reversed(recent)]}

    @app.get("/api/config")
    def get_config() -> Dict[str, Any]:
        config = resolved_engine.config
        if config is None:
            raise HTTPException(status_code=404, detail="Guild not configured")
        return config.to_dict()

    @app.put("/api/config")
    def put_config(payload: GuildConfigPayload) -> Dict[str, Any]:
        from .normalization import parse_member_names

        guild_name = payload.guild_name.strip()
        if not guild_name:
            raise HTTPException(status_code=400, detail="guild_name is required")
        names = parse_member_names("\n".join(payload.members) + "\n" + (payload.members_text or ""))
        config = resolved_engine.configure_guild(guild_name, names, payload.guild_id)
        return config.to_dict()

    @app.post("/api/config/refresh-members")
    def refresh_members() -> Dict[str, Any]:
        if resolved_engine.config is None:
            raise HTTPException(status_code=404, detail="Guild not configured")
        return {"members": resolved_engine.refresh_guild_members()}

    @app.get("/api/activity")
    def get_activity() -> Dict[str, Any]:
        return _activity_payload(resolved_engine)

    @app.post("/api/activity")
    def start_activity(payload: StartActivityPayload) -> Dict[str, Any]:
        name = payload.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="name is required")
        activity = resolved_engine.start_activity(name, payload.participants, city=payload.city)
        if activity is None:
            raise HTTPException(status_code=409, detail="An activity is already active")
        ensure_polling()
        return _activity_payload(resolved_engine)

    @app.patch("/api/activity")
    def update_activity(payload: ActivityUpdate) -> Dict[str, Any]:
        updates = payload.model_dump(exclude_unset=True)
        if "city" in updates and not resolved_engine.set_city(updates["city"] or ""):
            raise HTTPException(status_code=409, detail="No active activity")
        if "chest_name" in updates and not resolved_engine.rename_chest(updates["chest_name"] or ""):
            raise HTTPException(status_code=409, detail="No active activity")
        return _activity_payload(resolved_engine)

    @app.post("/api/activity/complete")
    def complete_activity() -> Dict[str, Any]:
        return _finish(resolved_engine, poller, cancel=False)

    @app.post("/api/activity/cancel")
    def cancel_activity() -> Dict[str, Any]:
        return _finish(resolved_engine, poller, cancel=True)

    @app.post("/api/activity/poll")
    def poll_now(payload: Optional[PollPayload] = None) -> Dict[str, Any]:
        report = resolved_engine.poll(include_all=payload.include_all if payload else None)
        return _report_payload(report)

    @app.post("/api/activity/refresh-prices")
    def refresh_prices() -> Dict[str, Any]:
        updated = resolved_engine.refresh_chest_prices()
        activity = resolved_engine.current_activity
        return {
            "updated": updated,
            "chest": activity.loot_chest.summary() if activity else None,
        }

    @app.post("/api/kills/{event_id}/confirm")
    def confirm_kill(event_id: int, payload: Optional[ConfirmKillPayload] = None) -> Dict[str, Any]:
        if payload is not None and payload.items is not None:
            kill = resolved_engine.confirm_kill_by_index(event_id, payload.items)
        else:
            kill = resolved_engine.confirm_kill(event_id)
        if kill is None:
            raise HTTPException(status_code=404, detail="Pending kill not found")
        return {
            "kill": kill.to_dict(),
            "destroyedLoot": [item.to_dict() for item in kill.destroyed_loot],
            "chest": resolved_engine.current_activity.loot_chest.summary(),
        }

    @app.post("/api/kills/{event_id}/discard")
    def discard_kill(event_id: int) -> Dict[str, Any]:
        if not resolved_engine.discard_kill(event_id):
            raise HTTPException(status_code=404, detail="Pending kill not found")
        return {"discarded": event_id}

    @app.post("/api/participants")
    def add_participant(payload: ParticipantPayload) -> Dict[str, Any]:
        return _participant_op(resolved_engine, "add", payload.name.strip())

    @app.post("/api/participants/{name}/pause")
    def pause_participant(name: str) -> Dict[str, Any]:
        return _participant_op(resolved_engine, "pause", name)

    @app.post("/api/participants/{name}/resume")
    def resume_participant(name: str) -> Dict[str, Any]:
        return _participant_op(resolved_engine, "resume", name)

    @app.delete("/api/participants/{name}")
    def remove_participant(name: str) -> Dict[str, Any]:
        return _participant_op(resolved_engine, "remove", name)

    @app.get("/api/history")
    def history() -> Dict[str, Any]:
        return {"history": resolved_engine.history()}

    @app.get("/api/other-kills")
    def other_kills(offset: int = Query(default=0, ge=0)) -> Dict[str, Any]:
        kills = resolved_engine.load_other_guild_kills(offset)
        return {"offset": offset, "kills": [kill.to_dict() for kill in kills]}

    @app.get("/api/export")
    def export_data() -> Dict[str, Any]:
        return resolved_engine.export_data()

    @app.post("/api/import")
    def import_data(
        data: Dict[str, Any] = Body(...),
        activity_only: bool = Query(default=False),
    ) -> Dict[str, Any]:
        try:
            resolved_engine.import_data(data, activity_only=activity_only)
        except ImportFormatError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        ensure_polling()
        return _activity_payload(resolved_engine, required=False)

    return app


def _activity_payload(engine: TrackerEngine, *, required: bool = True) -> Dict[str, Any]:
    activity = engine.current_activity
    if activity is None:
        if required:
            raise HTTPException(status_code=404, detail="No current activity")
        return {"activity": None}
    now = engine.clock()
    participants = [
        {
            "name": p.name,
            "activeSeconds": activity.participant_active_time(p.name, now).total_seconds(),
            "participation": round(activity.participation_percentage(p.name, now), 1),
            "isPaused": p.is_paused,
            "hasLeft": p.has_left,
        }
        for p in activity.participants
    ]
    return {
        "activity": activity.to_dict(),
        "summary": activity.summary(now),
        "chest": activity.loot_chest.summary(),
        "participation": participants,
    }


def _finish(engine: TrackerEngine, poller: PollScheduler, *, cancel: bool) -> Dict[str, Any]:
    activity = engine.cancel_activity() if cancel else engine.complete_activity()
    if activity is None:
        raise HTTPException(status_code=409, detail="No active activity")
    poller.stop()
    return {"activity": activity.to_dict(), "summary": activity.summary()}


def _participant_op(engine: TrackerEngine, operation: str, name: str) -> Dict[str, Any]:
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    activity = engine.current_activity
    if activity is None or not activity.is_active:
        raise HTTPException(status_code=409, detail="No active activity")
    if not getattr(engine, f"{operation}_participant")(name):
        raise HTTPException(status_code=400, detail=f"Cannot {operation} participant {name}")
    return _activity_payload(engine)


def _report_payload(report: PollReport) -> Dict[str, Any]:
    return {
        "skipped": report.skipped,
        "includeAll": report.include_all,
        "fetched": report.fetched,
        "relevant": report.relevant,
        "added": report.added,
        "duplicates": report.duplicates,
        "lastEventId": report.last_event_id,
        "notices": [notice.to_dict() for notice in report.notices],
        "busy": any(n.kind is NoticeKind.POLL_BUSY for n in report.notices),
    }
