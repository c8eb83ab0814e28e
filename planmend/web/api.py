"""
FastAPI transport layer for the planmend recovery runtime.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from sse_starlette.sse import EventSourceResponse

from .. import __version__
from ..config import PlanmendConfig
from ..errors import FeatureNotFoundError, NoOpError
from ..events import EventEmitter
from ..history import EventFilter, EventHistoryStore
from ..recovery.runtime import RecoveryRuntime
from ..store import FeatureStore
from .events import StreamEventBridge


class ProjectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_path: str = Field(alias="projectPath", min_length=1)


class FeatureRequest(ProjectRequest):
    feature_id: str = Field(alias="featureId", min_length=1)


class ReconcileRequest(FeatureRequest):
    rebuild_output: bool = Field(default=True, alias="rebuildOutput")


class TimelineRequest(FeatureRequest):
    include_file_activity: bool = Field(default=False, alias="includeFileActivity")


class RestoreDependenciesRequest(ProjectRequest):
    feature_id: Optional[str] = Field(default=None, alias="featureId")
    feature_ids: Optional[list[str]] = Field(default=None, alias="featureIds")
    dry_run: bool = Field(default=False, alias="dryRun")


class RecoveryCenterRequest(ProjectRequest):
    include_all: bool = Field(default=False, alias="includeAll")


class StoreEventRequest(ProjectRequest):
    trigger: str = Field(min_length=1)
    feature_id: Optional[str] = Field(default=None, alias="featureId")
    feature_name: Optional[str] = Field(default=None, alias="featureName")
    error: Optional[str] = None
    error_type: Optional[str] = Field(default=None, alias="errorType")
    passes: Optional[bool] = None
    metadata: Optional[dict[str, Any]] = None


class EventFilterModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    trigger: Optional[str] = None
    feature_id: Optional[str] = Field(default=None, alias="featureId")
    since: Optional[str] = None
    until: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)
    offset: Optional[int] = Field(default=None, ge=0)


class ListEventsRequest(ProjectRequest):
    filter: Optional[EventFilterModel] = None


class EventRequest(ProjectRequest):
    event_id: str = Field(alias="eventId", min_length=1)


def _project_dir(raw: str) -> Path:
    path = Path(raw).expanduser()
    if not path.is_dir():
        raise HTTPException(status_code=400, detail=f"projectPath is not a directory: {raw}")
    return path.resolve()


async def _call(label: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a blocking runtime call off the loop and map its errors to HTTP."""
    started = time.perf_counter()
    try:
        result = await asyncio.to_thread(func, *args, **kwargs)
    except FeatureNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except NoOpError as exc:
        raise HTTPException(status_code=400, detail={"error": exc.reason, **exc.payload}) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except OSError as exc:
        logger.error("api.{} failed error={}", label, exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    logger.debug("api.{} done elapsed_s={:.3f}", label, time.perf_counter() - started)
    return result


def create_app(
    config: PlanmendConfig | None = None,
    store: FeatureStore | None = None,
    history: EventHistoryStore | None = None,
    emitter: EventEmitter | None = None,
) -> FastAPI:
    config = config or PlanmendConfig.load()
    store = store or FeatureStore(max_backups=config.recovery.max_backups)
    history = history or EventHistoryStore.from_config(config.event_history)
    emitter = emitter or EventEmitter.from_config(config.events)
    runtime = RecoveryRuntime(store=store, history=history, emitter=emitter, config=config.recovery)
    bridge = StreamEventBridge(emitter, maxsize=config.events.max_queue)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        bridge.close()
        emitter.close()

    app = FastAPI(title="planmend", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    app.state.emitter = emitter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.server.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "version": __version__}

    @app.post("/api/features/list")
    async def list_features(payload: ProjectRequest) -> dict[str, Any]:
        project = _project_dir(payload.project_path)
        features = await _call("features.list", runtime.list_features, project)
        return {"success": True, "features": [feature.to_dict() for feature in features]}

    @app.post("/api/features/get")
    async def get_feature(payload: FeatureRequest) -> dict[str, Any]:
        project = _project_dir(payload.project_path)
        feature = await _call("features.get", runtime.get_feature, project, payload.feature_id)
        return {"success": True, "feature": feature.to_dict()}

    @app.post("/api/features/reconcile-plan")
    async def reconcile_plan(payload: ReconcileRequest) -> dict[str, Any]:
        project = _project_dir(payload.project_path)
        result = await _call(
            "features.reconcile_plan",
            runtime.reconcile_plan,
            project,
            payload.feature_id,
            rebuild_output=payload.rebuild_output,
        )
        return {"success": True, **result}

    @app.post("/api/features/rebuild-output")
    async def rebuild_output(payload: FeatureRequest) -> dict[str, Any]:
        project = _project_dir(payload.project_path)
        result = await _call("features.rebuild_output", runtime.rebuild_output, project, payload.feature_id)
        return {"success": True, **result}

    @app.post("/api/features/resume-pending")
    async def resume_pending(payload: FeatureRequest) -> dict[str, Any]:
        project = _project_dir(payload.project_path)
        result = await _call("features.resume_pending", runtime.resume_pending, project, payload.feature_id)
        return {"success": True, **result}

    @app.post("/api/features/restore-dependencies")
    async def restore_dependencies(payload: RestoreDependenciesRequest) -> dict[str, Any]:
        project = _project_dir(payload.project_path)
        result = await _call(
            "features.restore_dependencies",
            runtime.restore_dependencies,
            project,
            feature_id=payload.feature_id,
            feature_ids=payload.feature_ids,
            dry_run=payload.dry_run,
        )
        return {"success": True, **result}

    @app.post("/api/features/recovery-center")
    async def recovery_center(payload: RecoveryCenterRequest) -> dict[str, Any]:
        project = _project_dir(payload.project_path)
        try:
            report = await runtime.recovery_report(project, include_all=payload.include_all)
        except OSError as exc:
            logger.error("api.features.recovery_center failed error={}", exc)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {"success": True, **report.to_dict()}

    @app.post("/api/features/timeline")
    async def timeline(payload: TimelineRequest) -> dict[str, Any]:
        project = _project_dir(payload.project_path)
        entries = await _call(
            "features.timeline",
            runtime.timeline,
            project,
            payload.feature_id,
            include_file_activity=payload.include_file_activity,
        )
        return {"success": True, "timeline": [entry.to_dict() for entry in entries]}

    @app.post("/api/event-history/store")
    async def store_event(payload: StoreEventRequest) -> dict[str, Any]:
        project = _project_dir(payload.project_path)
        event = await _call(
            "event_history.store",
            history.store_event,
            project,
            payload.trigger,
            feature_id=payload.feature_id,
            feature_name=payload.feature_name,
            error=payload.error,
            error_type=payload.error_type,
            passes=payload.passes,
            metadata=payload.metadata,
        )
        return {"success": True, "event": event.to_dict()}

    @app.post("/api/event-history/list")
    async def list_events(payload: ListEventsRequest) -> dict[str, Any]:
        project = _project_dir(payload.project_path)
        event_filter = EventFilter(**payload.filter.model_dump()) if payload.filter else None
        events = await _call("event_history.list", history.list_events, project, event_filter)
        total = await _call("event_history.count", history.count_events, project, event_filter)
        return {"success": True, "events": events, "total": total}

    @app.post("/api/event-history/get")
    async def get_event(payload: EventRequest) -> dict[str, Any]:
        project = _project_dir(payload.project_path)
        event = await _call("event_history.get", history.get_event, project, payload.event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="Event not found")
        return {"success": True, "event": event}

    @app.post("/api/event-history/delete")
    async def delete_event(payload: EventRequest) -> dict[str, Any]:
        project = _project_dir(payload.project_path)
        deleted = await _call("event_history.delete", history.delete_event, project, payload.event_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="Event not found")
        return {"success": True}

    @app.post("/api/event-history/clear")
    async def clear_events(payload: ProjectRequest) -> dict[str, Any]:
        project = _project_dir(payload.project_path)
        cleared = await _call("event_history.clear", history.clear_events, project)
        return {"success": True, "cleared": cleared}

    @app.get("/api/events/stream")
    async def stream_events() -> EventSourceResponse:
        async def event_generator() -> Any:
            async for event in bridge.subscribe():
                yield {
                    "event": str(event.get("type", "message")),
                    "data": json.dumps(event.get("payload"), default=str),
                }

        return EventSourceResponse(event_generator())

    return app
