"""
Bounded, per-project event history.

Layout (per project):
- .planmend/events/<event-id>.json   Full event
- .planmend/events/index.json        Summaries, newest first

The index is capped at ``max_events``; summaries pushed past the cap are
dropped and their event files deleted. Index reads are cached per project
for ``cache_ttl_seconds``; every write refreshes the cache.
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import EventHistoryConfig, get_state_dir
from .store import atomic_write_json, utc_now_iso

logger = logging.getLogger(__name__)

EVENTS_DIRNAME = "events"
INDEX_FILENAME = "index.json"
INDEX_VERSION = 1
DEFAULT_MAX_EVENTS = 1000
DEFAULT_CACHE_TTL_SECONDS = 2.0

_EVENT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def new_event_id() -> str:
    return f"evt-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def parse_iso(value: str) -> datetime | None:
    try:
        moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


@dataclass
class StoredEvent:
    id: str
    trigger: str
    timestamp: str
    project_path: str
    project_name: str
    feature_id: str | None = None
    feature_name: str | None = None
    error: str | None = None
    error_type: str | None = None
    passes: bool | None = None
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "trigger": self.trigger,
            "timestamp": self.timestamp,
            "projectPath": self.project_path,
            "projectName": self.project_name,
        }
        optional = {
            "featureId": self.feature_id,
            "featureName": self.feature_name,
            "error": self.error,
            "errorType": self.error_type,
            "passes": self.passes,
            "metadata": self.metadata,
        }
        result.update({key: value for key, value in optional.items() if value is not None})
        return result

    def summary(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "trigger": self.trigger,
            "timestamp": self.timestamp,
        }
        if self.feature_id is not None:
            result["featureId"] = self.feature_id
        if self.feature_name is not None:
            result["featureName"] = self.feature_name
        return result


@dataclass
class EventFilter:
    trigger: str | None = None
    feature_id: str | None = None
    since: str | None = None
    until: str | None = None
    limit: int | None = None
    offset: int | None = None

    def matches(self, summary: dict[str, Any]) -> bool:
        if self.trigger and summary.get("trigger") != self.trigger:
            return False
        if self.feature_id and summary.get("featureId") != self.feature_id:
            return False
        if self.since or self.until:
            moment = parse_iso(str(summary.get("timestamp", "")))
            if moment is None:
                return False
            since = parse_iso(self.since) if self.since else None
            until = parse_iso(self.until) if self.until else None
            if since is not None and moment < since:
                return False
            if until is not None and moment > until:
                return False
        return True


@dataclass
class _CacheEntry:
    created_at: float
    events: list[dict[str, Any]] = field(default_factory=list)


class EventHistoryStore:
    """Stores, lists and prunes events for any number of projects."""

    def __init__(
        self,
        max_events: int = DEFAULT_MAX_EVENTS,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
    ):
        if max_events < 1:
            raise ValueError("max_events must be at least 1")
        self.max_events = max_events
        self.cache_ttl_seconds = max(cache_ttl_seconds, 0.0)
        self._cache: dict[str, _CacheEntry] = {}

    @classmethod
    def from_config(cls, config: EventHistoryConfig) -> "EventHistoryStore":
        return cls(max_events=config.max_events, cache_ttl_seconds=config.cache_ttl_ms / 1000.0)

    def events_dir(self, project_path: Path) -> Path:
        return get_state_dir(Path(project_path)) / EVENTS_DIRNAME

    def index_path(self, project_path: Path) -> Path:
        return self.events_dir(project_path) / INDEX_FILENAME

    def event_path(self, project_path: Path, event_id: str) -> Path:
        if not _EVENT_ID_RE.match(event_id or ""):
            raise ValueError(f"Invalid event id: {event_id!r}")
        return self.events_dir(project_path) / f"{event_id}.json"

    def store_event(
        self,
        project_path: Path,
        trigger: str,
        feature_id: str | None = None,
        feature_name: str | None = None,
        error: str | None = None,
        error_type: str | None = None,
        passes: bool | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StoredEvent:
        project_path = Path(project_path)
        event = StoredEvent(
            id=new_event_id(),
            trigger=trigger,
            timestamp=utc_now_iso(),
            project_path=str(project_path),
            project_name=project_path.name or str(project_path),
            feature_id=feature_id,
            feature_name=feature_name,
            error=error,
            error_type=error_type,
            passes=passes,
            metadata=metadata,
        )
        self.events_dir(project_path).mkdir(parents=True, exist_ok=True)
        atomic_write_json(self.event_path(project_path, event.id), event.to_dict())
        self._add_to_index(project_path, event)
        logger.info("Stored event %s (%s) for project %s", event.id, trigger, event.project_name)
        return event

    def list_events(
        self,
        project_path: Path,
        event_filter: EventFilter | None = None,
    ) -> list[dict[str, Any]]:
        events = list(self._get_index(project_path))
        if event_filter is None:
            return events
        events = [summary for summary in events if event_filter.matches(summary)]
        if event_filter.offset:
            events = events[event_filter.offset:]
        if event_filter.limit:
            events = events[: event_filter.limit]
        return events

    def count_events(self, project_path: Path, event_filter: EventFilter | None = None) -> int:
        if event_filter is None:
            return len(self._get_index(project_path))
        unpaged = EventFilter(
            trigger=event_filter.trigger,
            feature_id=event_filter.feature_id,
            since=event_filter.since,
            until=event_filter.until,
        )
        return len(self.list_events(project_path, unpaged))

    def get_event(self, project_path: Path, event_id: str) -> dict[str, Any] | None:
        try:
            path = self.event_path(project_path, event_id)
        except ValueError:
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.error("Error reading event %s: %s", event_id, exc)
            return None

    def delete_event(self, project_path: Path, event_id: str) -> bool:
        events = self._get_index(project_path)
        remaining = [summary for summary in events if summary.get("id") != event_id]
        if len(remaining) == len(events):
            return False

        self._write_index(project_path, remaining)
        self._unlink_event(project_path, event_id)
        logger.info("Deleted event %s", event_id)
        return True

    def clear_events(self, project_path: Path) -> int:
        events = self._get_index(project_path)
        for summary in events:
            self._unlink_event(project_path, str(summary.get("id", "")))
        self._write_index(project_path, [])
        logger.info("Cleared %d events for project %s", len(events), Path(project_path).name)
        return len(events)

    def _add_to_index(self, project_path: Path, event: StoredEvent) -> None:
        events = [event.summary(), *self._get_index(project_path)]
        if len(events) > self.max_events:
            removed = events[self.max_events:]
            events = events[: self.max_events]
            for summary in removed:
                self._unlink_event(project_path, str(summary.get("id", "")))
            logger.info("Pruned %d old events from history", len(removed))
        self._write_index(project_path, events)

    def _unlink_event(self, project_path: Path, event_id: str) -> None:
        try:
            self.event_path(project_path, event_id).unlink()
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as exc:
            logger.error("Error deleting event file %s: %s", event_id, exc)

    def _write_index(self, project_path: Path, events: list[dict[str, Any]]) -> None:
        atomic_write_json(self.index_path(project_path), {"version": INDEX_VERSION, "events": events})
        self._cache[str(project_path)] = _CacheEntry(created_at=time.monotonic(), events=events)

    def _get_index(self, project_path: Path) -> list[dict[str, Any]]:
        key = str(project_path)
        cached = self._cache.get(key)
        if cached is not None:
            if time.monotonic() - cached.created_at <= self.cache_ttl_seconds:
                return cached.events

        events = self._read_index(self.index_path(project_path))
        self._cache[key] = _CacheEntry(created_at=time.monotonic(), events=events)
        return events

    @staticmethod
    def _read_index(path: Path) -> list[dict[str, Any]]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as exc:
            logger.error("Error reading %s: %s", path, exc)
            return []
        events = data.get("events") if isinstance(data, dict) else None
        if not isinstance(events, list):
            return []
        return [summary for summary in events if isinstance(summary, dict)]


_event_history: EventHistoryStore | None = None


def get_event_history(config: EventHistoryConfig | None = None) -> EventHistoryStore:
    """Process-wide store used by the web layer."""
    global _event_history
    if _event_history is None:
        _event_history = EventHistoryStore.from_config(config or EventHistoryConfig())
    return _event_history
