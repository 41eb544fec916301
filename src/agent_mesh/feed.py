# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto

"""Append-only activity feed stored as JSON lines at <mesh-root>/feed.jsonl.

Any agent may append; none holds a lock. Lines torn by a concurrent partial
write are skipped on read.
"""

import json
import logging
import os
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from agent_mesh.metrics import MeshMetrics
from agent_mesh.models import FeedEvent, FeedEventType, Outcome, iso_from_epoch

log = logging.getLogger(__name__)


class Feed:
    def __init__(
        self,
        path: Path,
        metrics: MeshMetrics | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.path = path
        self.metrics = metrics
        self._clock = clock

    def append(self, event: FeedEvent) -> Outcome:
        """Append one event. I/O failures are logged and ignored."""
        line = json.dumps(event.to_dict()) + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            log.warning(f"Failed to append feed event: {e}")
            if self.metrics:
                self.metrics.inc("agent_mesh_feed_writes_ignored_total")
            return Outcome.IGNORED
        return Outcome.OK

    def log_event(
        self,
        agent: str,
        event_type: FeedEventType,
        target: str | None = None,
        preview: str | None = None,
    ) -> Outcome:
        return self.append(
            FeedEvent(
                ts=iso_from_epoch(self._clock()),
                agent=agent,
                type=event_type,
                target=target,
                preview=preview,
            )
        )

    def _read_lines(self) -> list[str]:
        try:
            content = self.path.read_text(encoding="utf-8")
        except (FileNotFoundError, UnicodeDecodeError):
            return []
        except OSError as e:
            log.warning(f"Failed to read feed: {e}")
            return []
        return [line for line in content.split("\n") if line.strip()]

    def read(self, limit: int = 20) -> list[FeedEvent]:
        """Return the last ``limit`` parseable events, oldest first."""
        events = []
        for line in self._read_lines():
            try:
                events.append(FeedEvent.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError):
                # Torn line from a concurrent append
                continue
        if limit <= 0:
            return []
        return events[-limit:]

    def prune(self, max_events: int) -> Outcome:
        """Keep only the most recent ``max_events`` lines."""
        lines = self._read_lines()
        if len(lines) <= max_events:
            return Outcome.SKIPPED
        kept = lines[-max_events:] if max_events > 0 else []
        tmp = self.path.with_suffix(self.path.suffix + f".{os.getpid()}.tmp")
        try:
            tmp.write_text("".join(line + "\n" for line in kept), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            log.warning(f"Failed to prune feed: {e}")
            if self.metrics:
                self.metrics.inc("agent_mesh_feed_writes_ignored_total")
            try:
                tmp.unlink()
            except OSError:
                pass
            return Outcome.IGNORED
        log.debug(f"Pruned feed from {len(lines)} to {len(kept)} events")
        return Outcome.OK


# =============================================================================
# Formatting
# =============================================================================


def _target(event: FeedEvent) -> str:
    return event.target or ""


def _preview(event: FeedEvent) -> str:
    return event.preview or ""


_FORMATTERS: dict[FeedEventType, Callable[[FeedEvent], str]] = {
    FeedEventType.JOIN: lambda e: "joined",
    FeedEventType.LEAVE: lambda e: "left",
    FeedEventType.RESERVE: lambda e: f"reserved {_target(e)}",
    FeedEventType.RELEASE: lambda e: f"released {_target(e)}",
    FeedEventType.MESSAGE: lambda e: _preview(e),
    FeedEventType.COMMIT: lambda e: f'committed "{_preview(e)}"',
    FeedEventType.TEST: lambda e: f"ran tests ({_preview(e)})",
    FeedEventType.EDIT: lambda e: f"editing {_target(e)}",
    FeedEventType.STUCK: lambda e: "appears stuck",
}


def format_time(ts: str) -> str:
    """Render an ISO timestamp as local HH:MM."""
    try:
        return datetime.fromisoformat(ts.replace("Z", "+00:00")).astimezone().strftime("%H:%M")
    except (ValueError, AttributeError):
        return "--:--"


def format_event(event: FeedEvent) -> str:
    """Format a feed event as a human-readable line."""
    return f"{format_time(event.ts)} {event.agent} {_FORMATTERS[event.type](event)}".rstrip()
