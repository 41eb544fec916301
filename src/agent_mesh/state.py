# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto

"""In-memory state owned by one running agent. Never persisted directly."""

from collections import deque
from dataclasses import dataclass, field
from typing import Any

from agent_mesh.config import MAX_CHAT_HISTORY
from agent_mesh.models import Activity, MeshMessage, Reservation, SessionStats, utc_now_iso
from agent_mesh.scheduler import TimerHandle


def _history() -> deque[MeshMessage]:
    return deque(maxlen=MAX_CHAT_HISTORY)


@dataclass
class TrackingState:
    """Rolling activity counters and their reset timers."""

    pending_edits: dict[str, TimerHandle] = field(default_factory=dict)
    recent_commit: bool = False
    recent_commit_timer: TimerHandle | None = None
    recent_test_runs: int = 0
    recent_test_timer: TimerHandle | None = None
    recent_edits: int = 0
    recent_edit_timer: TimerHandle | None = None


@dataclass
class WatcherState:
    observer: Any = None
    retries: int = 0
    retry_timer: TimerHandle | None = None
    debounce_timer: TimerHandle | None = None


@dataclass
class InboxScanState:
    """Reentrancy guard for inbox scans."""

    scanning: bool = False
    rerun_requested: bool = False


@dataclass
class MeshState:
    agent_type: str = "agent"
    agent_name: str = ""
    registered: bool = False
    session_id: str = ""
    model: str = "unknown"
    git_branch: str | None = None
    is_human: bool = False
    reservations: list[Reservation] = field(default_factory=list)
    chat_history: dict[str, deque[MeshMessage]] = field(default_factory=dict)
    unread_counts: dict[str, int] = field(default_factory=dict)
    broadcast_history: deque[MeshMessage] = field(default_factory=_history)
    session: SessionStats = field(default_factory=SessionStats)
    activity: Activity = field(default_factory=lambda: Activity(last_activity_at=utc_now_iso()))
    status_message: str | None = None
    custom_status: bool = False
    session_started_at: str = field(default_factory=utc_now_iso)
    registry_flush_timer: TimerHandle | None = None
    tracking: TrackingState = field(default_factory=TrackingState)
    watcher: WatcherState = field(default_factory=WatcherState)
    inbox_scan: InboxScanState = field(default_factory=InboxScanState)

    def record_incoming(self, msg: MeshMessage) -> None:
        """Append to the sender's chat ring and bump its unread counter."""
        self.chat_history.setdefault(msg.sender, _history()).append(msg)
        self.unread_counts[msg.sender] = self.unread_counts.get(msg.sender, 0) + 1

    def mark_read(self, peer: str) -> None:
        self.unread_counts.pop(peer, None)

    def total_unread(self) -> int:
        return sum(self.unread_counts.values())
