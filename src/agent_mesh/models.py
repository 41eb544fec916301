# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto

"""Records persisted under the mesh root, and the result types returned to callers.

On-disk JSON uses camelCase keys; the dataclasses here use snake_case and
convert at the boundary with ``to_dict`` / ``from_dict``. ``from_dict``
raises ``KeyError``, ``TypeError`` or ``ValueError`` on malformed input so
readers can treat the record as absent.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

MAX_MODIFIED_FILES = 20


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def iso_from_epoch(seconds: float) -> str:
    """Convert epoch seconds to an ISO-8601 UTC string."""
    return datetime.fromtimestamp(seconds, timezone.utc).isoformat()


def epoch_from_iso(value: str) -> float | None:
    """Parse an ISO-8601 timestamp into epoch seconds, or None if malformed."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


# =============================================================================
# Registration
# =============================================================================


@dataclass
class Reservation:
    pattern: str
    since: str
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"pattern": self.pattern, "since": self.since}
        if self.reason is not None:
            data["reason"] = self.reason
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Reservation":
        pattern = data["pattern"]
        if not isinstance(pattern, str):
            raise TypeError("reservation pattern must be a string")
        return cls(pattern=pattern, since=data.get("since", ""), reason=data.get("reason"))


@dataclass
class SessionStats:
    tool_calls: int = 0
    tokens: int = 0
    files_modified: list[str] = field(default_factory=list)

    def add_modified_file(self, path: str) -> None:
        """Record ``path`` as most recent, de-duplicated, keeping the last 20."""
        if path in self.files_modified:
            self.files_modified.remove(path)
        self.files_modified.append(path)
        del self.files_modified[:-MAX_MODIFIED_FILES]

    def copy(self) -> "SessionStats":
        return SessionStats(self.tool_calls, self.tokens, list(self.files_modified))

    def to_dict(self) -> dict[str, Any]:
        return {
            "toolCalls": self.tool_calls,
            "tokens": self.tokens,
            "filesModified": list(self.files_modified),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionStats":
        return cls(
            tool_calls=int(data.get("toolCalls", 0)),
            tokens=int(data.get("tokens", 0)),
            files_modified=list(data.get("filesModified", [])),
        )


@dataclass
class Activity:
    last_activity_at: str
    current_activity: str | None = None
    last_tool_call: str | None = None

    def copy(self) -> "Activity":
        return Activity(self.last_activity_at, self.current_activity, self.last_tool_call)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"lastActivityAt": self.last_activity_at}
        if self.current_activity is not None:
            data["currentActivity"] = self.current_activity
        if self.last_tool_call is not None:
            data["lastToolCall"] = self.last_tool_call
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_at: str = "") -> "Activity":
        return cls(
            last_activity_at=data.get("lastActivityAt") or default_at,
            current_activity=data.get("currentActivity"),
            last_tool_call=data.get("lastToolCall"),
        )


@dataclass
class AgentRegistration:
    name: str
    agent_type: str
    pid: int
    session_id: str
    cwd: str
    model: str
    started_at: str
    is_human: bool = False
    git_branch: str | None = None
    session: SessionStats = field(default_factory=SessionStats)
    activity: Activity | None = None
    status_message: str | None = None
    reservations: list[Reservation] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.activity is None:
            self.activity = Activity(last_activity_at=self.started_at)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "agentType": self.agent_type,
            "pid": self.pid,
            "sessionId": self.session_id,
            "cwd": self.cwd,
            "model": self.model,
            "startedAt": self.started_at,
            "isHuman": self.is_human,
            "session": self.session.to_dict(),
            "activity": self.activity.to_dict(),
        }
        if self.git_branch:
            data["gitBranch"] = self.git_branch
        if self.status_message is not None:
            data["statusMessage"] = self.status_message
        if self.reservations:
            data["reservations"] = [r.to_dict() for r in self.reservations]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentRegistration":
        pid = data["pid"]
        if not isinstance(pid, int) or isinstance(pid, bool):
            raise TypeError(f"pid must be an integer, got {pid!r}")
        started_at = data.get("startedAt", "")
        return cls(
            name=data["name"],
            agent_type=data.get("agentType", "agent"),
            pid=pid,
            session_id=data.get("sessionId", ""),
            cwd=data.get("cwd", ""),
            model=data.get("model", "unknown"),
            started_at=started_at,
            is_human=bool(data.get("isHuman", False)),
            git_branch=data.get("gitBranch"),
            session=SessionStats.from_dict(data.get("session") or {}),
            activity=Activity.from_dict(data.get("activity") or {}, default_at=started_at),
            status_message=data.get("statusMessage"),
            reservations=[Reservation.from_dict(r) for r in data.get("reservations") or []],
        )


# =============================================================================
# Messaging
# =============================================================================


@dataclass(frozen=True)
class MeshMessage:
    id: str
    sender: str
    to: str
    text: str
    timestamp: str
    urgent: bool = False
    reply_to: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from": self.sender,
            "to": self.to,
            "text": self.text,
            "timestamp": self.timestamp,
            "urgent": self.urgent,
            "replyTo": self.reply_to,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MeshMessage":
        text = data["text"]
        sender = data["from"]
        if not isinstance(text, str) or not isinstance(sender, str):
            raise TypeError("message text and sender must be strings")
        return cls(
            id=data["id"],
            sender=sender,
            to=data.get("to", ""),
            text=text,
            timestamp=data.get("timestamp", ""),
            urgent=data.get("urgent") is True,
            reply_to=data.get("replyTo"),
        )


# =============================================================================
# Feed
# =============================================================================


class FeedEventType(str, Enum):
    JOIN = "join"
    LEAVE = "leave"
    RESERVE = "reserve"
    RELEASE = "release"
    MESSAGE = "message"
    COMMIT = "commit"
    TEST = "test"
    EDIT = "edit"
    STUCK = "stuck"


@dataclass(frozen=True)
class FeedEvent:
    ts: str
    agent: str
    type: FeedEventType
    target: str | None = None
    preview: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ts": self.ts, "agent": self.agent, "type": self.type.value}
        if self.target is not None:
            data["target"] = self.target
        if self.preview is not None:
            data["preview"] = self.preview
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeedEvent":
        return cls(
            ts=data["ts"],
            agent=data["agent"],
            type=FeedEventType(data["type"]),
            target=data.get("target"),
            preview=data.get("preview"),
        )


# =============================================================================
# Status
# =============================================================================


class AgentStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    AWAY = "away"
    STUCK = "stuck"


STATUS_INDICATORS = {
    AgentStatus.ACTIVE: "●",
    AgentStatus.IDLE: "○",
    AgentStatus.AWAY: "◌",
    AgentStatus.STUCK: "✕",
}


@dataclass(frozen=True)
class ComputedStatus:
    status: AgentStatus
    idle_for: str | None = None


# =============================================================================
# Results
# =============================================================================


class Outcome(str, Enum):
    """Result of a best-effort write."""

    OK = "ok"
    SKIPPED = "skipped"  # nothing to do (not registered, no record)
    IGNORED = "ignored"  # attempted, failed, and deliberately not propagated


class RegisterError(str, Enum):
    INVALID_NAME = "invalid_name"
    NAME_TAKEN = "name_taken"
    WRITE_FAILED = "write_failed"
    RACE_LOST = "race_lost"


class RenameError(str, Enum):
    NOT_REGISTERED = "not_registered"
    INVALID_NAME = "invalid_name"
    SAME_NAME = "same_name"
    NAME_TAKEN = "name_taken"
    WRITE_FAILED = "write_failed"
    RACE_LOST = "race_lost"


class RecipientError(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_REGISTRATION = "invalid_registration"


@dataclass(frozen=True)
class RegisterResult:
    ok: bool
    name: str
    error: RegisterError | None = None


@dataclass(frozen=True)
class RenameResult:
    ok: bool
    old_name: str | None = None
    new_name: str | None = None
    error: RenameError | None = None


@dataclass(frozen=True)
class RecipientCheck:
    valid: bool
    error: RecipientError | None = None


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    warning: str | None = None


@dataclass(frozen=True)
class ReservationConflict:
    path: str
    agent: str
    pattern: str
    reason: str | None
    registration: AgentRegistration
