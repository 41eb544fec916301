# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto

"""Activity tracking driven by the host's tool-call and tool-result hooks.

Keeps the agent's activity label, session counters and three rolling
counters (recent edits, recent test runs, recent commit). Each rolling
counter resets ``recent_window`` seconds after its latest contribution.
Edit events reach the feed through a per-path debounce.
"""

import re
from typing import TYPE_CHECKING, Any

from agent_mesh.models import FeedEventType, epoch_from_iso, iso_from_epoch

if TYPE_CHECKING:
    from agent_mesh.session import MeshSession

EDIT_TOOLS = ("edit", "write")

_GIT_COMMIT = re.compile(r"\bgit\s+commit\b")
_TEST_RUN = re.compile(
    r"\b(npm\s+test|npx\s+(jest|vitest|mocha)|pytest|go\s+test|cargo\s+test|bun\s+test)\b"
)
_COMMIT_MESSAGE = re.compile(r"""-m\s+["']([^"']+)["']""")

JUST_ARRIVED_SECONDS = 30
DEBUGGING_TEST_RUNS = 3
ON_FIRE_EDITS = 8


def is_git_commit(command: str) -> bool:
    return _GIT_COMMIT.search(command) is not None


def is_test_run(command: str) -> bool:
    return _TEST_RUN.search(command) is not None


def extract_commit_message(command: str) -> str:
    """First quoted string after ``-m``, or "" if there is none."""
    match = _COMMIT_MESSAGE.search(command)
    return match.group(1) if match else ""


def shorten_path(file_path: str) -> str:
    parts = file_path.split("/")
    return "/".join(parts[-2:]) if len(parts) > 2 else file_path


def _str_arg(tool_input: dict[str, Any], key: str) -> str:
    value = tool_input.get(key)
    return value if isinstance(value, str) else ""


# =============================================================================
# Hooks
# =============================================================================


def on_tool_call(session: "MeshSession", tool_name: str, tool_input: dict[str, Any]) -> None:
    state = session.state
    if not state.registered:
        return

    state.activity.last_activity_at = iso_from_epoch(session.clock())
    state.session.tool_calls += 1

    if tool_name in EDIT_TOOLS:
        path = _str_arg(tool_input, "path")
        if path:
            state.activity.current_activity = f"editing {shorten_path(path)}"
            _debounce_edit_event(session, path)
            _track_recent_edit(session)
    elif tool_name == "read":
        path = _str_arg(tool_input, "path")
        if path:
            state.activity.current_activity = f"reading {shorten_path(path)}"
    elif tool_name == "bash":
        command = _str_arg(tool_input, "command")
        if is_git_commit(command):
            state.activity.current_activity = "committing"
        elif is_test_run(command):
            state.activity.current_activity = "running tests"

    update_auto_status(session)


def on_tool_result(
    session: "MeshSession", tool_name: str, tool_input: dict[str, Any], is_error: bool
) -> None:
    state = session.state
    if not state.registered:
        return

    if tool_name in EDIT_TOOLS:
        path = _str_arg(tool_input, "path")
        if path:
            state.activity.last_tool_call = f"{tool_name}: {shorten_path(path)}"
            state.session.add_modified_file(path)
    elif tool_name == "bash":
        command = _str_arg(tool_input, "command")
        if is_git_commit(command):
            message = extract_commit_message(command)
            session.feed.log_event(state.agent_name, FeedEventType.COMMIT, preview=message)
            state.activity.last_tool_call = f"commit: {message}"
            _track_recent_commit(session)
        if is_test_run(command):
            outcome = "failed" if is_error else "passed"
            session.feed.log_event(state.agent_name, FeedEventType.TEST, preview=outcome)
            state.activity.last_tool_call = f"test: {outcome}"
            _track_recent_test(session)

    state.activity.current_activity = None
    update_auto_status(session)


# =============================================================================
# Auto Status
# =============================================================================


def generate_auto_status(session: "MeshSession") -> str | None:
    state = session.state
    tracking = state.tracking
    started_at = epoch_from_iso(state.session_started_at)
    if started_at is not None and session.clock() - started_at < JUST_ARRIVED_SECONDS:
        return "just arrived"
    if tracking.recent_commit:
        return "just shipped"
    if tracking.recent_test_runs >= DEBUGGING_TEST_RUNS:
        return "debugging..."
    if tracking.recent_edits >= ON_FIRE_EDITS:
        return "on fire"
    current = state.activity.current_activity or ""
    if current.startswith("reading"):
        return "exploring the codebase"
    if current.startswith("editing"):
        return "deep in thought"
    return None


def update_auto_status(session: "MeshSession") -> None:
    state = session.state
    if not state.registered or state.custom_status or not session.config.auto_status:
        return
    state.status_message = generate_auto_status(session)


# =============================================================================
# Timers
# =============================================================================


def _debounce_edit_event(session: "MeshSession", path: str) -> None:
    pending = session.state.tracking.pending_edits
    existing = pending.pop(path, None)
    if existing is not None:
        existing.cancel()

    def fire() -> None:
        pending.pop(path, None)
        session.feed.log_event(session.state.agent_name, FeedEventType.EDIT, target=path)

    pending[path] = session.scheduler.call_later(session.config.edit_debounce, fire)


def _track_recent_commit(session: "MeshSession") -> None:
    tracking = session.state.tracking
    tracking.recent_commit = True
    if tracking.recent_commit_timer is not None:
        tracking.recent_commit_timer.cancel()

    def reset() -> None:
        tracking.recent_commit = False
        tracking.recent_commit_timer = None

    tracking.recent_commit_timer = session.scheduler.call_later(session.config.recent_window, reset)


def _track_recent_test(session: "MeshSession") -> None:
    tracking = session.state.tracking
    tracking.recent_test_runs += 1
    if tracking.recent_test_timer is not None:
        tracking.recent_test_timer.cancel()

    def reset() -> None:
        tracking.recent_test_runs = 0
        tracking.recent_test_timer = None

    tracking.recent_test_timer = session.scheduler.call_later(session.config.recent_window, reset)


def _track_recent_edit(session: "MeshSession") -> None:
    tracking = session.state.tracking
    tracking.recent_edits += 1
    if tracking.recent_edit_timer is not None:
        tracking.recent_edit_timer.cancel()

    def reset() -> None:
        tracking.recent_edits = 0
        tracking.recent_edit_timer = None

    tracking.recent_edit_timer = session.scheduler.call_later(session.config.recent_window, reset)


def cleanup(session: "MeshSession") -> None:
    """Cancel every pending edit debounce and rolling-window timer."""
    tracking = session.state.tracking
    for timer in tracking.pending_edits.values():
        timer.cancel()
    tracking.pending_edits.clear()
    for attr in ("recent_commit_timer", "recent_test_timer", "recent_edit_timer"):
        timer = getattr(tracking, attr)
        if timer is not None:
            timer.cancel()
            setattr(tracking, attr, None)
