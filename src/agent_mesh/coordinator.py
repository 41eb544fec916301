# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto

"""Host-facing glue: lifecycle hooks and tool operations over one MeshSession.

Every public method returns a value; none raises. Failures surface as a
``ToolResult`` with ``ok=False`` or a blocking ``ToolGate``.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agent_mesh import messaging, reservations, tracking
from agent_mesh.config import matches_auto_register_path
from agent_mesh.feed import format_event
from agent_mesh.messaging import MessageSendError
from agent_mesh.models import (
    STATUS_INDICATORS,
    AgentRegistration,
    FeedEventType,
    MeshMessage,
    epoch_from_iso,
)
from agent_mesh.registry import compute_status, current_cwd, extract_folder, format_duration
from agent_mesh.session import MeshSession

log = logging.getLogger(__name__)

INTERRUPT = "interrupt"
DEFERRED = "deferred"
PREVIEW_LENGTH = 60

# (message, rendered content, delivery mode)
MessageSink = Callable[[MeshMessage, str, str], None]


@dataclass(frozen=True)
class ToolResult:
    text: str
    ok: bool = True
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolGate:
    block: bool
    reason: str | None = None


def delivery_mode(msg: MeshMessage) -> str:
    """Urgent messages interrupt the recipient; the rest wait for its turn to end."""
    return INTERRUPT if msg.urgent else DEFERRED


def preview(text: str) -> str:
    return text if len(text) <= PREVIEW_LENGTH else text[: PREVIEW_LENGTH - 3] + "..."


def format_tokens(tokens: int) -> str:
    return f"{tokens / 1000:.1f}k" if tokens >= 1000 else str(tokens)


def _not_registered() -> ToolResult:
    return ToolResult(
        "Not registered in mesh. Set autoRegister: true in .agent-mesh/config.json "
        "or join explicitly.",
        ok=False,
    )


class MeshCoordinator:
    def __init__(self, session: MeshSession, on_message: MessageSink | None = None):
        self.session = session
        self.on_message = on_message
        session.deliver = self._deliver

    @property
    def state(self):
        return self.session.state

    # =========================================================================
    # Delivery
    # =========================================================================

    def _deliver(self, msg: MeshMessage) -> None:
        reply_hint = ""
        if self.session.config.context_mode != "none":
            reply_hint = f' - reply: mesh_send({{ to: "{msg.sender}", message: "..." }})'
        content = f"**Message from {msg.sender}**{reply_hint}\n\n{msg.text}"
        mode = delivery_mode(msg)
        log.info(f"Message from {msg.sender} ({mode})")
        if self.on_message is not None:
            self.on_message(msg, content, mode)

    def run_pending(self) -> int:
        """Run due timers and queued watch events on the calling thread."""
        return self.session.scheduler.run_pending()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def join(self, session_id: str = "", model: str = "unknown") -> ToolResult:
        """Register, start inbox delivery, trim the feed and announce the join."""
        state = self.state
        if state.registered:
            return ToolResult(f"Already registered as {state.agent_name}.")
        state.session_id = session_id
        state.model = model
        result = self.session.registry.register(state)
        if not result.ok:
            log.warning(f"Failed to join mesh: {result.error.value}")
            return ToolResult(
                f"Failed to join mesh: {result.error.value}",
                ok=False,
                details={"error": result.error.value, "name": result.name},
            )

        messaging.start_watcher(self.session)
        self.session.feed.prune(self.session.config.feed_retention)
        self.session.feed.log_event(state.agent_name, FeedEventType.JOIN)
        return ToolResult(f"Joined mesh as {state.agent_name}.", details={"name": state.agent_name})

    def on_session_start(
        self, has_ui: bool, session_id: str = "", model: str = "unknown", cwd: str | None = None
    ) -> str | None:
        """Auto-join when configured. Returns the identity line for the host, if any."""
        state = self.state
        state.is_human = has_ui
        # Headless runs have nowhere to deliver messages
        if not has_ui:
            return None

        config = self.session.config
        cwd = cwd or current_cwd()
        if not (config.auto_register or matches_auto_register_path(cwd, config.auto_register_paths)):
            return None

        if not self.join(session_id=session_id, model=model).ok:
            return None
        if config.context_mode == "none":
            return None

        branch = f" on {state.git_branch}" if state.git_branch else ""
        peers = self.session.registry.get_active_agents(state)
        peer_list = f" Peers: {', '.join(a.name for a in peers)}." if peers else ""
        return (
            f'You are "{state.agent_name}" in {extract_folder(cwd)}{branch}.{peer_list} '
            "Use mesh_peers to check who's active, mesh_reserve to claim files, "
            "mesh_send to message agents."
        )

    def on_tool_call(self, tool_name: str, tool_input: dict[str, Any]) -> ToolGate:
        """Block edits to paths reserved by a peer, then record the activity."""
        state = self.state
        if not state.registered:
            return ToolGate(block=False)

        if tool_name in tracking.EDIT_TOOLS:
            path = tool_input.get("path")
            if isinstance(path, str) and path:
                conflicts = self.session.registry.get_conflicts(state, path)
                if conflicts:
                    primary = conflicts[0]
                    lines = [
                        path,
                        f"Reserved by: {primary.agent} (in {extract_folder(primary.registration.cwd)})",
                    ]
                    if primary.reason:
                        lines.append(f'Reason: "{primary.reason}"')
                    lines.append("")
                    lines.append(f'Coordinate via mesh_send({{ to: "{primary.agent}", message: "..." }})')
                    return ToolGate(block=True, reason="\n".join(lines))

        tracking.on_tool_call(self.session, tool_name, tool_input)
        return ToolGate(block=False)

    def on_tool_result(self, tool_name: str, tool_input: dict[str, Any], is_error: bool = False) -> None:
        if not self.state.registered:
            return
        tracking.on_tool_result(self.session, tool_name, tool_input, is_error)
        self._schedule_registry_flush()

    def on_turn_end(self, usage: dict[str, Any] | None = None) -> None:
        """Poll the inbox as a fallback, recover the watch, count tokens."""
        messaging.process_inbox(self.session)
        messaging.recover_watcher_if_needed(self.session)
        if not self.state.registered or not usage:
            return
        total = usage.get("totalTokens")
        if not isinstance(total, int):
            total = int(usage.get("input", 0) or 0) + int(usage.get("output", 0) or 0)
        if total > 0:
            self.state.session.tokens += total
            self._schedule_registry_flush()

    def on_context_change(self) -> None:
        """The host forked, resumed or switched sessions."""
        messaging.recover_watcher_if_needed(self.session)

    def _schedule_registry_flush(self) -> None:
        state = self.state
        if state.registry_flush_timer is not None and state.registry_flush_timer.active:
            return

        def flush() -> None:
            state.registry_flush_timer = None
            self.session.registry.flush_activity(state)

        state.registry_flush_timer = self.session.scheduler.call_later(
            self.session.config.registry_flush_interval, flush
        )

    def shutdown(self) -> None:
        """Leave the mesh.

        Timers are cancelled and the watch closed first; reservations are
        released before the leave event so peers never see a departed agent
        still holding files; the registration goes last.
        """
        state = self.state
        if state.registry_flush_timer is not None:
            state.registry_flush_timer.cancel()
            state.registry_flush_timer = None
        tracking.cleanup(self.session)
        messaging.stop_watcher(self.session)

        if state.registered:
            if state.reservations:
                reservations.remove_all_reservations(self.session)
            self.session.feed.log_event(state.agent_name, FeedEventType.LEAVE)
        self.session.registry.unregister(state)
        log.info(f"Left mesh: {self.session.metrics.log_summary()}")

    # =========================================================================
    # Tools
    # =========================================================================

    def _status_of(self, agent: AgentRegistration):
        return compute_status(
            agent.activity.last_activity_at or agent.started_at,
            bool(agent.reservations),
            self.session.config.stuck_threshold,
            now=self.session.clock(),
        )

    def peers(self) -> ToolResult:
        state = self.state
        if not state.registered:
            return _not_registered()

        agents = self.session.registry.get_all_agents(state)
        lines = [f"# Mesh ({len(agents)} agents - {extract_folder(current_cwd())})", ""]
        unread = state.total_unread()
        if unread:
            lines.extend([f"{unread} unread message(s). Use whois <name> to read them.", ""])
        for agent in agents:
            computed = self._status_of(agent)
            label = f"{agent.name} (you)" if agent.name == state.agent_name else agent.name
            parts = [f"{STATUS_INDICATORS[computed.status]} {label}"]
            if agent.activity.current_activity:
                parts.append(agent.activity.current_activity)
            elif computed.idle_for:
                parts.append(f"{computed.status.value} {computed.idle_for}")
            parts.append(f"{agent.session.tool_calls} tools")
            parts.append(format_tokens(agent.session.tokens))
            if agent.model:
                parts.append(agent.model)
            if agent.reservations:
                parts.append(", ".join(r.pattern for r in agent.reservations))
            if agent.status_message:
                parts.append(agent.status_message)
            if state.unread_counts.get(agent.name):
                parts.append(f"{state.unread_counts[agent.name]} unread")
            lines.append(" - ".join(parts))

        recent = self.session.feed.read(5)
        if recent:
            lines.extend(["", "# Recent Activity", ""])
            lines.extend(format_event(e) for e in recent)

        return ToolResult("\n".join(lines).strip(), details={"agents": [a.name for a in agents]})

    def send(
        self,
        text: str,
        to: str | None = None,
        broadcast: bool = False,
        urgent: bool = False,
        reply_to: str | None = None,
    ) -> ToolResult:
        state = self.state
        if not state.registered:
            return _not_registered()
        if not text:
            return ToolResult("Error: message is required.", ok=False)

        if broadcast:
            sent = messaging.broadcast_message(self.session, text, urgent)
            if not sent:
                return ToolResult("No active agents to broadcast to.", details={"sent": []})
            self.session.feed.log_event(
                state.agent_name, FeedEventType.MESSAGE, preview=f'broadcast: "{preview(text)}"'
            )
            return ToolResult(
                f"Broadcast sent to {len(sent)} agent(s).", details={"sent": [m.to for m in sent]}
            )

        if not to:
            return ToolResult("Error: specify 'to' or 'broadcast: true'.", ok=False)
        if to == state.agent_name:
            return ToolResult("Error: cannot send to self.", ok=False)

        check = messaging.validate_recipient(self.session, to)
        if not check.valid:
            return ToolResult(
                f'Error: agent "{to}" {check.error.value}.', ok=False, details={"error": check.error.value}
            )

        try:
            msg = messaging.send_message(self.session, to, text, urgent, reply_to)
        except MessageSendError as e:
            log.warning(str(e))
            return ToolResult(f"Error: {e}", ok=False, details={"error": "write_failed"})

        self.session.feed.log_event(
            state.agent_name, FeedEventType.MESSAGE, target=to, preview=f'-> {to}: "{preview(text)}"'
        )
        suffix = " (urgent - will interrupt)" if urgent else ""
        return ToolResult(f"Message sent to {to}.{suffix}", details={"id": msg.id})

    def reserve(self, paths: list[str], reason: str | None = None) -> ToolResult:
        if not self.state.registered:
            return _not_registered()
        if not paths:
            return ToolResult("Error: at least one path required.", ok=False)

        warnings = []
        for pattern in paths:
            validation = reservations.add_reservation(self.session, pattern, reason)
            if not validation.valid:
                return ToolResult(f'Error: invalid pattern "{pattern}".', ok=False)
            if validation.warning:
                warnings.append(validation.warning)

        text = f"Reserved: {', '.join(paths)}"
        if warnings:
            text += "\n\nWarnings:\n" + "\n".join(f"- {w}" for w in warnings)
        return ToolResult(text, details={"warnings": warnings})

    def release(self, paths: list[str] | None = None) -> ToolResult:
        if not self.state.registered:
            return _not_registered()

        if not paths:
            released = reservations.remove_all_reservations(self.session)
            if not released:
                return ToolResult("No reservations to release.", details={"released": []})
            return ToolResult(f"Released all: {', '.join(released)}", details={"released": released})

        released = [p for p in paths if reservations.remove_reservation(self.session, p)]
        if not released:
            return ToolResult("No matching reservations found.", details={"released": []})
        return ToolResult(f"Released: {', '.join(released)}", details={"released": released})

    def whois(self, name: str | None) -> ToolResult:
        state = self.state
        if not state.registered:
            return _not_registered()
        if not name:
            return ToolResult("Error: name required for whois.", ok=False)

        agent = next((a for a in self.session.registry.get_all_agents(state) if a.name == name), None)
        if agent is None:
            return ToolResult(f'Agent "{name}" not found.', ok=False)

        computed = self._status_of(agent)
        started = epoch_from_iso(agent.started_at)
        age = format_duration(max(self.session.clock() - started, 0)) if started is not None else "?"
        is_self = agent.name == state.agent_name

        idle = f" for {computed.idle_for}" if computed.idle_for else ""
        lines = [f"# {agent.name}{' (you)' if is_self else ''}", ""]
        lines.append(f"{STATUS_INDICATORS[computed.status]} {computed.status.value}{idle}")
        if agent.model:
            lines.append(f"Model: {agent.model}")
        if agent.agent_type:
            lines.append(f"Type: {agent.agent_type}")
        if agent.git_branch:
            lines.append(f"Branch: {agent.git_branch}")
        lines.append(
            f"Session: {age} - {agent.session.tool_calls} tool calls - "
            f"{format_tokens(agent.session.tokens)} tokens"
        )
        if agent.status_message:
            lines.append(f"Status: {agent.status_message}")
        if agent.reservations:
            lines.extend(["", "## Reservations"])
            for r in agent.reservations:
                lines.append(f"- {r.pattern}" + (f" ({r.reason})" if r.reason else ""))
        if agent.session.files_modified:
            lines.extend(["", "## Recent Files"])
            lines.extend(f"- {f}" for f in agent.session.files_modified[-10:])

        history = state.chat_history.get(agent.name)
        if history and not is_self:
            lines.extend(["", "## Recent Messages"])
            lines.extend(f"- {m.timestamp} {preview(m.text)}" for m in list(history)[-5:])
            state.mark_read(agent.name)

        return ToolResult("\n".join(lines), details={"status": computed.status.value})

    def rename(self, name: str | None) -> ToolResult:
        if not self.state.registered:
            return _not_registered()
        if not name:
            return ToolResult("Error: name required for rename.", ok=False)

        messaging.stop_watcher(self.session)
        result = self.session.registry.rename(self.state, name)
        messaging.start_watcher(self.session)

        if not result.ok:
            return ToolResult(f"Error: {result.error.value}", ok=False, details={"error": result.error.value})
        return ToolResult(
            f'Renamed from "{result.old_name}" to "{result.new_name}".',
            details={"old": result.old_name, "new": result.new_name},
        )

    def set_status(self, message: str | None) -> ToolResult:
        state = self.state
        if not state.registered:
            return _not_registered()

        if not message or not message.strip():
            state.status_message = None
            state.custom_status = False
            tracking.update_auto_status(self.session)
            self.session.registry.update_registration(state)
            return ToolResult("Custom status cleared. Auto-status will resume.")

        state.status_message = message.strip()
        state.custom_status = True
        self.session.registry.update_registration(state)
        return ToolResult(f"Status set to: {state.status_message}")

    def feed(self, limit: int = 20) -> ToolResult:
        events = self.session.feed.read(limit)
        if not events:
            return ToolResult("# Activity Feed\n\nNo activity yet.")
        lines = [f"# Activity Feed (last {len(events)})", ""]
        lines.extend(format_event(e) for e in events)
        return ToolResult("\n".join(lines))
