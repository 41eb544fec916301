#!/usr/bin/env python3
# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto
"""Agent Mesh Dashboard - Real-time view of agents, inboxes, and activity.

Read-only: dead registrations are shown as absent but never removed.
"""

import json
import logging
import os
import signal
import sys
import time
from pathlib import Path
from threading import Event, Lock

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from agent_mesh.config import MeshConfig, MeshDirs, load_config, resolve_dirs
from agent_mesh.feed import Feed, format_event
from agent_mesh.liveness import is_process_alive
from agent_mesh.models import STATUS_INDICATORS, AgentRegistration
from agent_mesh.registry import compute_status

log = logging.getLogger(__name__)

# VT100 / POSIX minimum terminal dimensions
MIN_COLS = 80
MIN_LINES = 24

FEED_LINES = 10

# Synchronization
refresh_event = Event()
display_lock = Lock()


def get_terminal_width() -> int:
    """Get current terminal width, clamped to the VT100/POSIX minimum of 80 columns."""
    try:
        cols = os.get_terminal_size().columns
    except OSError:
        cols = MIN_COLS
    return max(cols, MIN_COLS)


class MeshEventHandler(FileSystemEventHandler):
    """Trigger refresh on registry, inbox and feed changes."""

    def on_any_event(self, event):
        if event.event_type not in ["created", "deleted", "modified", "moved"]:
            return

        path = getattr(event, "dest_path", "") or event.src_path
        if str(path).endswith((".json", ".jsonl")) or str(event.src_path).endswith((".json", ".jsonl")):
            refresh_event.set()


def clear_screen():
    print("\033[2J\033[H", end="")


def load_agents(dirs: MeshDirs) -> list[AgentRegistration]:
    """Live registrations, sorted by name. Malformed and dead records are skipped."""
    agents = []
    try:
        paths = sorted(dirs.registry.glob("*.json"))
    except OSError:
        return []
    for path in paths:
        try:
            agent = AgentRegistration.from_dict(json.loads(path.read_text()))
        except (OSError, ValueError, KeyError, TypeError):
            continue
        if is_process_alive(agent.pid):
            agents.append(agent)
    return agents


def pending_messages(dirs: MeshDirs, name: str) -> int:
    try:
        return sum(
            1
            for p in dirs.inbox_for(name).iterdir()
            if p.suffix == ".json" and not p.name.startswith(".")
        )
    except OSError:
        return 0


def print_header(w: int, dirs: MeshDirs) -> None:
    print("═" * w)
    print("AGENT MESH DASHBOARD".center(w))
    print(str(dirs.base).center(w))
    print("═" * w)
    print()


def print_agents(w: int, dirs: MeshDirs, config: MeshConfig) -> None:
    print("📡 ACTIVE AGENTS")
    print("─" * w)

    agents = load_agents(dirs)
    if not agents:
        print("  (no agents registered)")
        print()
        return

    # Column layout: "  {indicator} {name} {state} {inbox} {activity}"
    # Fixed chars: 2 (indent) + 2 (indicator + space) + 3 (spaces) = 7
    # inbox column reserves 8 (e.g. "999 msgs")
    inbox_reserve = 8
    available = w - 7 - inbox_reserve
    # Proportions: name ~25%, state ~20%, activity ~55%  (of available)
    name_w = max(8, available * 25 // 100)
    state_w = max(6, available * 20 // 100)
    activity_w = max(10, available - name_w - state_w)

    now = time.time()
    for agent in agents:
        computed = compute_status(
            agent.activity.last_activity_at, bool(agent.reservations), config.stuck_threshold, now
        )
        indicator = STATUS_INDICATORS[computed.status]
        name = agent.name[:name_w]
        state = computed.status.value
        if computed.idle_for:
            state = f"{state} {computed.idle_for}"
        state = state[:state_w]
        pending = pending_messages(dirs, agent.name)
        inbox = f"{pending} msgs" if pending else ""
        activity = agent.activity.current_activity or agent.status_message or ""
        activity = activity[:activity_w].replace("\n", " ")

        print(
            f"  {indicator} {name:<{name_w}} {state:<{state_w}} {inbox:<{inbox_reserve}} {activity}"
        )
        for r in agent.reservations:
            reason = f" ({r.reason})" if r.reason else ""
            print(f"      🔒 {r.pattern}{reason}"[:w])

    print()


def print_feed(w: int, dirs: MeshDirs) -> None:
    print(f"📜 RECENT ACTIVITY (last {FEED_LINES})")
    print("─" * w)

    events = Feed(dirs.feed).read(FEED_LINES)
    if not events:
        print("  (no activity yet)")
        print()
        return

    for event in events:
        print(f"  {format_event(event)}"[:w])

    print()


def render_dashboard(dirs: MeshDirs, config: MeshConfig) -> None:
    """Render the full dashboard, adapting to current terminal width."""
    w = get_terminal_width()
    with display_lock:
        clear_screen()
        print_header(w, dirs)
        print_agents(w, dirs, config)
        print_feed(w, dirs)
        print("─" * w)
        print("  Watching for changes... (Ctrl+C to exit)")
        sys.stdout.flush()


def main():
    logging.basicConfig(
        level=getattr(logging, os.environ.get("AGENT_MESH_LOG_LEVEL", "WARNING").upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    dirs = MeshDirs(Path(sys.argv[1]).expanduser()) if len(sys.argv) > 1 else resolve_dirs()
    config = load_config()
    dirs.ensure()

    # Set up filesystem observer
    observer = Observer()
    handler = MeshEventHandler()

    observer.schedule(handler, str(dirs.registry), recursive=False)
    observer.schedule(handler, str(dirs.inbox), recursive=True)
    # Watch the mesh root itself for feed.jsonl changes
    observer.schedule(handler, str(dirs.base), recursive=False)

    observer.start()

    # Re-render on terminal resize (SIGWINCH) if supported
    if hasattr(signal, "SIGWINCH"):
        signal.signal(signal.SIGWINCH, lambda *_: refresh_event.set())

    try:
        # Initial render
        render_dashboard(dirs, config)

        while True:
            # Wait for filesystem event or timeout (idle durations keep ticking)
            triggered = refresh_event.wait(timeout=10)
            if triggered:
                refresh_event.clear()
                # Small debounce to batch rapid changes
                time.sleep(0.05)
            render_dashboard(dirs, config)

    except KeyboardInterrupt:
        print("\n  Exiting...")
    finally:
        observer.stop()
        observer.join()


if __name__ == "__main__":
    main()
