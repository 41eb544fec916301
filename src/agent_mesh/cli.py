#!/usr/bin/env python3
# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto
"""agent-mesh command line: inspect the mesh, send messages, or run an agent.

Commands:
- peers: list live agents with status, activity and reservations
- feed: print the most recent activity feed events
- prune: trim the feed to the newest N events
- send: drop a message into an agent's inbox
- join: register as an agent and print delivered messages until interrupted

The mesh root is resolved from AGENT_MESH_DIR, then the nearest .agent-mesh
directory above the working directory. ``--dir`` overrides both.
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path

from agent_mesh import __version__, messaging
from agent_mesh.config import MeshDirs, load_config, resolve_dirs
from agent_mesh.coordinator import MeshCoordinator
from agent_mesh.feed import format_event
from agent_mesh.messaging import MessageSendError
from agent_mesh.models import STATUS_INDICATORS, FeedEventType, MeshMessage, Outcome
from agent_mesh.registry import compute_status
from agent_mesh.session import MeshSession

LOG_LEVEL = os.environ.get("AGENT_MESH_LOG_LEVEL", "INFO")
FALLBACK_POLL_SECONDS = 5.0

log = logging.getLogger(__name__)


def _setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _dirs_from_args(args: argparse.Namespace) -> MeshDirs:
    return MeshDirs(Path(args.dir).expanduser()) if args.dir else resolve_dirs()


# =============================================================================
# Commands
# =============================================================================


def cmd_peers(args: argparse.Namespace) -> int:
    config = load_config()
    session = MeshSession(_dirs_from_args(args), config)
    agents = session.registry.get_active_agents(session.state)
    if not agents:
        print("No active agents.")
        return 0

    now = time.time()
    for agent in agents:
        computed = compute_status(
            agent.activity.last_activity_at, bool(agent.reservations), config.stuck_threshold, now
        )
        parts = [f"{STATUS_INDICATORS[computed.status]} {agent.name}"]
        if agent.activity.current_activity:
            parts.append(agent.activity.current_activity)
        elif computed.idle_for:
            parts.append(f"{computed.status.value} {computed.idle_for}")
        if agent.reservations:
            parts.append(", ".join(r.pattern for r in agent.reservations))
        if agent.status_message:
            parts.append(agent.status_message)
        print(" - ".join(parts))
    return 0


def cmd_feed(args: argparse.Namespace) -> int:
    session = MeshSession(_dirs_from_args(args))
    events = session.feed.read(args.limit)
    if not events:
        print("No activity yet.")
        return 0
    for event in events:
        print(format_event(event))
    return 0


def cmd_prune(args: argparse.Namespace) -> int:
    session = MeshSession(_dirs_from_args(args))
    outcome = session.feed.prune(args.keep)
    print(f"Prune: {outcome.value}")
    return 1 if outcome is Outcome.IGNORED else 0


def cmd_send(args: argparse.Namespace) -> int:
    session = MeshSession(_dirs_from_args(args))
    session.state.agent_name = args.sender

    check = messaging.validate_recipient(session, args.to)
    if not check.valid:
        print(f'Error: agent "{args.to}" {check.error.value}.', file=sys.stderr)
        return 1
    try:
        messaging.send_message(session, args.to, args.text, urgent=args.urgent)
    except MessageSendError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    session.feed.log_event(args.sender, FeedEventType.MESSAGE, target=args.to, preview=f"-> {args.to}")
    print(f"Message sent to {args.to}.")
    return 0


def cmd_join(args: argparse.Namespace) -> int:
    config = load_config()
    session = MeshSession(_dirs_from_args(args), config, agent_type=args.type)

    def on_message(msg: MeshMessage, content: str, mode: str) -> None:
        marker = "!" if mode == "interrupt" else " "
        print(f"{marker} [{msg.sender}] {msg.text}", flush=True)

    coordinator = MeshCoordinator(session, on_message=on_message)
    result = coordinator.join(model="cli")
    if not result.ok:
        log.error(result.text)
        return 1
    log.info(f"Mesh root: {session.dirs.base}")
    log.info(result.text)

    shutdown_event = threading.Event()

    def shutdown_handler(signum, frame):
        log.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    # Covers filesystems where the watch never comes up
    def fallback_poll() -> None:
        coordinator.on_turn_end()
        session.scheduler.call_later(FALLBACK_POLL_SECONDS, fallback_poll)

    session.scheduler.call_later(FALLBACK_POLL_SECONDS, fallback_poll)

    try:
        session.scheduler.run_until(shutdown_event)
    finally:
        coordinator.shutdown()
        session.scheduler.cancel_all()
    return 0


# =============================================================================
# Main
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agent-mesh", description=__doc__.splitlines()[0])
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--dir", help="Mesh root directory (overrides AGENT_MESH_DIR)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("peers", help="List active agents").set_defaults(func=cmd_peers)

    feed = sub.add_parser("feed", help="Show recent activity")
    feed.add_argument("--limit", type=int, default=20)
    feed.set_defaults(func=cmd_feed)

    prune = sub.add_parser("prune", help="Trim the activity feed")
    prune.add_argument("--keep", type=int, default=50)
    prune.set_defaults(func=cmd_prune)

    send = sub.add_parser("send", help="Send a message to an agent")
    send.add_argument("--as", dest="sender", default="cli", help="Sender name")
    send.add_argument("--urgent", action="store_true")
    send.add_argument("to")
    send.add_argument("text")
    send.set_defaults(func=cmd_send)

    join = sub.add_parser("join", help="Join the mesh and print incoming messages")
    join.add_argument("--type", default=os.environ.get("AGENT_MESH_TYPE", "agent"))
    join.set_defaults(func=cmd_join)

    return parser


def main(argv: list[str] | None = None) -> int:
    _setup_logging()
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
