# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto

"""Inbox messaging: one JSON file per message under <mesh-root>/inbox/<agent>/.

Delivery:
- A watchdog observer watches the agent's own inbox and posts change
  notifications into the agent's scheduler; nothing else runs on the
  observer thread.
- Bursts of notifications are coalesced by a short debounce before a scan.
- A scan reads files in filename order (arrival order), records each message
  in chat history, hands it to the delivery callback and deletes the file.
  Unparseable files are deleted without delivery and never retried.
- Scans are guarded against reentry: a request made mid-scan becomes one
  extra pass after the current one.
- If the watch cannot be established, or dies, it is retried with
  exponential backoff and abandoned after MAX_WATCHER_RETRIES failures. The
  host's turn-end call to process_inbox keeps delivery working after that.
"""

import json
import logging
import os
import random
import string
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEvent, FileSystemEventHandler

from agent_mesh.config import MAX_WATCHER_RETRIES, WATCHER_BACKOFF_BASE, WATCHER_BACKOFF_CAP
from agent_mesh.models import (
    MeshMessage,
    RecipientCheck,
    RecipientError,
    iso_from_epoch,
)
from agent_mesh.registry import is_valid_agent_name

if TYPE_CHECKING:
    from agent_mesh.session import MeshSession

log = logging.getLogger(__name__)

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


class MessageSendError(Exception):
    """Raised when a message file cannot be written to a recipient's inbox."""


# =============================================================================
# Send
# =============================================================================


def message_filename(timestamp_ms: int) -> str:
    """Sortable inbox filename: zero-padded epoch ms plus a random suffix."""
    suffix = "".join(random.choices(_SUFFIX_ALPHABET, k=6))
    return f"{timestamp_ms:013d}-{suffix}.json"


def validate_recipient(session: "MeshSession", name: str) -> RecipientCheck:
    """Check that ``name`` has a live registration. Dead records are removed."""
    if not is_valid_agent_name(name):
        return RecipientCheck(valid=False, error=RecipientError.NOT_FOUND)

    path = session.dirs.registration_path(name)
    if not path.exists():
        return RecipientCheck(valid=False, error=RecipientError.NOT_FOUND)

    registration = session.registry.read_registration(name)
    if registration is None:
        if not path.exists():
            return RecipientCheck(valid=False, error=RecipientError.NOT_FOUND)
        return RecipientCheck(valid=False, error=RecipientError.INVALID_REGISTRATION)

    if not session.registry.is_alive(registration.pid):
        try:
            path.unlink()
            log.info(f"Removed stale registration {name} (pid {registration.pid})")
        except OSError:
            pass
        session.registry.invalidate_cache()
        return RecipientCheck(valid=False, error=RecipientError.NOT_FOUND)

    return RecipientCheck(valid=True)


def send_message(
    session: "MeshSession",
    to: str,
    text: str,
    urgent: bool = False,
    reply_to: str | None = None,
) -> MeshMessage:
    """Write one message into ``to``'s inbox."""
    now = session.clock()
    msg = MeshMessage(
        id=str(uuid.uuid4()),
        sender=session.state.agent_name,
        to=to,
        text=text,
        timestamp=iso_from_epoch(now),
        urgent=urgent,
        reply_to=reply_to,
    )

    inbox = session.dirs.inbox_for(to)
    target = inbox / message_filename(int(now * 1000))
    # Written under a dot-name and renamed so a scan never sees a partial file
    tmp = inbox / f".{target.name}.tmp"
    try:
        inbox.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(msg.to_dict(), indent=2))
        os.replace(tmp, target)
    except OSError as e:
        raise MessageSendError(f"Failed to write message to {to}: {e}") from e

    session.metrics.inc("agent_mesh_messages_sent_total")
    log.debug(f"Sent message {msg.id} to {to}")
    return msg


def broadcast_message(session: "MeshSession", text: str, urgent: bool = False) -> list[MeshMessage]:
    """Send ``text`` to every active peer. Peers that vanish mid-way are skipped."""
    sent = []
    for agent in session.registry.get_active_agents(session.state):
        try:
            msg = send_message(session, agent.name, text, urgent)
        except MessageSendError as e:
            log.warning(f"Broadcast skipped {agent.name}: {e}")
            continue
        sent.append(msg)
        session.state.broadcast_history.append(msg)

    if sent:
        session.metrics.inc("agent_mesh_broadcasts_total")
    return sent


# =============================================================================
# Receive
# =============================================================================


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning(f"Failed to delete message file {path.name}: {e}")


def _pending_files(inbox: Path) -> list[Path]:
    try:
        return sorted(
            p for p in inbox.iterdir() if p.suffix == ".json" and not p.name.startswith(".")
        )
    except FileNotFoundError:
        return []
    except OSError as e:
        log.warning(f"Failed to list inbox {inbox}: {e}")
        return []


def _scan_once(session: "MeshSession") -> int:
    state = session.state
    session.metrics.inc("agent_mesh_inbox_scans_total")
    delivered = 0
    for path in _pending_files(session.dirs.inbox_for(state.agent_name)):
        try:
            data = json.loads(path.read_text())
            if not isinstance(data, dict):
                raise TypeError("message is not a JSON object")
            msg = MeshMessage.from_dict(data)
        except FileNotFoundError:
            continue
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning(f"Discarding malformed message {path.name}: {e}")
            session.metrics.inc("agent_mesh_messages_malformed_total")
            _discard(path)
            continue

        state.record_incoming(msg)
        try:
            session.deliver(msg)
        except Exception:
            log.exception(f"Delivery callback failed for message {msg.id}")
        finally:
            _discard(path)
        delivered += 1
        session.metrics.inc("agent_mesh_messages_delivered_total")
    return delivered


def process_inbox(session: "MeshSession") -> int:
    """Deliver every pending message. Returns the number delivered."""
    state = session.state
    if not state.registered:
        return 0

    guard = state.inbox_scan
    if guard.scanning:
        guard.rerun_requested = True
        return 0

    guard.scanning = True
    delivered = 0
    try:
        while True:
            guard.rerun_requested = False
            delivered += _scan_once(session)
            if not guard.rerun_requested:
                break
    finally:
        guard.scanning = False
        guard.rerun_requested = False
    return delivered


# =============================================================================
# Watcher
# =============================================================================


class InboxEventHandler(FileSystemEventHandler):
    """Forward inbox changes to the owning session's scheduler."""

    def __init__(self, session: "MeshSession", inbox: Path, observer):
        self.session = session
        self.inbox = inbox
        self.observer = observer

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type == "deleted" and event.is_directory:
            if Path(event.src_path) == self.inbox:
                observer = self.observer
                self.session.scheduler.post(lambda: _on_watch_error(self.session, observer))
            return
        if event.is_directory:
            return
        if event.event_type not in ("created", "modified", "moved", "closed"):
            return
        path = getattr(event, "dest_path", "") or event.src_path
        if not str(path).endswith(".json"):
            return
        self.session.scheduler.post(lambda: _schedule_scan(self.session))


def _schedule_scan(session: "MeshSession") -> None:
    watcher = session.state.watcher
    if watcher.debounce_timer is not None:
        watcher.debounce_timer.cancel()

    def fire() -> None:
        watcher.debounce_timer = None
        process_inbox(session)

    watcher.debounce_timer = session.scheduler.call_later(session.config.watch_debounce, fire)


def backoff_delay(attempt: int) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    return min(WATCHER_BACKOFF_BASE * 2 ** (attempt - 1), WATCHER_BACKOFF_CAP)


def _schedule_retry(session: "MeshSession") -> None:
    watcher = session.state.watcher
    watcher.retries += 1
    session.metrics.inc("agent_mesh_watcher_failures_total")
    if watcher.retries >= MAX_WATCHER_RETRIES:
        log.warning(
            f"Inbox watch abandoned after {watcher.retries} failures; "
            "messages will only be picked up by explicit inbox polls"
        )
        return

    delay = backoff_delay(watcher.retries)
    log.info(f"Retrying inbox watch in {delay:.0f}s (attempt {watcher.retries})")

    def retry() -> None:
        watcher.retry_timer = None
        start_watcher(session)

    watcher.retry_timer = session.scheduler.call_later(delay, retry)


def _close_observer(observer) -> None:
    try:
        observer.stop()
        if observer.is_alive():
            observer.join(timeout=2)
    except (OSError, RuntimeError) as e:
        log.debug(f"Error closing inbox observer: {e}")


def _on_watch_error(session: "MeshSession", observer) -> None:
    if session.state.watcher.observer is not observer:
        return
    log.warning("Inbox watch failed, restarting")
    stop_watcher(session)
    _schedule_retry(session)


def start_watcher(session: "MeshSession") -> bool:
    """Watch the agent's inbox. Returns True if a watch is running afterwards."""
    state = session.state
    watcher = state.watcher
    if not state.registered:
        return False
    if watcher.observer is not None:
        return True
    if watcher.retries >= MAX_WATCHER_RETRIES:
        return False

    inbox = session.dirs.inbox_for(state.agent_name)
    try:
        inbox.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        log.warning(f"Failed to create inbox {inbox}: {e}")
        _schedule_retry(session)
        return False

    process_inbox(session)

    observer = session.observer_factory()
    try:
        observer.schedule(InboxEventHandler(session, inbox, observer), str(inbox), recursive=False)
        observer.start()
    except OSError as e:
        log.warning(f"Failed to watch inbox {inbox}: {e}")
        _close_observer(observer)
        _schedule_retry(session)
        return False

    watcher.observer = observer
    watcher.retries = 0
    session.metrics.inc("agent_mesh_watcher_starts_total")
    log.debug(f"Watching inbox {inbox}")
    return True


def stop_watcher(session: "MeshSession") -> None:
    """Cancel debounce and retry timers and close the watch."""
    watcher = session.state.watcher
    if watcher.debounce_timer is not None:
        watcher.debounce_timer.cancel()
        watcher.debounce_timer = None
    if watcher.retry_timer is not None:
        watcher.retry_timer.cancel()
        watcher.retry_timer = None
    if watcher.observer is not None:
        observer, watcher.observer = watcher.observer, None
        _close_observer(observer)


def recover_watcher_if_needed(session: "MeshSession") -> bool:
    """Restart the watch after the process context changed (fork, resume).

    A watch whose observer thread has died is treated as a watch error. With
    no watch and no pending retry, a fresh watch is started with the retry
    budget reset. Returns True if a restart was attempted.
    """
    state = session.state
    watcher = state.watcher
    if not state.registered:
        return False
    if watcher.observer is not None:
        if watcher.observer.is_alive():
            return False
        _on_watch_error(session, watcher.observer)
        return True
    if watcher.retry_timer is not None and watcher.retry_timer.active:
        return False
    watcher.retries = 0
    start_watcher(session)
    return True
