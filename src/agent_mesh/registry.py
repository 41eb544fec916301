# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto

"""Agent registry: one JSON record per agent under <mesh-root>/registry/.

Records are written without locks. Correctness across processes rests on
three rules:
- a record whose pid is dead is stale and removed the next time it is seen
- a writer re-reads its own record after writing and only trusts it if the
  pid still matches (last writer wins, but the loser finds out)
- malformed records are skipped, never deleted, since they may be a write
  in progress from another process
"""

import json
import logging
import os
import re
import subprocess
import time
from collections.abc import Callable
from pathlib import Path

from agent_mesh.config import MeshDirs
from agent_mesh.liveness import LivenessCheck, is_process_alive
from agent_mesh.metrics import MeshMetrics
from agent_mesh.models import (
    AgentRegistration,
    AgentStatus,
    ComputedStatus,
    Outcome,
    RegisterError,
    RegisterResult,
    RenameError,
    RenameResult,
    ReservationConflict,
    epoch_from_iso,
    iso_from_epoch,
)
from agent_mesh.state import MeshState

log = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_-]*$")
MAX_NAME_LENGTH = 50
MAX_SEQUENTIAL_NAMES = 99

ACTIVE_SECONDS = 30
IDLE_SECONDS = 5 * 60


def is_valid_agent_name(name: str) -> bool:
    if not name or len(name) > MAX_NAME_LENGTH:
        return False
    return NAME_PATTERN.match(name) is not None


def current_cwd() -> str:
    """Working directory, or an empty string when it has been removed."""
    try:
        return os.getcwd()
    except OSError:
        return ""


def get_git_branch(cwd: str) -> str | None:
    """Current branch name, ``@<short sha>`` when detached, None outside git."""
    try:
        branch = subprocess.run(
            ["git", "branch", "--show-current"],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=2,
        ).stdout.strip()
        if branch:
            return branch
        sha = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=2,
        ).stdout.strip()
        return f"@{sha}" if sha else None
    except (OSError, subprocess.SubprocessError):
        return None


class Registry:
    def __init__(
        self,
        dirs: MeshDirs,
        *,
        pid: int | None = None,
        is_alive: LivenessCheck = is_process_alive,
        clock: Callable[[], float] = time.time,
        cache_ttl: float = 1.0,
        metrics: MeshMetrics | None = None,
        git_branch_lookup: Callable[[str], str | None] = get_git_branch,
    ):
        self.dirs = dirs
        self.pid = pid if pid is not None else os.getpid()
        self.is_alive = is_alive
        self.cache_ttl = cache_ttl
        self.metrics = metrics or MeshMetrics()
        self._clock = clock
        self._git_branch_lookup = git_branch_lookup
        # Shared by every caller of this store, filtered per caller on read
        self._cache: list[AgentRegistration] | None = None
        self._cache_time = 0.0

    def invalidate_cache(self) -> None:
        self._cache = None

    # =========================================================================
    # Record I/O
    # =========================================================================

    def _load(self, path: Path) -> AgentRegistration:
        """Read one record. Raises OSError/ValueError/KeyError/TypeError when unusable."""
        data = json.loads(path.read_text())
        if not isinstance(data, dict):
            raise TypeError(f"{path.name} is not a JSON object")
        return AgentRegistration.from_dict(data)

    def read_registration(self, name: str) -> AgentRegistration | None:
        """Read ``name``'s record, or None if absent or malformed."""
        try:
            return self._load(self.dirs.registration_path(name))
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def _write(self, path: Path, registration: AgentRegistration) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{self.pid}.tmp")
        tmp.write_text(json.dumps(registration.to_dict(), indent=2))
        os.replace(tmp, path)

    def _held_by_live_peer(self, name: str) -> bool:
        """True if ``name``'s record belongs to a different, live process."""
        existing = self.read_registration(name)
        if existing is None:
            return False
        return existing.pid != self.pid and self.is_alive(existing.pid)

    def _verify_own(self, path: Path) -> bool | None:
        """True if the record at ``path`` is ours, False if another pid's, None if unreadable."""
        try:
            written = self._load(path)
        except (OSError, ValueError, KeyError, TypeError):
            return None
        return written.pid == self.pid

    # =========================================================================
    # Naming
    # =========================================================================

    def generate_name(self, agent_type: str) -> str:
        """Pick ``{agent_type}-{n}`` with the lowest free n, or AGENT_MESH_NAME if set."""
        explicit = os.environ.get("AGENT_MESH_NAME")
        if explicit:
            return explicit

        try:
            existing = {p.stem for p in self.dirs.registry.glob("*.json")}
        except OSError:
            return f"{agent_type}-1"

        for i in range(1, MAX_SEQUENTIAL_NAMES + 1):
            name = f"{agent_type}-{i}"
            if name not in existing:
                return name
            record = self.read_registration(name)
            if record is None or not self.is_alive(record.pid):
                return name

        return f"{agent_type}-{self.pid}"

    # =========================================================================
    # Registration
    # =========================================================================

    def build_registration(self, state: MeshState, name: str | None = None) -> AgentRegistration:
        """Snapshot ``state`` as the record this process would write."""
        return AgentRegistration(
            name=name or state.agent_name,
            agent_type=state.agent_type,
            pid=self.pid,
            session_id=state.session_id,
            cwd=current_cwd(),
            model=state.model,
            started_at=state.session_started_at,
            is_human=state.is_human,
            git_branch=state.git_branch,
            session=state.session.copy(),
            activity=state.activity.copy(),
            status_message=state.status_message,
            reservations=list(state.reservations),
        )

    def register(self, state: MeshState) -> RegisterResult:
        """Claim a name, write the record, verify it stuck, create the inbox."""
        if state.registered:
            return RegisterResult(ok=True, name=state.agent_name)

        try:
            self.dirs.ensure()
        except OSError as e:
            log.warning(f"Failed to create mesh directories under {self.dirs.base}: {e}")
            return RegisterResult(ok=False, name="", error=RegisterError.WRITE_FAILED)

        cwd = current_cwd()
        if not cwd:
            log.warning("Working directory no longer exists; cannot register")
            return RegisterResult(ok=False, name="", error=RegisterError.WRITE_FAILED)

        name = self.generate_name(state.agent_type)
        if not is_valid_agent_name(name):
            log.warning(f"Refusing to register with invalid agent name {name!r}")
            return RegisterResult(ok=False, name=name, error=RegisterError.INVALID_NAME)

        if self._held_by_live_peer(name):
            log.warning(f"Agent name {name} is held by a live process")
            return RegisterResult(ok=False, name=name, error=RegisterError.NAME_TAKEN)

        now = iso_from_epoch(self._clock())
        state.git_branch = self._git_branch_lookup(cwd)
        state.session_started_at = now
        state.activity.last_activity_at = now

        path = self.dirs.registration_path(name)
        try:
            self.dirs.inbox_for(name).mkdir(parents=True, exist_ok=True)
            self._write(path, self.build_registration(state, name))
        except OSError as e:
            log.warning(f"Failed to write registration for {name}: {e}")
            return RegisterResult(ok=False, name=name, error=RegisterError.WRITE_FAILED)

        if self._verify_own(path) is not True:
            log.warning(f"Lost registration race for {name}")
            return RegisterResult(ok=False, name=name, error=RegisterError.RACE_LOST)

        state.agent_name = name
        state.registered = True
        self.invalidate_cache()
        log.info(f"Registered as {name} (pid {self.pid})")
        return RegisterResult(ok=True, name=name)

    def unregister(self, state: MeshState) -> Outcome:
        if not state.registered:
            return Outcome.SKIPPED
        state.registered = False
        self.invalidate_cache()
        try:
            self.dirs.registration_path(state.agent_name).unlink()
        except FileNotFoundError:
            return Outcome.SKIPPED
        except OSError as e:
            log.warning(f"Failed to remove registration for {state.agent_name}: {e}")
            self.metrics.inc("agent_mesh_registry_writes_ignored_total")
            return Outcome.IGNORED
        log.info(f"Unregistered {state.agent_name}")
        return Outcome.OK

    # =========================================================================
    # Query
    # =========================================================================

    def _scan(self) -> list[AgentRegistration]:
        agents: list[AgentRegistration] = []
        try:
            paths = sorted(self.dirs.registry.glob("*.json"))
        except OSError as e:
            log.warning(f"Failed to list registry: {e}")
            return agents

        for path in paths:
            try:
                registration = self._load(path)
            except (OSError, ValueError, KeyError, TypeError) as e:
                log.debug(f"Skipping unreadable registration {path.name}: {e}")
                continue

            if not self.is_alive(registration.pid):
                try:
                    path.unlink()
                    self.metrics.inc("agent_mesh_stale_agents_purged_total")
                    log.info(f"Removed stale registration {path.stem} (pid {registration.pid})")
                except FileNotFoundError:
                    pass
                except OSError as e:
                    log.warning(f"Failed to remove stale registration {path.name}: {e}")
                continue

            agents.append(registration)
        return agents

    def get_active_agents(self, state: MeshState) -> list[AgentRegistration]:
        """All live agents except the caller. Cached for ``cache_ttl`` seconds."""
        now = self._clock()
        if self._cache is not None and 0 <= now - self._cache_time < self.cache_ttl:
            self.metrics.inc("agent_mesh_cache_hits_total")
        else:
            self.metrics.inc("agent_mesh_cache_misses_total")
            self._cache = self._scan()
            self._cache_time = now
        return [a for a in self._cache if a.name != state.agent_name]

    def get_all_agents(self, state: MeshState) -> list[AgentRegistration]:
        """Self (from in-memory state) first, then every live peer."""
        peers = self.get_active_agents(state)
        return [self.build_registration(state), *peers]

    # =========================================================================
    # Update
    # =========================================================================

    def _read_modify_write(self, state: MeshState, include_reservations: bool) -> Outcome:
        if not state.registered:
            return Outcome.SKIPPED
        path = self.dirs.registration_path(state.agent_name)
        try:
            registration = self._load(path)
        except FileNotFoundError:
            return Outcome.SKIPPED
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning(f"Failed to read own registration: {e}")
            self.metrics.inc("agent_mesh_registry_writes_ignored_total")
            return Outcome.IGNORED
        if registration.pid != self.pid:
            log.warning(f"Registration {state.agent_name} now belongs to pid {registration.pid}; not updating")
            self.metrics.inc("agent_mesh_registry_writes_ignored_total")
            return Outcome.IGNORED

        registration.model = state.model or registration.model
        registration.session = state.session.copy()
        registration.activity = state.activity.copy()
        registration.status_message = state.status_message
        if include_reservations:
            registration.reservations = list(state.reservations)
        try:
            self._write(path, registration)
        except OSError as e:
            log.warning(f"Failed to update own registration: {e}")
            self.metrics.inc("agent_mesh_registry_writes_ignored_total")
            return Outcome.IGNORED
        return Outcome.OK

    def update_registration(self, state: MeshState) -> Outcome:
        """Persist reservations, session counters, activity and status."""
        return self._read_modify_write(state, include_reservations=True)

    def flush_activity(self, state: MeshState) -> Outcome:
        """Persist session counters, activity and status; leave reservations as stored."""
        return self._read_modify_write(state, include_reservations=False)

    # =========================================================================
    # Rename
    # =========================================================================

    def rename(self, state: MeshState, new_name: str) -> RenameResult:
        """Move this agent's identity to ``new_name``.

        The new record is written and verified before the old one is removed,
        so a failure at any step leaves the old identity in place.
        """
        if not state.registered:
            return RenameResult(ok=False, error=RenameError.NOT_REGISTERED)
        if not is_valid_agent_name(new_name):
            return RenameResult(ok=False, error=RenameError.INVALID_NAME)
        old_name = state.agent_name
        if new_name == old_name:
            return RenameResult(ok=False, error=RenameError.SAME_NAME)
        if self._held_by_live_peer(new_name):
            return RenameResult(ok=False, error=RenameError.NAME_TAKEN)

        now = iso_from_epoch(self._clock())
        registration = self.build_registration(state, new_name)
        registration.activity.last_activity_at = now
        new_path = self.dirs.registration_path(new_name)
        try:
            self._write(new_path, registration)
        except OSError as e:
            log.warning(f"Failed to write registration for {new_name}: {e}")
            return RenameResult(ok=False, error=RenameError.WRITE_FAILED)

        verified = self._verify_own(new_path)
        if verified is None:
            return RenameResult(ok=False, error=RenameError.WRITE_FAILED)
        if not verified:
            return RenameResult(ok=False, error=RenameError.RACE_LOST)

        try:
            self.dirs.registration_path(old_name).unlink()
        except OSError as e:
            log.debug(f"Old registration {old_name} already gone: {e}")

        self._move_inbox(old_name, new_name)

        state.agent_name = new_name
        state.activity.last_activity_at = now
        self.invalidate_cache()
        log.info(f"Renamed {old_name} -> {new_name}")
        return RenameResult(ok=True, old_name=old_name, new_name=new_name)

    def _move_inbox(self, old_name: str, new_name: str) -> None:
        old_inbox = self.dirs.inbox_for(old_name)
        new_inbox = self.dirs.inbox_for(new_name)
        try:
            new_inbox.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.warning(f"Failed to create inbox for {new_name}: {e}")
            return
        if not old_inbox.is_dir():
            return
        for pending in sorted(old_inbox.glob("*.json")):
            try:
                os.replace(pending, new_inbox / pending.name)
            except OSError as e:
                log.warning(f"Failed to move pending message {pending.name}: {e}")
        try:
            old_inbox.rmdir()
        except OSError as e:
            log.debug(f"Left old inbox {old_inbox} in place: {e}")

    # =========================================================================
    # Reservation Conflicts
    # =========================================================================

    def get_conflicts(self, state: MeshState, file_path: str) -> list[ReservationConflict]:
        """Every peer reservation that covers ``file_path``."""
        conflicts = []
        for agent in self.get_active_agents(state):
            for reservation in agent.reservations:
                if path_matches_reservation(file_path, reservation.pattern):
                    conflicts.append(
                        ReservationConflict(
                            path=file_path,
                            agent=agent.name,
                            pattern=reservation.pattern,
                            reason=reservation.reason,
                            registration=agent,
                        )
                    )
        return conflicts


# =============================================================================
# Matching and Status
# =============================================================================


def path_matches_reservation(file_path: str, pattern: str) -> bool:
    """True if ``pattern`` covers ``file_path``.

    A trailing ``/`` makes the pattern a directory scope: it covers the
    directory itself and anything below it. Anything else matches one exact
    path. Paths are compared as given, without normalization.
    """
    if not file_path or not pattern:
        return False
    if pattern.endswith("/"):
        return file_path.startswith(pattern) or file_path + "/" == pattern
    return file_path == pattern


def format_duration(seconds: float) -> str:
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def compute_status(
    last_activity_at: str,
    has_reservation: bool,
    stuck_threshold: float,
    now: float | None = None,
) -> ComputedStatus:
    """Classify an agent by time since its last activity.

    An agent with no reservation is never stuck, only away. Unparseable
    timestamps and clock skew read as active.
    """
    last = epoch_from_iso(last_activity_at)
    if last is None:
        return ComputedStatus(AgentStatus.ACTIVE)
    elapsed = (now if now is not None else time.time()) - last
    if elapsed != elapsed or elapsed < 0:
        return ComputedStatus(AgentStatus.ACTIVE)

    if elapsed < ACTIVE_SECONDS:
        return ComputedStatus(AgentStatus.ACTIVE)
    idle_for = format_duration(elapsed)
    if elapsed < IDLE_SECONDS:
        return ComputedStatus(AgentStatus.IDLE, idle_for)
    if not has_reservation:
        return ComputedStatus(AgentStatus.AWAY, idle_for)
    if elapsed >= stuck_threshold:
        return ComputedStatus(AgentStatus.STUCK, idle_for)
    return ComputedStatus(AgentStatus.IDLE, idle_for)


def extract_folder(cwd: str) -> str:
    return Path(cwd).name or cwd
