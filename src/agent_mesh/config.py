# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto

"""Mesh configuration and on-disk layout.

Priority (highest to lowest):
1. Environment variables (AGENT_MESH_*)
2. Project: <marker>/config.json, found by walking up from the working directory
3. User: ~/.config/agent-mesh/config.json
4. Defaults
"""

import json
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

MARKER_DIR = ".agent-mesh"
CONFIG_DIR = Path.home() / ".config" / "agent-mesh"
CONFIG_FILE_NAME = "config.json"

CONTEXT_MODES = ("full", "minimal", "none")

# Upper bound on in-memory rings kept per agent
MAX_CHAT_HISTORY = 50
MAX_WATCHER_RETRIES = 5
WATCHER_BACKOFF_BASE = 1.0
WATCHER_BACKOFF_CAP = 30.0


@dataclass
class MeshConfig:
    auto_register: bool = False
    auto_register_paths: list[str] = field(default_factory=list)
    context_mode: str = "full"
    feed_retention: int = 50
    stuck_threshold: float = 900.0
    auto_status: bool = True
    agents_cache_ttl: float = 1.0
    registry_flush_interval: float = 10.0
    watch_debounce: float = 0.05
    edit_debounce: float = 5.0
    recent_window: float = 60.0
    use_polling_observer: bool = False


@dataclass(frozen=True)
class MeshDirs:
    base: Path

    @property
    def registry(self) -> Path:
        return self.base / "registry"

    @property
    def inbox(self) -> Path:
        return self.base / "inbox"

    @property
    def feed(self) -> Path:
        return self.base / "feed.jsonl"

    def inbox_for(self, name: str) -> Path:
        return self.inbox / name

    def registration_path(self, name: str) -> Path:
        return self.registry / f"{name}.json"

    def ensure(self) -> None:
        self.registry.mkdir(parents=True, exist_ok=True)
        self.inbox.mkdir(parents=True, exist_ok=True)


# =============================================================================
# Directory Resolution
# =============================================================================


def find_marker_dir(start: Path) -> Path | None:
    """Walk up from ``start`` looking for a .agent-mesh directory."""
    current = start.resolve()
    while True:
        candidate = current / MARKER_DIR
        if candidate.is_dir():
            return candidate
        if current.parent == current:
            return None
        current = current.parent


def resolve_dirs(cwd: Path | str | None = None) -> MeshDirs:
    """Find the mesh root. AGENT_MESH_DIR overrides the walk-up lookup."""
    env_dir = os.environ.get("AGENT_MESH_DIR")
    if env_dir:
        return MeshDirs(Path(env_dir).expanduser())
    start = Path(cwd) if cwd is not None else Path.cwd()
    marker = find_marker_dir(start)
    return MeshDirs(marker if marker is not None else start / MARKER_DIR)


# =============================================================================
# Loading
# =============================================================================


def _read_json_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError) as e:
        log.warning(f"Ignoring unreadable config {path}: {e}")
        return {}
    if not isinstance(data, dict):
        log.warning(f"Ignoring config {path}: expected a JSON object")
        return {}
    return data


def _coerce(value: Any, type_: Callable[[Any], Any]) -> Any:
    if type_ is bool and isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if type_ is list and isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return type_(value)


def _get_config_value(
    env_var: str,
    config_path: list[str],
    default: Any,
    config: dict[str, Any],
    type_: Callable[[Any], Any] = str,
) -> Any:
    """Resolve one setting: env var, then nested config key, then default."""
    env_value = os.environ.get(env_var)
    if env_value is not None and env_value != "":
        try:
            return _coerce(env_value, type_)
        except (TypeError, ValueError):
            log.warning(f"Invalid value for {env_var}: {env_value!r}, using default")
            return default

    node: Any = config
    for key in config_path:
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]
    try:
        return _coerce(node, type_)
    except (TypeError, ValueError):
        log.warning(f"Invalid config value for {'.'.join(config_path)}: {node!r}, using default")
        return default


def load_config(cwd: Path | str | None = None, config_dir: Path | None = None) -> MeshConfig:
    """Load mesh configuration with layered priority."""
    start = Path(cwd) if cwd is not None else Path.cwd()
    merged: dict[str, Any] = {}
    merged.update(_read_json_file((config_dir or CONFIG_DIR) / CONFIG_FILE_NAME))
    marker = find_marker_dir(start)
    if marker is not None:
        merged.update(_read_json_file(marker / CONFIG_FILE_NAME))

    defaults = MeshConfig()
    context_mode = _get_config_value(
        "AGENT_MESH_CONTEXT_MODE", ["contextMode"], defaults.context_mode, merged
    )
    if context_mode not in CONTEXT_MODES:
        context_mode = defaults.context_mode

    paths = _get_config_value(
        "AGENT_MESH_AUTO_REGISTER_PATHS", ["autoRegisterPaths"], [], merged, list
    )

    return MeshConfig(
        auto_register=_get_config_value(
            "AGENT_MESH_AUTO_REGISTER", ["autoRegister"], defaults.auto_register, merged, bool
        ),
        auto_register_paths=[str(p) for p in paths],
        context_mode=context_mode,
        feed_retention=_get_config_value(
            "AGENT_MESH_FEED_RETENTION", ["feedRetention"], defaults.feed_retention, merged, int
        ),
        stuck_threshold=_get_config_value(
            "AGENT_MESH_STUCK_THRESHOLD",
            ["stuckThreshold"],
            defaults.stuck_threshold,
            merged,
            float,
        ),
        auto_status=_get_config_value(
            "AGENT_MESH_AUTO_STATUS", ["autoStatus"], defaults.auto_status, merged, bool
        ),
        use_polling_observer=_get_config_value(
            "AGENT_MESH_POLLING", ["usePollingObserver"], defaults.use_polling_observer, merged, bool
        ),
    )


def matches_auto_register_path(cwd: str, patterns: list[str]) -> bool:
    """Check if ``cwd`` matches any auto-register path pattern.

    ``/base/*`` matches base and everything below it, ``/prefix*`` is a plain
    string prefix, anything else must match exactly. ``~/`` is expanded and
    trailing slashes are ignored.
    """
    normalized = cwd.rstrip("/")
    for pattern in patterns:
        expanded = os.path.expanduser(pattern).rstrip("/")
        if expanded.endswith("/*"):
            base = expanded[:-2]
            if normalized == base or normalized.startswith(base + "/"):
                return True
        elif expanded.endswith("*"):
            if normalized.startswith(expanded[:-1]):
                return True
        elif normalized == expanded:
            return True
    return False
