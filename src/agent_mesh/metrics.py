# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto

"""Per-agent coordination counters with Prometheus text export."""

import threading
import time


class MeshMetrics:
    """Thread-safe Prometheus-compatible counters for one agent session."""

    def __init__(self):
        self._lock = threading.Lock()
        self._start_time = time.time()

        self._counters = {
            "agent_mesh_messages_sent_total": 0,
            "agent_mesh_messages_delivered_total": 0,
            "agent_mesh_messages_malformed_total": 0,
            "agent_mesh_broadcasts_total": 0,
            "agent_mesh_inbox_scans_total": 0,
            "agent_mesh_watcher_starts_total": 0,
            "agent_mesh_watcher_failures_total": 0,
            "agent_mesh_cache_hits_total": 0,
            "agent_mesh_cache_misses_total": 0,
            "agent_mesh_stale_agents_purged_total": 0,
            "agent_mesh_registry_writes_ignored_total": 0,
            "agent_mesh_feed_writes_ignored_total": 0,
        }

        self._help = {
            "agent_mesh_messages_sent_total": "Messages written to peer inboxes",
            "agent_mesh_messages_delivered_total": "Messages delivered from own inbox",
            "agent_mesh_messages_malformed_total": "Unparseable message files discarded",
            "agent_mesh_broadcasts_total": "Broadcasts fanned out to peers",
            "agent_mesh_inbox_scans_total": "Inbox scans performed",
            "agent_mesh_watcher_starts_total": "Inbox watches established",
            "agent_mesh_watcher_failures_total": "Inbox watch setup or runtime failures",
            "agent_mesh_cache_hits_total": "Registry cache hits",
            "agent_mesh_cache_misses_total": "Registry cache misses",
            "agent_mesh_stale_agents_purged_total": "Dead-process registrations removed",
            "agent_mesh_registry_writes_ignored_total": "Registry writes that failed and were ignored",
            "agent_mesh_feed_writes_ignored_total": "Feed writes that failed and were ignored",
            "agent_mesh_start_time_seconds": "Unix timestamp when the session started",
        }

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            if name in self._counters:
                self._counters[name] += value

    def get(self, name: str) -> int:
        """Get current value of a counter."""
        with self._lock:
            return self._counters.get(name, 0)

    def to_prometheus(self) -> str:
        """Export all counters in Prometheus text format."""
        lines = []
        with self._lock:
            lines.append(
                f"# HELP agent_mesh_start_time_seconds {self._help['agent_mesh_start_time_seconds']}"
            )
            lines.append("# TYPE agent_mesh_start_time_seconds gauge")
            lines.append(f"agent_mesh_start_time_seconds {self._start_time}")

            for name, value in self._counters.items():
                if name in self._help:
                    lines.append(f"# HELP {name} {self._help[name]}")
                lines.append(f"# TYPE {name} counter")
                lines.append(f"{name} {value}")

        return "\n".join(lines) + "\n"

    def log_summary(self) -> str:
        """Return a human-readable summary for logging."""
        with self._lock:
            uptime = time.time() - self._start_time
            hours, remainder = divmod(int(uptime), 3600)
            minutes, seconds = divmod(remainder, 60)
            uptime_str = (
                f"{hours}h{minutes}m{seconds}s"
                if hours
                else f"{minutes}m{seconds}s"
                if minutes
                else f"{seconds}s"
            )
            c = self._counters
            return (
                f"uptime={uptime_str} "
                f"msgs={c['agent_mesh_messages_sent_total']}/{c['agent_mesh_messages_delivered_total']} "
                f"malformed={c['agent_mesh_messages_malformed_total']} "
                f"watch={c['agent_mesh_watcher_starts_total']}/{c['agent_mesh_watcher_failures_total']} "
                f"cache={c['agent_mesh_cache_hits_total']}/{c['agent_mesh_cache_misses_total']} "
                f"purged={c['agent_mesh_stale_agents_purged_total']}"
            )
