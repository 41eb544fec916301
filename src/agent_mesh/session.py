# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto

"""One agent's view of the mesh: state, stores and scheduler wired together."""

import time
from collections.abc import Callable

from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from agent_mesh.config import MeshConfig, MeshDirs
from agent_mesh.feed import Feed
from agent_mesh.liveness import LivenessCheck, is_process_alive
from agent_mesh.metrics import MeshMetrics
from agent_mesh.models import MeshMessage
from agent_mesh.registry import Registry, get_git_branch
from agent_mesh.scheduler import Scheduler
from agent_mesh.state import MeshState

DeliverFn = Callable[[MeshMessage], None]


class MeshSession:
    """Everything one running agent needs, passed by reference to every operation.

    ``clock`` is wall-clock epoch seconds. When it is supplied the scheduler
    runs on the same clock, which lets tests drive timers deterministically.
    """

    def __init__(
        self,
        dirs: MeshDirs,
        config: MeshConfig | None = None,
        *,
        agent_type: str = "agent",
        deliver: DeliverFn | None = None,
        pid: int | None = None,
        is_alive: LivenessCheck = is_process_alive,
        clock: Callable[[], float] | None = None,
        scheduler: Scheduler | None = None,
        observer_factory: Callable[[], object] | None = None,
        git_branch_lookup: Callable[[str], str | None] = get_git_branch,
    ):
        self.dirs = dirs
        self.config = config or MeshConfig()
        self.clock = clock or time.time
        self.scheduler = scheduler or Scheduler(clock or time.monotonic)
        self.metrics = MeshMetrics()
        self.state = MeshState(agent_type=agent_type)
        self.deliver: DeliverFn = deliver or (lambda msg: None)
        self.registry = Registry(
            dirs,
            pid=pid,
            is_alive=is_alive,
            clock=self.clock,
            cache_ttl=self.config.agents_cache_ttl,
            metrics=self.metrics,
            git_branch_lookup=git_branch_lookup,
        )
        self.feed = Feed(dirs.feed, metrics=self.metrics, clock=self.clock)
        if observer_factory is None:
            observer_factory = PollingObserver if self.config.use_polling_observer else Observer
        self.observer_factory = observer_factory
