"""Shared fixtures: a fake clock, a fake process table and session factories."""

import pytest

from agent_mesh.config import MeshConfig, MeshDirs
from agent_mesh.session import MeshSession

START_EPOCH = 1_700_000_000.0


class FakeClock:
    """Manually advanced wall clock shared by a session and its scheduler."""

    def __init__(self, start: float = START_EPOCH):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeObserver:
    """Stands in for a watchdog observer without starting a thread."""

    def __init__(self, fail_schedule: bool = False):
        self.fail_schedule = fail_schedule
        self.scheduled = []
        self.started = False
        self.stopped = False
        self.alive = False

    def schedule(self, handler, path, recursive=False):
        if self.fail_schedule:
            raise OSError("inotify watch limit reached")
        self.scheduled.append((handler, path, recursive))

    def start(self):
        self.started = True
        self.alive = True

    def stop(self):
        self.stopped = True
        self.alive = False

    def is_alive(self):
        return self.alive

    def join(self, timeout=None):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def live_pids():
    """Pids treated as running. Sessions created by ``make_session`` are added."""
    return set()


@pytest.fixture
def mesh_dirs(tmp_path):
    return MeshDirs(tmp_path / ".agent-mesh")


@pytest.fixture
def observers():
    """Every FakeObserver handed out by ``make_session``, in creation order."""
    return []


@pytest.fixture
def make_session(mesh_dirs, clock, live_pids, observers, monkeypatch):
    monkeypatch.delenv("AGENT_MESH_NAME", raising=False)
    next_pid = iter(range(10_001, 20_000))

    def factory(agent_type="agent", pid=None, config=None, deliver=None, observer_factory=None):
        pid = pid if pid is not None else next(next_pid)
        live_pids.add(pid)

        def default_observer():
            observer = FakeObserver()
            observers.append(observer)
            return observer

        return MeshSession(
            mesh_dirs,
            config or MeshConfig(),
            agent_type=agent_type,
            deliver=deliver,
            pid=pid,
            is_alive=lambda p: p in live_pids,
            clock=clock,
            observer_factory=observer_factory or default_observer,
            git_branch_lookup=lambda cwd: "main",
        )

    return factory


@pytest.fixture
def registered(make_session):
    """Factory for sessions that are already registered."""

    def factory(agent_type="agent", **kwargs):
        session = make_session(agent_type, **kwargs)
        result = session.registry.register(session.state)
        assert result.ok, result
        return session

    return factory
