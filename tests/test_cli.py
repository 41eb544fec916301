"""Tests for the agent-mesh command line."""

import json
import os
from unittest import mock

import pytest

from agent_mesh import cli
from agent_mesh.config import MeshConfig, MeshDirs
from agent_mesh.feed import Feed
from agent_mesh.models import FeedEventType, utc_now_iso


@pytest.fixture
def mesh(tmp_path):
    dirs = MeshDirs(tmp_path / ".agent-mesh")
    dirs.ensure()
    return dirs


def _write_agent(dirs, name, **extra):
    now = utc_now_iso()
    data = {
        "name": name,
        "agentType": "agent",
        "pid": os.getpid(),
        "sessionId": "",
        "cwd": "/work/repo",
        "model": "test",
        "startedAt": now,
        "activity": {"lastActivityAt": now},
    }
    data.update(extra)
    dirs.registration_path(name).write_text(json.dumps(data))


def test_version(capsys):
    with pytest.raises(SystemExit) as exc:
        cli.main(["--version"])
    assert exc.value.code == 0
    assert "agent-mesh" in capsys.readouterr().out


def test_command_required():
    with pytest.raises(SystemExit):
        cli.main([])


def test_peers_empty(mesh, capsys):
    assert cli.main(["--dir", str(mesh.base), "peers"]) == 0
    assert "No active agents." in capsys.readouterr().out


def test_peers_lists_agents(mesh, capsys):
    _write_agent(
        mesh,
        "agent-1",
        statusMessage="on fire",
        reservations=[{"pattern": "src/", "since": utc_now_iso()}],
    )

    assert cli.main(["--dir", str(mesh.base), "peers"]) == 0

    out = capsys.readouterr().out
    assert "● agent-1" in out
    assert "src/" in out
    assert "on fire" in out


def test_feed(mesh, capsys):
    Feed(mesh.feed).log_event("agent-1", FeedEventType.COMMIT, preview="fix")
    assert cli.main(["--dir", str(mesh.base), "feed", "--limit", "5"]) == 0
    assert 'agent-1 committed "fix"' in capsys.readouterr().out


def test_feed_empty(mesh, capsys):
    assert cli.main(["--dir", str(mesh.base), "feed"]) == 0
    assert "No activity yet." in capsys.readouterr().out


def test_prune(mesh, capsys):
    feed = Feed(mesh.feed)
    for i in range(5):
        feed.log_event(f"agent-{i}", FeedEventType.JOIN)

    assert cli.main(["--dir", str(mesh.base), "prune", "--keep", "2"]) == 0
    assert "Prune: ok" in capsys.readouterr().out
    assert [e.agent for e in feed.read()] == ["agent-3", "agent-4"]


def test_send(mesh, capsys):
    _write_agent(mesh, "agent-1")
    assert cli.main(["--dir", str(mesh.base), "send", "--as", "ops", "--urgent", "agent-1", "deploy"]) == 0
    assert "Message sent to agent-1." in capsys.readouterr().out

    (path,) = mesh.inbox_for("agent-1").glob("*.json")
    data = json.loads(path.read_text())
    assert data["from"] == "ops"
    assert data["urgent"] is True
    assert data["text"] == "deploy"


def test_send_unknown_recipient(mesh, capsys):
    assert cli.main(["--dir", str(mesh.base), "send", "ghost", "hello"]) == 1
    assert 'agent "ghost" not_found' in capsys.readouterr().err


def test_join_runs_until_signalled(mesh, monkeypatch):
    monkeypatch.setenv("AGENT_MESH_NAME", "cli-agent")
    monkeypatch.setattr(cli, "load_config", lambda: MeshConfig(use_polling_observer=True))
    handlers = {}
    monkeypatch.setattr(cli.signal, "signal", lambda sig, handler: handlers.setdefault(sig, handler))

    def stop_soon(stop_event, max_wait=1.0):
        assert mesh.registration_path("cli-agent").exists()
        handlers[cli.signal.SIGTERM](cli.signal.SIGTERM, None)
        assert stop_event.is_set()

    with mock.patch("agent_mesh.scheduler.Scheduler.run_until", side_effect=stop_soon):
        assert cli.main(["--dir", str(mesh.base), "join", "--type", "worker"]) == 0

    assert not mesh.registration_path("cli-agent").exists()
    assert [e.type for e in Feed(mesh.feed).read()] == [FeedEventType.JOIN, FeedEventType.LEAVE]
