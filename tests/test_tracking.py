"""Tests for activity tracking and auto-generated status."""

import pytest

from agent_mesh import tracking
from agent_mesh.config import MeshConfig
from agent_mesh.models import FeedEventType, iso_from_epoch


@pytest.fixture
def session(registered, clock):
    session = registered()
    # Past the "just arrived" window
    clock.advance(tracking.JUST_ARRIVED_SECONDS + 1)
    return session


def _feed_types(session):
    return [e.type for e in session.feed.read(100)]


class TestDetectors:
    @pytest.mark.parametrize(
        "command",
        ['git commit -m "fix"', "cd repo && git  commit --amend", "git commit"],
    )
    def test_git_commit(self, command):
        assert tracking.is_git_commit(command)

    @pytest.mark.parametrize("command", ["git status", "git committed", "echo commit"])
    def test_not_git_commit(self, command):
        assert not tracking.is_git_commit(command)

    @pytest.mark.parametrize(
        "command",
        ["npm test", "npx jest src", "npx vitest run", "pytest -q", "go test ./...", "cargo test", "bun test"],
    )
    def test_test_run(self, command):
        assert tracking.is_test_run(command)

    @pytest.mark.parametrize("command", ["npm install", "ls tests/", "pytestify"])
    def test_not_test_run(self, command):
        assert not tracking.is_test_run(command)

    def test_extract_commit_message(self):
        assert tracking.extract_commit_message('git commit -m "add login"') == "add login"
        assert tracking.extract_commit_message("git commit -am 'wip'") == ""
        assert tracking.extract_commit_message("git commit -m 'wip'") == "wip"
        assert tracking.extract_commit_message("git commit") == ""

    def test_shorten_path(self):
        assert tracking.shorten_path("/home/u/repo/src/app.py") == "src/app.py"
        assert tracking.shorten_path("src/app.py") == "src/app.py"
        assert tracking.shorten_path("app.py") == "app.py"


class TestToolHooks:
    def test_unregistered_is_ignored(self, make_session):
        session = make_session()
        tracking.on_tool_call(session, "edit", {"path": "a.py"})
        assert session.state.session.tool_calls == 0

    def test_tool_call_updates_activity(self, session, clock):
        tracking.on_tool_call(session, "read", {"path": "/repo/src/app.py"})
        assert session.state.session.tool_calls == 1
        assert session.state.activity.current_activity == "reading src/app.py"
        assert session.state.activity.last_activity_at == iso_from_epoch(clock())

    def test_bash_activities(self, session):
        tracking.on_tool_call(session, "bash", {"command": "git commit -m x"})
        assert session.state.activity.current_activity == "committing"
        tracking.on_tool_call(session, "bash", {"command": "pytest"})
        assert session.state.activity.current_activity == "running tests"

    def test_non_string_arguments_are_ignored(self, session):
        tracking.on_tool_call(session, "edit", {"path": 42})
        tracking.on_tool_call(session, "bash", {"command": None})
        assert session.state.activity.current_activity is None
        assert session.state.tracking.pending_edits == {}

    def test_edit_result_records_file(self, session):
        tracking.on_tool_call(session, "write", {"path": "/repo/src/new.py"})
        tracking.on_tool_result(session, "write", {"path": "/repo/src/new.py"}, is_error=False)

        assert session.state.session.files_modified == ["/repo/src/new.py"]
        assert session.state.activity.last_tool_call == "write: src/new.py"
        assert session.state.activity.current_activity is None

    def test_commit_result_logs_feed_event(self, session):
        tracking.on_tool_result(session, "bash", {"command": 'git commit -m "ship it"'}, is_error=False)
        (event,) = session.feed.read()
        assert event.type is FeedEventType.COMMIT
        assert event.preview == "ship it"
        assert session.state.activity.last_tool_call == "commit: ship it"
        assert session.state.tracking.recent_commit

    def test_test_result_logs_outcome(self, session):
        tracking.on_tool_result(session, "bash", {"command": "npm test"}, is_error=True)
        tracking.on_tool_result(session, "bash", {"command": "npm test"}, is_error=False)
        assert [e.preview for e in session.feed.read()] == ["failed", "passed"]
        assert session.state.tracking.recent_test_runs == 2


class TestEditDebounce:
    def test_burst_of_edits_logs_once(self, session, clock):
        for _ in range(4):
            tracking.on_tool_call(session, "edit", {"path": "src/a.py"})
            clock.advance(1)
            session.scheduler.run_pending()
        assert FeedEventType.EDIT not in _feed_types(session)

        clock.advance(session.config.edit_debounce)
        session.scheduler.run_pending()
        edits = [e for e in session.feed.read() if e.type is FeedEventType.EDIT]
        assert [e.target for e in edits] == ["src/a.py"]
        assert session.state.tracking.pending_edits == {}

    def test_paths_are_debounced_independently(self, session, clock):
        tracking.on_tool_call(session, "edit", {"path": "a.py"})
        tracking.on_tool_call(session, "edit", {"path": "b.py"})
        clock.advance(session.config.edit_debounce)
        session.scheduler.run_pending()
        edits = sorted(e.target for e in session.feed.read() if e.type is FeedEventType.EDIT)
        assert edits == ["a.py", "b.py"]


class TestRollingWindows:
    def test_recent_edits_reset_after_quiet_window(self, session, clock):
        for _ in range(3):
            tracking.on_tool_call(session, "edit", {"path": "a.py"})
        assert session.state.tracking.recent_edits == 3

        clock.advance(session.config.recent_window - 1)
        session.scheduler.run_pending()
        tracking.on_tool_call(session, "edit", {"path": "a.py"})
        assert session.state.tracking.recent_edits == 4

        clock.advance(session.config.recent_window - 1)
        session.scheduler.run_pending()
        assert session.state.tracking.recent_edits == 4

        clock.advance(1)
        session.scheduler.run_pending()
        assert session.state.tracking.recent_edits == 0

    def test_recent_commit_expires(self, session, clock):
        tracking.on_tool_result(session, "bash", {"command": "git commit -m x"}, is_error=False)
        clock.advance(session.config.recent_window)
        session.scheduler.run_pending()
        assert not session.state.tracking.recent_commit

    def test_cleanup_cancels_everything(self, session, clock):
        tracking.on_tool_call(session, "edit", {"path": "a.py"})
        tracking.on_tool_result(session, "bash", {"command": "git commit -m x"}, is_error=False)
        tracking.on_tool_result(session, "bash", {"command": "pytest"}, is_error=False)

        tracking.cleanup(session)
        assert session.scheduler.pending_timers() == 0
        clock.advance(3600)
        session.scheduler.run_pending()
        assert FeedEventType.EDIT not in _feed_types(session)


class TestAutoStatus:
    def test_just_arrived(self, registered):
        session = registered()
        tracking.update_auto_status(session)
        assert session.state.status_message == "just arrived"

    def test_priority_order(self, session):
        state = session.state
        assert tracking.generate_auto_status(session) is None

        state.activity.current_activity = "editing a.py"
        assert tracking.generate_auto_status(session) == "deep in thought"
        state.activity.current_activity = "reading a.py"
        assert tracking.generate_auto_status(session) == "exploring the codebase"

        state.tracking.recent_edits = tracking.ON_FIRE_EDITS
        assert tracking.generate_auto_status(session) == "on fire"
        state.tracking.recent_test_runs = tracking.DEBUGGING_TEST_RUNS
        assert tracking.generate_auto_status(session) == "debugging..."
        state.tracking.recent_commit = True
        assert tracking.generate_auto_status(session) == "just shipped"

    def test_hooks_refresh_status(self, session):
        tracking.on_tool_call(session, "read", {"path": "a.py"})
        assert session.state.status_message == "exploring the codebase"

    def test_custom_status_is_kept(self, session):
        session.state.status_message = "reviewing PR 12"
        session.state.custom_status = True
        tracking.on_tool_call(session, "read", {"path": "a.py"})
        assert session.state.status_message == "reviewing PR 12"

    def test_disabled_by_config(self, registered, clock):
        session = registered(config=MeshConfig(auto_status=False))
        clock.advance(tracking.JUST_ARRIVED_SECONDS + 1)
        tracking.on_tool_call(session, "read", {"path": "a.py"})
        assert session.state.status_message is None

    def test_unparseable_start_time(self, session):
        session.state.session_started_at = "garbage"
        assert tracking.generate_auto_status(session) is None
