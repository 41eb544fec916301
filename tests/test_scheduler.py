"""Tests for the single-threaded timer and event scheduler."""

import threading

from agent_mesh.scheduler import Scheduler

from conftest import FakeClock


def test_timer_fires_only_when_due():
    clock = FakeClock(0.0)
    scheduler = Scheduler(clock)
    fired = []
    scheduler.call_later(5, lambda: fired.append("a"))

    assert scheduler.run_pending() == 0
    clock.advance(4.9)
    scheduler.run_pending()
    assert fired == []

    clock.advance(0.1)
    assert scheduler.run_pending() == 1
    assert fired == ["a"]

    # One-shot
    clock.advance(10)
    assert scheduler.run_pending() == 0


def test_timers_fire_in_deadline_order():
    clock = FakeClock(0.0)
    scheduler = Scheduler(clock)
    fired = []
    scheduler.call_later(3, lambda: fired.append(3))
    scheduler.call_later(1, lambda: fired.append(1))
    scheduler.call_later(2, lambda: fired.append(2))
    scheduler.call_later(1, lambda: fired.append("1b"))

    clock.advance(5)
    scheduler.run_pending()
    assert fired == [1, "1b", 2, 3]


def test_cancelled_timer_never_fires():
    clock = FakeClock(0.0)
    scheduler = Scheduler(clock)
    fired = []
    handle = scheduler.call_later(1, lambda: fired.append("x"))
    assert handle.active
    handle.cancel()
    handle.cancel()
    assert not handle.active

    clock.advance(2)
    scheduler.run_pending()
    assert fired == []
    assert scheduler.pending_timers() == 0
    assert scheduler.next_deadline() is None


def test_fired_timer_is_inactive():
    clock = FakeClock(0.0)
    scheduler = Scheduler(clock)
    handle = scheduler.call_later(0, lambda: None)
    scheduler.run_pending()
    assert handle.fired
    assert not handle.active


def test_posted_events_run_before_timers():
    clock = FakeClock(0.0)
    scheduler = Scheduler(clock)
    order = []
    scheduler.call_later(0, lambda: order.append("timer"))
    scheduler.post(lambda: order.append("event"))

    assert scheduler.run_pending() == 2
    assert order == ["event", "timer"]


def test_post_from_other_thread():
    scheduler = Scheduler(FakeClock(0.0))
    ran = []
    worker = threading.Thread(target=lambda: scheduler.post(lambda: ran.append(threading.get_ident())))
    worker.start()
    worker.join()

    scheduler.run_pending()
    assert ran == [threading.get_ident()]


def test_failing_callback_is_logged_and_loop_continues(caplog):
    clock = FakeClock(0.0)
    scheduler = Scheduler(clock)
    fired = []

    def boom():
        raise RuntimeError("boom")

    scheduler.call_later(0, boom)
    scheduler.call_later(0, lambda: fired.append("after"))

    scheduler.run_pending()
    assert fired == ["after"]
    assert "Scheduled callback failed" in caplog.text


def test_cancel_all():
    clock = FakeClock(0.0)
    scheduler = Scheduler(clock)
    handles = [scheduler.call_later(i, lambda: None) for i in range(3)]

    scheduler.cancel_all()
    assert all(not h.active for h in handles)
    assert scheduler.pending_timers() == 0


def test_next_deadline_skips_cancelled():
    clock = FakeClock(100.0)
    scheduler = Scheduler(clock)
    first = scheduler.call_later(1, lambda: None)
    scheduler.call_later(5, lambda: None)
    first.cancel()

    assert scheduler.next_deadline() == 105.0


def test_run_until_stops_on_event():
    scheduler = Scheduler()
    stop = threading.Event()
    ran = []

    def finish():
        ran.append(True)
        stop.set()

    scheduler.call_later(0.01, finish)
    scheduler.run_until(stop, max_wait=0.05)
    assert ran == [True]


def test_run_until_wakes_for_posted_event():
    scheduler = Scheduler()
    stop = threading.Event()
    timer = threading.Timer(0.05, lambda: scheduler.post(stop.set))
    timer.start()
    try:
        scheduler.run_until(stop, max_wait=5.0)
    finally:
        timer.cancel()
    assert stop.is_set()
