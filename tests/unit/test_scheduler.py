from __future__ import annotations

import pytest

from iotcore_device_client.scheduler import TaskHandle, TimedTaskScheduler


class FakeClock:
    def __init__(self, t: float = 0.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return TimedTaskScheduler(clock)


def test_task_fires_every_interval(scheduler, clock):
    fired = []
    handle = scheduler.schedule_recurring(5, fired.append)

    assert scheduler.run_due() == 0
    clock.t = 5
    assert scheduler.run_due() == 1
    clock.t = 9
    assert scheduler.run_due() == 0
    clock.t = 10
    assert scheduler.run_due() == 1

    assert fired == [handle, handle]
    assert scheduler.is_live(handle)


def test_repetitions_limit_then_task_is_gone(scheduler, clock):
    fired = []
    handle = scheduler.schedule_recurring(1, fired.append, repetitions=2)

    for t in (1, 2, 3, 4):
        clock.t = t
        scheduler.run_due()

    assert len(fired) == 2
    assert not scheduler.is_live(handle)
    assert len(scheduler) == 0


def test_cancel_stops_future_firings(scheduler, clock):
    fired = []
    handle = scheduler.schedule_recurring(1, fired.append)

    assert scheduler.cancel(handle) is True
    clock.t = 10
    scheduler.run_due()

    assert fired == []


def test_cancel_twice_is_a_noop(scheduler):
    handle = scheduler.schedule_recurring(1, lambda h: None)

    assert scheduler.cancel(handle) is True
    assert scheduler.cancel(handle) is False
    assert scheduler.cancel(handle) is False


def test_cancel_unknown_or_none_handle_is_a_noop(scheduler):
    assert scheduler.cancel(None) is False
    assert scheduler.cancel(TaskHandle(999)) is False


def test_task_can_cancel_itself(scheduler, clock):
    fired = []

    def action(handle):
        fired.append(handle)
        scheduler.cancel(handle)

    scheduler.schedule_recurring(1, action)
    for t in (1, 2, 3):
        clock.t = t
        scheduler.run_due()

    assert len(fired) == 1


def test_failing_task_is_logged_and_keeps_running(scheduler, clock, caplog):
    calls = []

    def action(handle):
        calls.append(handle)
        raise RuntimeError("boom")

    scheduler.schedule_recurring(1, action)
    clock.t = 1
    scheduler.run_due()
    clock.t = 2
    scheduler.run_due()

    assert len(calls) == 2
    assert "Timed task" in caplog.text


def test_seconds_until_next(scheduler, clock):
    assert scheduler.seconds_until_next() is None
    a = scheduler.schedule_recurring(3, lambda h: None)
    scheduler.schedule_recurring(7, lambda h: None)

    clock.t = 1
    assert scheduler.seconds_until_next() == pytest.approx(2)
    scheduler.cancel(a)
    assert scheduler.seconds_until_next() == pytest.approx(6)


@pytest.mark.parametrize("interval", [0, -1])
def test_non_positive_interval_rejected(scheduler, interval):
    with pytest.raises(ValueError):
        scheduler.schedule_recurring(interval, lambda h: None)


def test_clear_drops_everything(scheduler, clock):
    fired = []
    scheduler.schedule_recurring(1, fired.append)
    scheduler.clear()
    clock.t = 5

    assert scheduler.run_due() == 0
    assert fired == []
