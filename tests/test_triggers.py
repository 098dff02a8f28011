import threading

from bookhub.triggers import Debouncer, FocusTrigger, PeriodicTimer

from fakes import TimerRecorder


def test_debouncer_restarts_delay_on_each_trigger():
    timers = TimerRecorder()
    calls = []
    d = Debouncer(5, lambda: calls.append(1), timer_factory=timers)

    d.trigger()
    d.trigger()
    d.trigger()

    assert len(timers.timers) == 3
    assert [t.cancelled for t in timers.timers] == [True, True, False]
    assert timers.last.delay_s == 5
    assert d.pending

    timers.last.fn()
    assert calls == [1]
    assert not d.pending


def test_debouncer_cancel():
    timers = TimerRecorder()
    d = Debouncer(1, lambda: None, timer_factory=timers)
    d.trigger()
    d.cancel()
    assert timers.last.cancelled
    assert not d.pending


def test_debouncer_ignores_a_timer_replaced_while_firing():
    timers = TimerRecorder()
    calls = []
    d = Debouncer(5, lambda: calls.append(1), timer_factory=timers)

    d.trigger()
    stale = timers.last
    d.trigger()
    stale.fn()

    assert calls == []
    assert d.pending

    d.cancel()
    assert timers.last.cancelled
    timers.last.fn()
    assert calls == []
    assert not d.pending


def test_focus_trigger_cooldown():
    now = [100.0]
    calls = []
    f = FocusTrigger(60, lambda: calls.append(now[0]), clock=lambda: now[0])

    assert f.fire()
    now[0] = 130.0
    assert not f.fire()
    now[0] = 161.0
    assert f.fire()
    assert calls == [100.0, 161.0]


def test_periodic_timer_runs_until_stopped():
    fired = threading.Event()
    t = PeriodicTimer(1, fired.set)
    t.interval_s = 0.01
    t.start()
    try:
        assert fired.wait(2)
        assert t.running
    finally:
        t.stop()
    assert not t.running


def test_periodic_timer_survives_callback_errors():
    count = []
    done = threading.Event()

    def cb():
        count.append(1)
        if len(count) >= 2:
            done.set()
        raise RuntimeError("boom")

    t = PeriodicTimer(1, cb)
    t.interval_s = 0.01
    t.start()
    try:
        assert done.wait(2)
    finally:
        t.stop()
