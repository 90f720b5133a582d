from appsupervisor.config import Config
from appsupervisor.descriptor import AppDescriptor
from appsupervisor.policy import RestartPolicy, RestartTracker


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_policy(**overrides):
    values = dict(base_delay=1.0, max_delay=8.0, max_restarts=10, window=60.0, min_uptime=30.0)
    values.update(overrides)
    return RestartPolicy(**values)


def test_backoff_is_exponential_and_capped():
    policy = make_policy()
    delays = [policy.delay_for(n) for n in range(1, 7)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]
    assert delays == sorted(delays)


def test_three_crashes_within_window_exhaust_budget():
    clock = FakeClock()
    tracker = RestartTracker(make_policy(max_restarts=3, window=10.0), clock=clock)

    assert tracker.record_crash(uptime=0.1) == 1.0
    clock.now += 2
    assert tracker.record_crash(uptime=0.1) == 2.0
    clock.now += 3
    assert tracker.record_crash(uptime=0.1) is None


def test_crashes_outside_window_are_forgotten():
    clock = FakeClock()
    tracker = RestartTracker(make_policy(max_restarts=3, window=10.0), clock=clock)

    tracker.record_crash(uptime=0.1)
    tracker.record_crash(uptime=0.1)
    clock.now += 11

    assert tracker.record_crash(uptime=0.1) is not None
    assert tracker.crashes_in_window == 1


def test_delays_do_not_decrease_within_window():
    clock = FakeClock()
    tracker = RestartTracker(make_policy(), clock=clock)

    delays = []
    for _ in range(6):
        delays.append(tracker.record_crash(uptime=1.0))
        clock.now += 1

    assert delays == sorted(delays)


def test_stable_run_resets_backoff():
    clock = FakeClock()
    tracker = RestartTracker(make_policy(), clock=clock)

    tracker.record_crash(uptime=1.0)
    tracker.record_crash(uptime=1.0)
    assert tracker.record_crash(uptime=1.0) == 4.0

    assert tracker.record_crash(uptime=45.0) == 1.0


def test_reset_clears_budget():
    tracker = RestartTracker(make_policy(max_restarts=2), clock=FakeClock())
    tracker.record_crash()
    assert tracker.record_crash() is None

    tracker.reset()
    assert tracker.record_crash() == 1.0


def test_descriptor_overrides_settings(tmp_path):
    settings = Config(data_dir=tmp_path, restart_delay=1, max_restart_attempts=3, restart_window=60, min_uptime=30)
    descriptor = AppDescriptor(
        name="api", working_directory=tmp_path, entry_point="main.py", max_restarts=5, restart_delay=0.5
    )

    policy = RestartPolicy.for_app(descriptor, settings)

    assert policy.max_restarts == 5
    assert policy.base_delay == 0.5
    assert policy.window == 60
    assert policy.min_uptime == 30
