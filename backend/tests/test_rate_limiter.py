from orchestrator.services.rate_limiter import LoginThrottle


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_key_normalizes_username():
    assert LoginThrottle.key("login:min", "10.0.0.1", " Alice ") == "login:min:10.0.0.1:alice"
    assert LoginThrottle.key("refresh:min", None) == "refresh:min:unknown"


def test_limit_within_window_then_slides():
    clock = FakeClock()
    throttle = LoginThrottle(clock)
    key = throttle.key("login:min", "10.0.0.1", "alice")

    assert all(throttle.hit(key, 3, 60) for _ in range(3))
    assert throttle.hit(key, 3, 60) is False

    clock.now += 30
    assert throttle.hit(key, 3, 60) is False

    clock.now += 31
    assert throttle.hit(key, 3, 60) is True


def test_keys_are_independent_and_reset():
    throttle = LoginThrottle(FakeClock())
    alice = throttle.key("login:min", "10.0.0.1", "alice")
    bob = throttle.key("login:min", "10.0.0.1", "bob")

    assert throttle.hit(alice, 1, 60)
    assert not throttle.hit(alice, 1, 60)
    assert throttle.hit(bob, 1, 60)

    throttle.reset(alice)
    assert throttle.hit(alice, 1, 60)


def test_expired_keys_are_evicted():
    clock = FakeClock()
    throttle = LoginThrottle(clock)

    for n in range(10000):
        throttle.hit(throttle.key("login:min", "10.0.0.1", f"user{n}"), 5, 60)
    assert throttle.tracked_keys() == 10000

    clock.now += 10000
    assert throttle.hit(throttle.key("login:min", "10.0.0.1", "alice"), 5, 60)
    assert throttle.tracked_keys() == 1


def test_key_table_is_swept_when_full():
    clock = FakeClock()
    throttle = LoginThrottle(clock, max_keys=3, sweep_interval_seconds=3600)

    for name in ("a", "b", "c"):
        throttle.hit(throttle.key("login:min", "10.0.0.1", name), 5, 60)

    clock.now += 61
    throttle.hit(throttle.key("login:min", "10.0.0.1", "d"), 5, 60)
    assert throttle.tracked_keys() == 1


def test_key_is_dropped_once_its_window_passes():
    clock = FakeClock()
    throttle = LoginThrottle(clock, sweep_interval_seconds=3600)
    alice = throttle.key("login:min", "10.0.0.1", "alice")
    bob = throttle.key("login:min", "10.0.0.1", "bob")

    throttle.hit(alice, 5, 60)
    clock.now += 61
    throttle.hit(bob, 5, 60)
    # Touching an expired key clears it before counting
    assert throttle.hit(alice, 1, 60)
    assert throttle.hit(alice, 1, 60) is False
    assert throttle.tracked_keys() == 2
