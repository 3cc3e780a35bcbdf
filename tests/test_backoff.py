import pytest

from printbridge.backoff import (
    CAMERA_RECONNECT_POLICY,
    DEVICE_RECONNECT_POLICY,
    RELAY_RESTART_POLICY,
    TUNNEL_RESTART_POLICY,
    BackoffPolicy,
    BackoffTracker,
)


def test_device_policy_doubles_until_cap():
    delays = [DEVICE_RECONNECT_POLICY.delay(attempt) for attempt in range(8)]

    assert delays == [5, 10, 20, 40, 80, 120, 120, 120]


def test_camera_policy_stops_growing_at_attempt_six():
    assert CAMERA_RECONNECT_POLICY.delay(0) == 5
    assert CAMERA_RECONNECT_POLICY.delay(1) == pytest.approx(7.5)
    assert CAMERA_RECONNECT_POLICY.delay(4) == pytest.approx(25.3125)
    assert CAMERA_RECONNECT_POLICY.delay(6) == 30
    assert CAMERA_RECONNECT_POLICY.delay(50) == 30


def test_relay_policy_is_fixed():
    assert {RELAY_RESTART_POLICY.delay(attempt) for attempt in range(10)} == {3}


def test_tunnel_policy_caps_at_five_minutes():
    assert TUNNEL_RESTART_POLICY.delay(0) == 5
    assert TUNNEL_RESTART_POLICY.delay(5) == 160
    assert TUNNEL_RESTART_POLICY.delay(6) == 300
    assert TUNNEL_RESTART_POLICY.delay(20) == 300


def test_negative_attempt_is_treated_as_first():
    assert BackoffPolicy(baseSeconds=2).delay(-3) == 2


def test_tracker_advances_and_resets():
    tracker = BackoffTracker(DEVICE_RECONNECT_POLICY)

    assert [tracker.nextDelay() for _ in range(3)] == [5, 10, 20]
    assert tracker.attempts == 3

    tracker.reset()

    assert tracker.attempts == 0
    assert tracker.nextDelay() == 5
