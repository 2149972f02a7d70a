"""Health-driven admission, eviction and cookie affinity."""

import pytest
from pydantic import ValidationError

from websocket_infra.admission import (
    AffinityRouter,
    DeregistrationPolicy,
    HealthCheckPolicy,
    StickinessPolicy,
    TargetBinding,
    TargetHealthTracker,
    TargetState,
)
from websocket_infra.exceptions import NoHealthyTargetsError

SECRET = b"test-secret"


def _tracker(*targets):
    tracker = TargetHealthTracker(HealthCheckPolicy(), DeregistrationPolicy())
    for t in targets:
        tracker.register(t)
    return tracker


def _admit(tracker, target):
    for _ in range(tracker.policy.healthy_threshold):
        tracker.record_probe(target, 200)


def test_default_policy_values():
    policy = HealthCheckPolicy()
    assert policy.path == "/health"
    assert policy.interval_seconds == 30
    assert policy.timeout_seconds == 5
    assert policy.healthy_threshold == 2
    assert policy.unhealthy_threshold == 3
    assert policy.max_eviction_seconds == 3 * 30 + 5


def test_timeout_must_be_shorter_than_interval():
    with pytest.raises(ValidationError):
        HealthCheckPolicy(interval_seconds=5, timeout_seconds=5)


def test_stateful_binding_requires_stickiness():
    with pytest.raises(ValidationError):
        TargetBinding(name="tg", stickiness=StickinessPolicy(enabled=False))
    binding = TargetBinding(
        name="tg", connection_oriented=False, stickiness=StickinessPolicy(enabled=False)
    )
    assert binding.target_group_attributes()["stickiness.enabled"] == "false"


def test_target_group_attributes():
    assert TargetBinding(name="tg").target_group_attributes() == {
        "deregistration_delay.timeout_seconds": "30",
        "stickiness.enabled": "true",
        "stickiness.type": "lb_cookie",
        "stickiness.lb_cookie.duration_seconds": "3600",
    }


def test_app_cookie_attributes():
    binding = TargetBinding(
        name="tg",
        stickiness=StickinessPolicy(cookie_type="app_cookie", app_cookie_name="WSSESSION"),
    )
    assert binding.target_group_attributes() == {
        "deregistration_delay.timeout_seconds": "30",
        "stickiness.enabled": "true",
        "stickiness.type": "app_cookie",
        "stickiness.app_cookie.duration_seconds": "3600",
        "stickiness.app_cookie.cookie_name": "WSSESSION",
    }


def test_unknown_or_unnamed_cookie_rejected():
    with pytest.raises(ValidationError):
        StickinessPolicy(cookie_type="source_ip")
    with pytest.raises(ValidationError):
        StickinessPolicy(cookie_type="app_cookie")


def test_healthy_codes_accept_lists_and_ranges():
    policy = HealthCheckPolicy(healthy_http_codes="200, 204")
    assert policy.healthy_http_codes == "200,204"
    assert policy.accepts(204)
    assert not policy.accepts(201)

    ranged = HealthCheckPolicy(healthy_http_codes="200-299")
    assert ranged.accepts(200) and ranged.accepts(299)
    assert not ranged.accepts(301)


@pytest.mark.parametrize("codes", ["", "2xx", "200-", "299-200", "200-250-299"])
def test_malformed_healthy_codes_rejected(codes):
    with pytest.raises(ValidationError):
        HealthCheckPolicy(healthy_http_codes=codes)


def test_range_matcher_admits_target():
    tracker = TargetHealthTracker(HealthCheckPolicy(healthy_http_codes="200-299"))
    tracker.register("i-1")
    tracker.record_probe("i-1", 204)
    tracker.record_probe("i-1", 200)
    assert tracker.in_service() == ["i-1"]


def test_admitted_only_after_two_successes():
    tracker = _tracker("i-1")
    assert tracker.record_probe("i-1", 200) is TargetState.INITIAL
    assert tracker.in_service() == []
    assert tracker.record_probe("i-1", 200) is TargetState.HEALTHY
    assert tracker.in_service() == ["i-1"]


def test_failure_resets_success_streak():
    tracker = _tracker("i-1")
    tracker.record_probe("i-1", 200)
    tracker.record_probe("i-1", 503)
    assert tracker.record_probe("i-1", 200) is TargetState.INITIAL


def test_evicted_after_three_failures_within_bound():
    tracker = _tracker("i-1")
    _admit(tracker, "i-1")
    policy = tracker.policy

    # backend dies right after a successful probe; probes keep coming
    elapsed = 0
    for _ in range(policy.unhealthy_threshold):
        assert "i-1" in tracker.in_service()
        elapsed += policy.interval_seconds
        tracker.record_probe("i-1", None, elapsed=policy.timeout_seconds)
    elapsed += policy.timeout_seconds

    assert tracker.state("i-1") is TargetState.UNHEALTHY
    assert tracker.in_service() == []
    assert elapsed <= policy.max_eviction_seconds


def test_two_failures_do_not_evict():
    tracker = _tracker("i-1")
    _admit(tracker, "i-1")
    tracker.record_probe("i-1", 500)
    tracker.record_probe("i-1", 500)
    assert tracker.in_service() == ["i-1"]


def test_slow_probe_counts_as_failure():
    tracker = _tracker("i-1")
    tracker.record_probe("i-1", 200, elapsed=6.0)
    tracker.record_probe("i-1", 200, elapsed=6.0)
    assert tracker.state("i-1") is TargetState.INITIAL


def test_unhealthy_target_recovers_after_two_successes():
    tracker = _tracker("i-1")
    _admit(tracker, "i-1")
    for _ in range(3):
        tracker.record_probe("i-1", 500)
    _admit(tracker, "i-1")
    assert tracker.in_service() == ["i-1"]


def test_deregistered_target_drains_for_grace_period():
    tracker = _tracker("i-1")
    _admit(tracker, "i-1")
    tracker.deregister("i-1", now=100.0)

    assert tracker.in_service() == []
    assert tracker.accepts_existing("i-1", now=129.0)
    assert not tracker.accepts_existing("i-1", now=130.0)
    assert tracker.remove_drained(now=129.0) == []
    assert tracker.remove_drained(now=130.0) == ["i-1"]


def test_same_client_sticks_to_backend():
    tracker = _tracker("i-1", "i-2")
    _admit(tracker, "i-1")
    _admit(tracker, "i-2")
    router = AffinityRouter(tracker, StickinessPolicy(), SECRET)

    first, token = router.route(None, now=0.0)
    for now in (1.0, 600.0, 3599.0):
        target, same_token = router.route(token, now=now)
        assert target == first
        assert same_token == token


def test_new_clients_are_spread():
    tracker = _tracker("i-1", "i-2")
    _admit(tracker, "i-1")
    _admit(tracker, "i-2")
    router = AffinityRouter(tracker, StickinessPolicy(), SECRET)

    targets = {router.route(None, now=0.0)[0] for _ in range(4)}
    assert targets == {"i-1", "i-2"}


def test_expired_token_is_reissued():
    tracker = _tracker("i-1")
    _admit(tracker, "i-1")
    router = AffinityRouter(tracker, StickinessPolicy(), SECRET)

    _, token = router.route(None, now=0.0)
    assert router.pinned_target(token, now=3600.0) is None
    _, fresh = router.route(token, now=3600.0)
    assert fresh != token


def test_tampered_token_is_ignored():
    tracker = _tracker("i-1", "i-2")
    _admit(tracker, "i-1")
    _admit(tracker, "i-2")
    router = AffinityRouter(tracker, StickinessPolicy(), SECRET)

    target, token = router.route(None, now=0.0)
    other = "i-2" if target == "i-1" else "i-1"
    forged = token.replace(target, other, 1)
    assert router.pinned_target(forged, now=1.0) is None
    assert router.pinned_target("garbage", now=1.0) is None


@pytest.mark.parametrize("token", ["i-1.99999.é", "i-1.99999.\ud800", "\ud800.99999.abc"])
def test_non_ascii_token_is_ignored(token):
    tracker = _tracker("i-1")
    _admit(tracker, "i-1")
    router = AffinityRouter(tracker, StickinessPolicy(), SECRET)

    assert router.pinned_target(token, now=0.0) is None
    target, fresh = router.route(token, now=0.0)
    assert target == "i-1"
    assert fresh != token
    assert router.pinned_target(fresh, now=1.0) == "i-1"


def test_pinned_backend_evicted_moves_client():
    tracker = _tracker("i-1", "i-2")
    _admit(tracker, "i-1")
    _admit(tracker, "i-2")
    router = AffinityRouter(tracker, StickinessPolicy(), SECRET)

    first, token = router.route(None, now=0.0)
    for _ in range(3):
        tracker.record_probe(first, None)
    second, _ = router.route(token, now=10.0)
    assert second != first


def test_no_healthy_targets():
    router = AffinityRouter(_tracker("i-1"), StickinessPolicy(), SECRET)
    with pytest.raises(NoHealthyTargetsError):
        router.route(None, now=0.0)
