"""
Traffic admission: the public listener, its target binding and the policies
that decide which backend receives a connection.

The policy models are what the stack hands to the load balancer.  The
tracker and router below replay those policies locally so their effect
(admission after N probes, eviction, cookie affinity) can be reasoned about
without a running load balancer.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from websocket_infra.config import HTTP_PORT
from websocket_infra.exceptions import NoHealthyTargetsError

logger = logging.getLogger(__name__)


class ListenerPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    port: int = HTTP_PORT
    protocol: str = "HTTP"


class HealthCheckPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str = "/health"
    protocol: str = "HTTP"
    interval_seconds: int = Field(default=30, gt=0)
    timeout_seconds: int = Field(default=5, gt=0)
    healthy_threshold: int = Field(default=2, ge=2)
    unhealthy_threshold: int = Field(default=3, ge=2)
    # ALB matcher syntax: "200", "200,204" or "200-299"
    healthy_http_codes: str = "200"

    @field_validator("healthy_http_codes")
    @classmethod
    def _normalise_codes(cls, value: str) -> str:
        items = [item.strip() for item in value.split(",")]
        for item in items:
            bounds = item.split("-")
            if len(bounds) > 2 or not all(b.isdecimal() for b in bounds):
                raise ValueError(f"invalid HTTP code matcher {value!r}")
            if len(bounds) == 2 and int(bounds[0]) > int(bounds[1]):
                raise ValueError(f"empty HTTP code range {item!r}")
        return ",".join(items)

    def accepts(self, status_code: int) -> bool:
        for item in self.healthy_http_codes.split(","):
            low, _, high = item.partition("-")
            if int(low) <= status_code <= int(high or low):
                return True
        return False

    @model_validator(mode="after")
    def _timeout_within_interval(self) -> "HealthCheckPolicy":
        if self.timeout_seconds >= self.interval_seconds:
            raise ValueError("health check timeout must be shorter than the interval")
        return self

    @property
    def max_eviction_seconds(self) -> int:
        """Worst case between a backend dying and leaving rotation."""
        return self.unhealthy_threshold * self.interval_seconds + self.timeout_seconds


class StickinessPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    cookie_type: Literal["lb_cookie", "app_cookie"] = "lb_cookie"
    # only for app_cookie: the cookie the service itself sets
    app_cookie_name: Optional[str] = None
    duration_seconds: int = Field(default=3600, gt=0)

    @model_validator(mode="after")
    def _app_cookie_named(self) -> "StickinessPolicy":
        if self.cookie_type == "app_cookie" and not self.app_cookie_name:
            raise ValueError("app_cookie stickiness needs app_cookie_name")
        return self


class DeregistrationPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    delay_seconds: int = Field(default=30, ge=0)


class TargetBinding(BaseModel):
    """Load balancer -> instance association and its admission policies."""

    model_config = ConfigDict(frozen=True)

    name: str
    port: int = HTTP_PORT
    protocol: str = "HTTP"
    # WebSocket backends keep per-connection state in memory
    connection_oriented: bool = True
    health_check: HealthCheckPolicy = HealthCheckPolicy()
    stickiness: StickinessPolicy = StickinessPolicy()
    deregistration: DeregistrationPolicy = DeregistrationPolicy()

    @model_validator(mode="after")
    def _sticky_when_stateful(self) -> "TargetBinding":
        if self.connection_oriented and not self.stickiness.enabled:
            raise ValueError(
                "stickiness must be enabled for connection-oriented backends"
            )
        return self

    def target_group_attributes(self) -> Dict[str, str]:
        """Target group attributes exactly as the stack sets them."""
        stickiness = self.stickiness
        attrs = {
            "deregistration_delay.timeout_seconds": str(self.deregistration.delay_seconds),
            "stickiness.enabled": "true" if stickiness.enabled else "false",
        }
        if stickiness.enabled:
            attrs["stickiness.type"] = stickiness.cookie_type
            attrs[f"stickiness.{stickiness.cookie_type}.duration_seconds"] = str(
                stickiness.duration_seconds
            )
            if stickiness.cookie_type == "app_cookie":
                attrs["stickiness.app_cookie.cookie_name"] = stickiness.app_cookie_name
        return attrs


# ---------------------------------------------------------------
# Health tracking
# ---------------------------------------------------------------

class TargetState(str, Enum):
    INITIAL = "initial"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DRAINING = "draining"


@dataclass
class TargetHealth:
    target_id: str
    state: TargetState = TargetState.INITIAL
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    drain_deadline: Optional[float] = None


class TargetHealthTracker:
    """Applies a HealthCheckPolicy to a stream of probe results."""

    def __init__(
        self,
        policy: HealthCheckPolicy,
        deregistration: Optional[DeregistrationPolicy] = None,
    ):
        self.policy = policy
        self.deregistration = deregistration or DeregistrationPolicy()
        self._targets: Dict[str, TargetHealth] = {}

    def register(self, target_id: str) -> TargetHealth:
        health = TargetHealth(target_id=target_id)
        self._targets[target_id] = health
        return health

    def state(self, target_id: str) -> TargetState:
        return self._targets[target_id].state

    def record_probe(
        self, target_id: str, status_code: Optional[int], elapsed: float = 0.0
    ) -> TargetState:
        """
        Feed one probe result.  A probe fails when it got no response, a
        status outside the healthy codes, or took longer than the timeout.
        """
        health = self._targets[target_id]
        if health.state is TargetState.DRAINING:
            return health.state

        ok = (
            status_code is not None
            and self.policy.accepts(status_code)
            and elapsed <= self.policy.timeout_seconds
        )

        if ok:
            health.consecutive_failures = 0
            health.consecutive_successes += 1
            if (
                health.state is not TargetState.HEALTHY
                and health.consecutive_successes >= self.policy.healthy_threshold
            ):
                health.state = TargetState.HEALTHY
                logger.debug("target %s admitted", target_id)
        else:
            health.consecutive_successes = 0
            health.consecutive_failures += 1
            if (
                health.state is not TargetState.UNHEALTHY
                and health.consecutive_failures >= self.policy.unhealthy_threshold
            ):
                health.state = TargetState.UNHEALTHY
                logger.debug("target %s evicted", target_id)
        return health.state

    def deregister(self, target_id: str, now: float) -> None:
        health = self._targets[target_id]
        health.state = TargetState.DRAINING
        health.drain_deadline = now + self.deregistration.delay_seconds

    def accepts_existing(self, target_id: str, now: float) -> bool:
        """Whether in-flight connections on *target_id* are still served."""
        health = self._targets.get(target_id)
        if health is None:
            return False
        if health.state is TargetState.DRAINING:
            return now < (health.drain_deadline or now)
        return health.state is TargetState.HEALTHY

    def remove_drained(self, now: float) -> List[str]:
        gone = [
            t.target_id for t in self._targets.values()
            if t.state is TargetState.DRAINING and now >= (t.drain_deadline or now)
        ]
        for target_id in gone:
            del self._targets[target_id]
        return gone

    def in_service(self) -> List[str]:
        return sorted(
            t.target_id for t in self._targets.values() if t.state is TargetState.HEALTHY
        )


# ---------------------------------------------------------------
# Cookie affinity
# ---------------------------------------------------------------

class AffinityRouter:
    """
    Routes new connections round-robin and pins returning clients.

    The affinity token is ``<target>.<expiry>.<hmac>``; a token that is
    expired, tampered with, or names a target no longer in service is
    ignored and a fresh one is issued.
    """

    def __init__(self, tracker: TargetHealthTracker, policy: StickinessPolicy, secret: bytes):
        self.tracker = tracker
        self.policy = policy
        self._secret = secret
        self._next = 0

    def _sign(self, target_id: str, expires: int) -> str:
        # tokens come from clients; lone surrogates must not break encoding
        msg = f"{target_id}.{expires}".encode("utf-8", "surrogatepass")
        return hmac.new(self._secret, msg, hashlib.sha256).hexdigest()

    def issue_token(self, target_id: str, now: float) -> str:
        expires = int(now) + self.policy.duration_seconds
        return f"{target_id}.{expires}.{self._sign(target_id, expires)}"

    def pinned_target(self, token: Optional[str], now: float) -> Optional[str]:
        if not token or not self.policy.enabled:
            return None
        try:
            target_id, expires_raw, signature = token.rsplit(".", 2)
            expires = int(expires_raw)
        except ValueError:
            return None
        expected = self._sign(target_id, expires).encode("ascii")
        if not hmac.compare_digest(signature.encode("utf-8", "surrogatepass"), expected):
            return None
        if now >= expires:
            return None
        if target_id not in self.tracker.in_service():
            return None
        return target_id

    def route(self, token: Optional[str], now: float) -> Tuple[str, str]:
        """Return ``(target_id, token)`` for one incoming connection."""
        pinned = self.pinned_target(token, now)
        if pinned is not None:
            return pinned, token

        candidates = self.tracker.in_service()
        if not candidates:
            raise NoHealthyTargetsError("no healthy targets in the target group")
        target_id = candidates[self._next % len(candidates)]
        self._next += 1
        return target_id, self.issue_token(target_id, now)
