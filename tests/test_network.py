"""Segment planning and reachability rules."""

import pytest

from websocket_infra.config import Environment, EnvironmentSettings
from websocket_infra.exceptions import ConfigurationError, TopologyError
from websocket_infra.network import (
    ANY_IPV4,
    COMPUTE,
    ENTRY_POINT,
    EgressPolicy,
    NetworkTopology,
    PermissionEdge,
    SegmentKind,
    build_topology,
    plan_permission_edges,
    plan_segments,
    validate_topology,
)


def test_segments_follow_cdk_allocation_order():
    segments = plan_segments("10.0.0.0/16")
    assert [(s.name, s.cidr) for s in segments] == [
        ("PublicSubnet1", "10.0.0.0/24"),
        ("PublicSubnet2", "10.0.1.0/24"),
        ("PrivateSubnet1", "10.0.2.0/24"),
        ("PrivateSubnet2", "10.0.3.0/24"),
    ]


def test_each_failure_domain_has_one_segment_of_each_kind():
    segments = plan_segments("10.0.0.0/16")
    for az in (1, 2):
        kinds = sorted(s.kind.value for s in segments if s.failure_domain == az)
        assert kinds == ["private", "public"]


def test_private_segments_only_have_translated_egress():
    for segment in plan_segments("10.0.0.0/16"):
        if segment.kind is SegmentKind.PRIVATE:
            assert segment.egress is EgressPolicy.NAT
        else:
            assert segment.egress is EgressPolicy.INTERNET


def test_cidr_too_small_for_four_subnets():
    with pytest.raises(TopologyError):
        plan_segments("10.0.0.0/23")


@pytest.mark.parametrize("environment", list(Environment))
def test_compute_never_reachable_from_anywhere(environment):
    topology = build_topology(EnvironmentSettings(environment=environment))
    ingress = topology.ingress_to(COMPUTE)
    assert ingress
    assert all(e.source != ANY_IPV4 for e in ingress)
    assert {e.source for e in ingress} == {ENTRY_POINT}


@pytest.mark.parametrize("environment", list(Environment))
def test_entry_point_open_on_80_and_443(environment):
    topology = build_topology(EnvironmentSettings(environment=environment))
    public_ports = {e.port for e in topology.ingress_to(ENTRY_POINT) if e.from_anywhere}
    assert {80, 443} <= public_ports


def test_compute_accepts_proxy_and_app_ports():
    ports = sorted(e.port for e in plan_permission_edges() if e.destination == COMPUTE)
    assert ports == [80, 5000]


def test_existing_vpc_has_no_structural_changes():
    settings = EnvironmentSettings(create_vpc=False, vpc_id="vpc-0abc")
    topology = build_topology(settings)
    assert topology.is_existing
    assert topology.existing_vpc_id == "vpc-0abc"
    assert topology.segments == ()
    assert topology.cidr is None
    assert topology.edges


def test_existing_vpc_without_id_is_rejected():
    with pytest.raises(ConfigurationError):
        build_topology(EnvironmentSettings(create_vpc=False))


def test_validate_rejects_internet_ingress_to_compute():
    edges = tuple(plan_permission_edges()) + (
        PermissionEdge(source=ANY_IPV4, destination=COMPUTE, port=22),
    )
    topology = NetworkTopology(vpc_name="v", existing_vpc_id="vpc-1", edges=edges)
    with pytest.raises(TopologyError, match="Compute accepts port 22"):
        validate_topology(topology)


def test_validate_requires_https_on_entry_point():
    edges = tuple(e for e in plan_permission_edges() if e.port != 443)
    topology = NetworkTopology(vpc_name="v", existing_vpc_id="vpc-1", edges=edges)
    with pytest.raises(TopologyError, match="443"):
        validate_topology(topology)
