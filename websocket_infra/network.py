"""
Network topology for the WebSocket API.

The VPC is split into two segment kinds replicated across two availability
zones:
  - public  -- internet gateway egress, hosts only the load balancer
  - private -- NAT egress only, hosts the compute instance

Reachability is expressed as permission edges between the two security
groups rather than as raw CIDR rules, so the private side never accepts
traffic from the open internet.
"""

from __future__ import annotations

import ipaddress
import logging
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from websocket_infra.config import (
    APP_PORT,
    HTTP_PORT,
    HTTPS_PORT,
    NAT_GATEWAYS,
    REDUNDANCY_FACTOR,
    SUBNET_CIDR_MASK,
    EnvironmentSettings,
)
from websocket_infra.exceptions import ConfigurationError, TopologyError

logger = logging.getLogger(__name__)

ANY_IPV4 = "0.0.0.0/0"

# security group identities used as edge endpoints
ENTRY_POINT = "entry-point"
COMPUTE = "compute"


class SegmentKind(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class EgressPolicy(str, Enum):
    INTERNET = "internet"  # internet gateway
    NAT = "nat"            # address-translated egress only


class NetworkSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    kind: SegmentKind
    cidr: str
    egress: EgressPolicy
    failure_domain: int


class PermissionEdge(BaseModel):
    """Directed allow rule: *source* may reach *destination* on *port*."""

    model_config = ConfigDict(frozen=True)

    source: str
    destination: str
    port: int
    protocol: str = "tcp"
    description: str = ""

    @property
    def from_anywhere(self) -> bool:
        return self.source == ANY_IPV4


class NetworkTopology(BaseModel):
    model_config = ConfigDict(frozen=True)

    vpc_name: str
    cidr: Optional[str] = None
    existing_vpc_id: Optional[str] = None
    max_azs: int = REDUNDANCY_FACTOR
    nat_gateways: int = NAT_GATEWAYS
    cidr_mask: int = SUBNET_CIDR_MASK
    segments: Tuple[NetworkSegment, ...] = ()
    edges: Tuple[PermissionEdge, ...] = ()

    @property
    def is_existing(self) -> bool:
        return self.existing_vpc_id is not None

    def segments_of(self, kind: SegmentKind) -> List[NetworkSegment]:
        return [s for s in self.segments if s.kind is kind]

    def ingress_to(self, destination: str) -> List[PermissionEdge]:
        return [e for e in self.edges if e.destination == destination]


def plan_segments(
    cidr: str,
    redundancy: int = REDUNDANCY_FACTOR,
    cidr_mask: int = SUBNET_CIDR_MASK,
) -> List[NetworkSegment]:
    """
    Carve public and private subnets out of *cidr*.

    Allocation follows the CDK order: every public subnet first (one per
    availability zone), then every private one.
    """
    network = ipaddress.ip_network(cidr)
    if cidr_mask < network.prefixlen:
        raise TopologyError(f"Subnet mask /{cidr_mask} is wider than the VPC {cidr}")

    blocks = network.subnets(new_prefix=cidr_mask)
    layout = [
        (SegmentKind.PUBLIC, "Public", EgressPolicy.INTERNET),
        (SegmentKind.PRIVATE, "Private", EgressPolicy.NAT),
    ]

    segments: List[NetworkSegment] = []
    for kind, label, egress in layout:
        for az in range(1, redundancy + 1):
            block = next(blocks, None)
            if block is None:
                raise TopologyError(
                    f"{cidr} cannot hold {2 * redundancy} /{cidr_mask} subnets"
                )
            segments.append(
                NetworkSegment(
                    name=f"{label}Subnet{az}",
                    kind=kind,
                    cidr=str(block),
                    egress=egress,
                    failure_domain=az,
                )
            )
    return segments


def plan_permission_edges() -> List[PermissionEdge]:
    return [
        PermissionEdge(
            source=ANY_IPV4, destination=ENTRY_POINT, port=HTTP_PORT,
            description="Allow HTTP traffic from anywhere",
        ),
        PermissionEdge(
            source=ANY_IPV4, destination=ENTRY_POINT, port=HTTPS_PORT,
            description="Allow HTTPS traffic from anywhere",
        ),
        PermissionEdge(
            source=ENTRY_POINT, destination=COMPUTE, port=HTTP_PORT,
            description="Allow traffic from ALB",
        ),
        PermissionEdge(
            source=ENTRY_POINT, destination=COMPUTE, port=APP_PORT,
            description="Allow traffic from ALB to app port",
        ),
    ]


def build_topology(settings: EnvironmentSettings) -> NetworkTopology:
    edges = tuple(plan_permission_edges())
    vpc_name = settings.resource_name("vpc")

    if not settings.create_vpc:
        if not settings.vpc_id:
            raise ConfigurationError("createVpc is false but no vpcId was supplied")
        # the supplied VPC is trusted to already have public/private subnets
        logger.info("Reusing existing VPC %s for %s", settings.vpc_id, settings.name)
        topology = NetworkTopology(
            vpc_name=vpc_name, existing_vpc_id=settings.vpc_id, edges=edges,
        )
    else:
        topology = NetworkTopology(
            vpc_name=vpc_name,
            cidr=settings.vpc_cidr,
            segments=tuple(plan_segments(settings.vpc_cidr)),
            edges=edges,
        )

    validate_topology(topology)
    return topology


def validate_topology(topology: NetworkTopology) -> None:
    """Raise TopologyError when reachability rules break segment isolation."""
    for edge in topology.ingress_to(COMPUTE):
        if edge.from_anywhere:
            raise TopologyError(
                f"Compute accepts port {edge.port} from {ANY_IPV4}; "
                "only the entry point may reach it"
            )

    open_ports = {e.port for e in topology.ingress_to(ENTRY_POINT) if e.from_anywhere}
    missing = {HTTP_PORT, HTTPS_PORT} - open_ports
    if missing:
        raise TopologyError(
            f"Entry point is not open to the internet on port(s) {sorted(missing)}"
        )

    if not topology.is_existing:
        kinds = {s.kind for s in topology.segments}
        if kinds != {SegmentKind.PUBLIC, SegmentKind.PRIVATE}:
            raise TopologyError("A new VPC needs both public and private segments")
