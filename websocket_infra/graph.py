"""
Resource graph for one environment.

``compose`` is the single composition point: it turns EnvironmentSettings
into a set of resource nodes with explicit dependencies plus the fixed set
of stack outputs.  It is pure; the CDK stack walks ``build_order()`` and
materialises each node, so construction order never depends on declaration
order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from websocket_infra.admission import ListenerPolicy, TargetBinding
from websocket_infra.artifacts import ArtifactStoreSpec, artifact_store_spec
from websocket_infra.bootstrap import BootstrapScriptGenerator
from websocket_infra.config import (
    DISCOVERY_TAG,
    MACHINE_IMAGE_PARAMETER,
    ROOT_DEVICE_NAME,
    ROOT_VOLUME_GIB,
    EnvironmentSettings,
)
from websocket_infra.exceptions import TopologyError
from websocket_infra.network import (
    COMPUTE,
    ENTRY_POINT,
    NetworkTopology,
    PermissionEdge,
    SegmentKind,
    build_topology,
)

logger = logging.getLogger(__name__)

SSM_CORE_POLICY = "AmazonSSMManagedInstanceCore"
MONITORING_AGENT_POLICY = "CloudWatchAgentServerPolicy"


class ResourceKind(str, Enum):
    NETWORK = "network"
    ARTIFACT_STORE = "artifact_store"
    COMPUTE_IDENTITY = "compute_identity"
    SECURITY_GROUP = "security_group"
    COMPUTE_INSTANCE = "compute_instance"
    LOAD_BALANCER = "load_balancer"
    TARGET_BINDING = "target_binding"
    LISTENER = "listener"


class SecurityGroupSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str
    name: str
    description: str
    allow_all_outbound: bool = True
    ingress: Tuple[PermissionEdge, ...] = ()


class ComputeIdentitySpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    role_name: str
    service_principal: str = "ec2.amazonaws.com"
    managed_policies: Tuple[str, ...] = (SSM_CORE_POLICY,)
    description: str = "IAM role for WebSocket API EC2 instance"


class ComputeInstanceSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    instance_type: str
    machine_image_parameter: str = MACHINE_IMAGE_PARAMETER
    segment: SegmentKind = SegmentKind.PRIVATE
    root_device_name: str = ROOT_DEVICE_NAME
    root_volume_gib: int = ROOT_VOLUME_GIB
    root_volume_encrypted: bool = True
    user_data: Tuple[str, ...] = ()
    # new startup input means a new instance, never an in-place edit
    user_data_causes_replacement: bool = True
    tags: Tuple[Tuple[str, str], ...] = ()


class LoadBalancerSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    internet_facing: bool = True
    segment: SegmentKind = SegmentKind.PUBLIC


class ListenerSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    policy: ListenerPolicy = ListenerPolicy()


class OutputSpec(BaseModel):
    """A published value: ``template`` formatted with one resource attribute."""

    model_config = ConfigDict(frozen=True)

    name: str
    source: Optional[str] = None
    attribute: Optional[str] = None
    description: str
    template: str = "{}"
    export_name: Optional[str] = None

    def render(self, value: Optional[str] = None) -> str:
        if self.source is None:
            return self.template
        return self.template.format(value)


@dataclass(frozen=True)
class ResourceNode:
    logical_id: str
    kind: ResourceKind
    config: BaseModel
    depends_on: Tuple[str, ...] = ()

    def describe(self) -> Dict[str, Any]:
        return {
            "logical_id": self.logical_id,
            "kind": self.kind.value,
            "depends_on": list(self.depends_on),
            "config": self.config.model_dump(mode="json"),
        }


@dataclass(frozen=True)
class ResourceGraph:
    settings: EnvironmentSettings
    nodes: Tuple[ResourceNode, ...]
    outputs: Tuple[OutputSpec, ...] = field(default=())

    def node(self, logical_id: str) -> ResourceNode:
        for n in self.nodes:
            if n.logical_id == logical_id:
                return n
        raise KeyError(logical_id)

    def of_kind(self, kind: ResourceKind) -> List[ResourceNode]:
        return [n for n in self.nodes if n.kind is kind]

    def build_order(self) -> List[ResourceNode]:
        """Dependencies first; ties broken by logical id so the order is stable."""
        by_id = {n.logical_id: n for n in self.nodes}
        pending: Dict[str, set] = {}
        for n in self.nodes:
            unknown = [d for d in n.depends_on if d not in by_id]
            if unknown:
                raise TopologyError(f"{n.logical_id} depends on unknown {unknown}")
            pending[n.logical_id] = set(n.depends_on)

        order: List[ResourceNode] = []
        while pending:
            ready = sorted(k for k, deps in pending.items() if not deps)
            if not ready:
                raise TopologyError(f"dependency cycle among {sorted(pending)}")
            for logical_id in ready:
                order.append(by_id[logical_id])
                del pending[logical_id]
            for deps in pending.values():
                deps.difference_update(ready)
        return order

    def describe(self) -> Dict[str, Any]:
        return {
            "stack_name": self.settings.stack_name,
            "environment": self.settings.name,
            "resources": [n.describe() for n in self.build_order()],
            "outputs": [o.model_dump(mode="json") for o in self.outputs],
        }


# logical ids; kept identical to the construct ids used in the stack
NETWORK_ID = "WebSocketVPC"
BUCKET_ID = "ArtifactBucket"
ROLE_ID = "EC2Role"
ENTRY_SG_ID = "ALBSecurityGroup"
COMPUTE_SG_ID = "EC2SecurityGroup"
INSTANCE_ID = "WebSocketApiInstance"
ALB_ID = "WebSocketALB"
TARGET_GROUP_ID = "TargetGroup"
LISTENER_ID = "HttpListener"


def _outputs(settings: EnvironmentSettings) -> Tuple[OutputSpec, ...]:
    return (
        OutputSpec(
            name="ALBDnsName", source=ALB_ID, attribute="load_balancer_dns_name",
            description="Application Load Balancer DNS Name",
            export_name=settings.export_name("ALB-DNS"),
        ),
        OutputSpec(
            name="WebSocketURL", source=ALB_ID, attribute="load_balancer_dns_name",
            template="ws://{}/ws", description="WebSocket Connection URL",
            export_name=settings.export_name("WS-URL"),
        ),
        OutputSpec(
            name="HealthCheckURL", source=ALB_ID, attribute="load_balancer_dns_name",
            template="http://{}/health", description="Health Check URL",
        ),
        OutputSpec(
            name="DeploymentBucket", source=BUCKET_ID, attribute="bucket_name",
            description="S3 Deployment Bucket Name",
            export_name=settings.export_name("Bucket"),
        ),
        OutputSpec(
            name="InstanceId", source=INSTANCE_ID, attribute="instance_id",
            description="EC2 Instance ID",
        ),
        OutputSpec(
            name="InstanceTag", template=DISCOVERY_TAG,
            description="EC2 Instance Name Tag (for the deployment pipeline)",
            export_name=settings.export_name("InstanceTag"),
        ),
        OutputSpec(
            name="VpcId", source=NETWORK_ID, attribute="vpc_id",
            description="VPC ID",
        ),
    )


def compose(settings: EnvironmentSettings, account: str = "${AWS::AccountId}") -> ResourceGraph:
    """Build the resource graph for *settings*; raises before returning anything partial."""
    topology: NetworkTopology = build_topology(settings)

    identity = ComputeIdentitySpec(
        role_name=settings.resource_name("ec2-role"),
        managed_policies=(
            (SSM_CORE_POLICY, MONITORING_AGENT_POLICY)
            if settings.enable_monitoring_agent
            else (SSM_CORE_POLICY,)
        ),
    )
    store: ArtifactStoreSpec = artifact_store_spec(settings, reader=ROLE_ID, account=account)

    entry_sg = SecurityGroupSpec(
        role=ENTRY_POINT,
        name=settings.resource_name("alb-sg"),
        description="Security group for WebSocket API ALB",
        ingress=tuple(topology.ingress_to(ENTRY_POINT)),
    )
    compute_sg = SecurityGroupSpec(
        role=COMPUTE,
        name=settings.resource_name("ec2-sg"),
        description="Security group for WebSocket API EC2 instance",
        ingress=tuple(topology.ingress_to(COMPUTE)),
    )

    instance = ComputeInstanceSpec(
        instance_type=settings.instance_type,
        user_data=tuple(BootstrapScriptGenerator.for_settings(settings).commands()),
        tags=(
            ("Name", DISCOVERY_TAG),
            ("Environment", settings.name),
            ("ManagedBy", "CDK"),
        ),
    )

    nodes = (
        ResourceNode(NETWORK_ID, ResourceKind.NETWORK, topology),
        ResourceNode(BUCKET_ID, ResourceKind.ARTIFACT_STORE, store, (ROLE_ID,)),
        ResourceNode(ROLE_ID, ResourceKind.COMPUTE_IDENTITY, identity),
        ResourceNode(ENTRY_SG_ID, ResourceKind.SECURITY_GROUP, entry_sg, (NETWORK_ID,)),
        ResourceNode(
            COMPUTE_SG_ID, ResourceKind.SECURITY_GROUP, compute_sg,
            (NETWORK_ID, ENTRY_SG_ID),
        ),
        ResourceNode(
            INSTANCE_ID, ResourceKind.COMPUTE_INSTANCE, instance,
            (NETWORK_ID, ROLE_ID, COMPUTE_SG_ID, BUCKET_ID),
        ),
        ResourceNode(
            ALB_ID, ResourceKind.LOAD_BALANCER,
            LoadBalancerSpec(name=settings.resource_name("alb")),
            (NETWORK_ID, ENTRY_SG_ID),
        ),
        ResourceNode(
            TARGET_GROUP_ID, ResourceKind.TARGET_BINDING,
            TargetBinding(name=settings.resource_name("tg")),
            (NETWORK_ID, INSTANCE_ID),
        ),
        ResourceNode(
            LISTENER_ID, ResourceKind.LISTENER, ListenerSpec(),
            (ALB_ID, TARGET_GROUP_ID),
        ),
    )

    graph = ResourceGraph(settings=settings, nodes=nodes, outputs=_outputs(settings))
    graph.build_order()  # fail now on a broken plan
    logger.debug("composed %d resources for %s", len(nodes), settings.stack_name)
    return graph
