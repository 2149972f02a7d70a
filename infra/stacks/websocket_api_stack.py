"""
AWS CDK stack: VPC + EC2 + ALB + S3 + IAM for the WebSocket API.

Resources:
  - VPC (2 AZs, public + private subnets, one NAT gateway) or an existing VPC
  - S3 bucket holding deployment artifacts (private, 30 day expiry)
  - IAM role for the instance (Session Manager + read-only bucket access)
  - Security groups for the ALB and the instance
  - EC2 instance in a private subnet running the service behind nginx
  - Internet-facing Application Load Balancer with sticky sessions

The stack does not decide anything itself: it walks the resource graph
from ``websocket_infra.graph.compose`` in dependency order and turns each
node into constructs.
"""

import logging
from typing import Any, Dict

from constructs import Construct
from aws_cdk import (
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    Tags,
    aws_ec2 as ec2,
    aws_elasticloadbalancingv2 as elbv2,
    aws_elasticloadbalancingv2_targets as elbv2_targets,
    aws_iam as iam,
    aws_s3 as s3,
)

from websocket_infra.admission import TargetBinding
from websocket_infra.artifacts import ArtifactStoreSpec
from websocket_infra.config import EnvironmentSettings
from websocket_infra.graph import (
    ALB_ID,
    BUCKET_ID,
    INSTANCE_ID,
    NETWORK_ID,
    ROLE_ID,
    ComputeIdentitySpec,
    ComputeInstanceSpec,
    ListenerSpec,
    LoadBalancerSpec,
    ResourceKind,
    ResourceNode,
    SecurityGroupSpec,
    TARGET_GROUP_ID,
    compose,
)
from websocket_infra.network import COMPUTE, ENTRY_POINT, NetworkTopology, SegmentKind

logger = logging.getLogger(__name__)

SUBNET_TYPES = {
    SegmentKind.PUBLIC: ec2.SubnetType.PUBLIC,
    SegmentKind.PRIVATE: ec2.SubnetType.PRIVATE_WITH_EGRESS,
}

APP_PROTOCOLS = {
    "HTTP": elbv2.ApplicationProtocol.HTTP,
    "HTTPS": elbv2.ApplicationProtocol.HTTPS,
}


class WebSocketApiStack(Stack):

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        settings: EnvironmentSettings,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.settings = settings
        self.graph = compose(settings, account=self.account)
        self._built: Dict[str, Any] = {}
        self._security_groups: Dict[str, ec2.SecurityGroup] = {}

        builders = {
            ResourceKind.NETWORK: self._build_network,
            ResourceKind.ARTIFACT_STORE: self._build_artifact_store,
            ResourceKind.COMPUTE_IDENTITY: self._build_identity,
            ResourceKind.SECURITY_GROUP: self._build_security_group,
            ResourceKind.COMPUTE_INSTANCE: self._build_instance,
            ResourceKind.LOAD_BALANCER: self._build_load_balancer,
            ResourceKind.TARGET_BINDING: self._build_target_group,
            ResourceKind.LISTENER: self._build_listener,
        }
        for node in self.graph.build_order():
            self._built[node.logical_id] = builders[node.kind](node)

        # ---------------------------------------------------------------
        # Outputs
        # ---------------------------------------------------------------
        for output in self.graph.outputs:
            value = None
            if output.source is not None:
                value = getattr(self._built[output.source], output.attribute)
            CfnOutput(
                self, output.name,
                value=output.render(value),
                description=output.description,
                export_name=output.export_name,
            )

        self.alb_dns_name: str = self._built[ALB_ID].load_balancer_dns_name
        self.deployment_bucket_name: str = self._built[BUCKET_ID].bucket_name
        self.instance_id: str = self._built[INSTANCE_ID].instance_id

    @property
    def vpc(self) -> ec2.IVpc:
        return self._built[NETWORK_ID]

    # ---------------------------------------------------------------
    # VPC
    # ---------------------------------------------------------------
    def _build_network(self, node: ResourceNode) -> ec2.IVpc:
        topology: NetworkTopology = node.config

        if topology.is_existing:
            # lookup failures abort synthesis
            logger.info("Looking up existing VPC %s", topology.existing_vpc_id)
            return ec2.Vpc.from_lookup(self, "ExistingVPC", vpc_id=topology.existing_vpc_id)

        subnet_configuration = []
        for kind, label in ((SegmentKind.PUBLIC, "Public"), (SegmentKind.PRIVATE, "Private")):
            if topology.segments_of(kind):
                subnet_configuration.append(
                    ec2.SubnetConfiguration(
                        name=label,
                        subnet_type=SUBNET_TYPES[kind],
                        cidr_mask=topology.cidr_mask,
                    )
                )

        return ec2.Vpc(
            self, node.logical_id,
            vpc_name=topology.vpc_name,
            ip_addresses=ec2.IpAddresses.cidr(topology.cidr),
            max_azs=topology.max_azs,
            nat_gateways=topology.nat_gateways,
            subnet_configuration=subnet_configuration,
        )

    # ---------------------------------------------------------------
    # S3 deployment bucket
    # ---------------------------------------------------------------
    def _build_artifact_store(self, node: ResourceNode) -> s3.Bucket:
        store: ArtifactStoreSpec = node.config

        bucket = s3.Bucket(
            self, node.logical_id,
            bucket_name=store.bucket_name,
            removal_policy=RemovalPolicy.RETAIN if store.retain_on_delete else RemovalPolicy.DESTROY,
            encryption=s3.BucketEncryption.S3_MANAGED,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            versioned=store.versioned,
            lifecycle_rules=[
                s3.LifecycleRule(
                    id=store.lifecycle_rule_id,
                    enabled=True,
                    expiration=Duration.days(store.expiration_days),
                )
            ],
        )

        for grant in store.grants:
            if grant.principal == ROLE_ID:
                bucket.grant_read(self._built[ROLE_ID])
            elif grant.allows_write:
                deployer = iam.Role.from_role_arn(self, "DeployerRole", grant.principal)
                bucket.grant_put(deployer)
        return bucket

    # ---------------------------------------------------------------
    # IAM role for EC2
    # ---------------------------------------------------------------
    def _build_identity(self, node: ResourceNode) -> iam.Role:
        spec: ComputeIdentitySpec = node.config
        return iam.Role(
            self, node.logical_id,
            role_name=spec.role_name,
            assumed_by=iam.ServicePrincipal(spec.service_principal),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name(name)
                for name in spec.managed_policies
            ],
            description=spec.description,
        )

    # ---------------------------------------------------------------
    # Security groups
    # ---------------------------------------------------------------
    def _build_security_group(self, node: ResourceNode) -> ec2.SecurityGroup:
        spec: SecurityGroupSpec = node.config
        sg = ec2.SecurityGroup(
            self, node.logical_id,
            vpc=self.vpc,
            security_group_name=spec.name,
            description=spec.description,
            allow_all_outbound=spec.allow_all_outbound,
        )
        for edge in spec.ingress:
            peer = ec2.Peer.any_ipv4() if edge.from_anywhere else self._security_groups[edge.source]
            sg.add_ingress_rule(peer, ec2.Port.tcp(edge.port), edge.description)

        self._security_groups[spec.role] = sg
        return sg

    # ---------------------------------------------------------------
    # EC2 instance
    # ---------------------------------------------------------------
    def _build_instance(self, node: ResourceNode) -> ec2.Instance:
        spec: ComputeInstanceSpec = node.config

        user_data = ec2.UserData.for_linux()
        user_data.add_commands(*spec.user_data)

        instance = ec2.Instance(
            self, node.logical_id,
            vpc=self.vpc,
            vpc_subnets=ec2.SubnetSelection(subnet_type=SUBNET_TYPES[spec.segment]),
            instance_type=ec2.InstanceType(spec.instance_type),
            machine_image=ec2.MachineImage.from_ssm_parameter(
                spec.machine_image_parameter,
                os=ec2.OperatingSystemType.LINUX,
            ),
            security_group=self._security_groups[COMPUTE],
            role=self._built[ROLE_ID],
            user_data=user_data,
            user_data_causes_replacement=spec.user_data_causes_replacement,
            block_devices=[
                ec2.BlockDevice(
                    device_name=spec.root_device_name,
                    volume=ec2.BlockDeviceVolume.ebs(
                        spec.root_volume_gib,
                        volume_type=ec2.EbsDeviceVolumeType.GP3,
                        encrypted=spec.root_volume_encrypted,
                    ),
                )
            ],
        )

        for key, value in spec.tags:
            Tags.of(instance).add(key, value)
        return instance

    # ---------------------------------------------------------------
    # Application Load Balancer
    # ---------------------------------------------------------------
    def _build_load_balancer(self, node: ResourceNode) -> elbv2.ApplicationLoadBalancer:
        spec: LoadBalancerSpec = node.config
        return elbv2.ApplicationLoadBalancer(
            self, node.logical_id,
            vpc=self.vpc,
            internet_facing=spec.internet_facing,
            load_balancer_name=spec.name,
            security_group=self._security_groups[ENTRY_POINT],
            vpc_subnets=ec2.SubnetSelection(subnet_type=SUBNET_TYPES[spec.segment]),
        )

    # ---------------------------------------------------------------
    # Target group (health checks + sticky sessions)
    # ---------------------------------------------------------------
    def _build_target_group(self, node: ResourceNode) -> elbv2.ApplicationTargetGroup:
        binding: TargetBinding = node.config
        hc = binding.health_check

        tg = elbv2.ApplicationTargetGroup(
            self, node.logical_id,
            vpc=self.vpc,
            port=binding.port,
            protocol=APP_PROTOCOLS[binding.protocol],
            target_group_name=binding.name,
            targets=[elbv2_targets.InstanceTarget(self._built[INSTANCE_ID], binding.port)],
            health_check=elbv2.HealthCheck(
                enabled=True,
                path=hc.path,
                protocol=elbv2.Protocol.HTTP,
                interval=Duration.seconds(hc.interval_seconds),
                timeout=Duration.seconds(hc.timeout_seconds),
                healthy_threshold_count=hc.healthy_threshold,
                unhealthy_threshold_count=hc.unhealthy_threshold,
                healthy_http_codes=hc.healthy_http_codes,
            ),
        )
        # drain delay and cookie stickiness; WebSocket sessions live in one process
        for key, value in binding.target_group_attributes().items():
            tg.set_attribute(key, value)
        return tg

    # ---------------------------------------------------------------
    # ALB listener
    # ---------------------------------------------------------------
    def _build_listener(self, node: ResourceNode) -> elbv2.ApplicationListener:
        spec: ListenerSpec = node.config
        # ingress to the ALB comes from the permission edges, not open=True
        return self._built[ALB_ID].add_listener(
            node.logical_id,
            port=spec.policy.port,
            protocol=APP_PROTOCOLS[spec.policy.protocol],
            default_target_groups=[self._built[TARGET_GROUP_ID]],
            open=False,
        )
