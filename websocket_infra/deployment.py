"""
Read side of the stack outputs for the external deployment pipeline.

The pipeline uploads a build to the deployment bucket and restarts the
service on the instance carrying the discovery tag.  These helpers only look
things up; nothing here deploys.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from botocore.exceptions import ClientError
from pydantic import BaseModel

from websocket_infra.config import DISCOVERY_TAG, Environment
from websocket_infra.exceptions import MissingOutputError, NetworkLookupError

logger = logging.getLogger(__name__)

REQUIRED_OUTPUTS = (
    "ALBDnsName",
    "WebSocketURL",
    "HealthCheckURL",
    "DeploymentBucket",
    "InstanceId",
    "InstanceTag",
    "VpcId",
)


class DeploymentOutputs(BaseModel):
    alb_dns_name: str
    websocket_url: str
    health_check_url: str
    deployment_bucket: str
    instance_id: str
    instance_tag: str
    vpc_id: str


def fetch_stack_outputs(cfn, stack_name: str) -> DeploymentOutputs:
    """Return the published outputs of *stack_name* via a CloudFormation client."""
    resp = cfn.describe_stacks(StackName=stack_name)
    stacks = resp.get("Stacks", [])
    if not stacks:
        raise MissingOutputError(stack_name, REQUIRED_OUTPUTS)

    values = {o["OutputKey"]: o["OutputValue"] for o in stacks[0].get("Outputs", [])}
    missing = [k for k in REQUIRED_OUTPUTS if k not in values]
    if missing:
        raise MissingOutputError(stack_name, missing)

    logger.info("Loaded %d outputs from %s", len(REQUIRED_OUTPUTS), stack_name)
    return DeploymentOutputs(
        alb_dns_name=values["ALBDnsName"],
        websocket_url=values["WebSocketURL"],
        health_check_url=values["HealthCheckURL"],
        deployment_bucket=values["DeploymentBucket"],
        instance_id=values["InstanceId"],
        instance_tag=values["InstanceTag"],
        vpc_id=values["VpcId"],
    )


def find_instances_by_tag(
    ec2,
    environment: Environment,
    tag_value: str = DISCOVERY_TAG,
) -> List[str]:
    """Running instance ids tagged ``Name=<tag_value>`` for *environment*."""
    resp = ec2.describe_instances(
        Filters=[
            {"Name": "tag:Name", "Values": [tag_value]},
            {"Name": "tag:Environment", "Values": [environment.value]},
            {"Name": "instance-state-name", "Values": ["running"]},
        ]
    )
    ids = [
        inst["InstanceId"]
        for reservation in resp.get("Reservations", [])
        for inst in reservation.get("Instances", [])
    ]
    return sorted(ids)


def resolve_vpc(ec2, vpc_id: str) -> Optional[str]:
    """Confirm an existing VPC before composing against it."""
    try:
        resp = ec2.describe_vpcs(VpcIds=[vpc_id])
    except ClientError as e:
        if "InvalidVpcID.NotFound" in str(e):
            raise NetworkLookupError(f"VPC {vpc_id} not found") from e
        raise
    vpcs = resp.get("Vpcs", [])
    if not vpcs:
        raise NetworkLookupError(f"VPC {vpc_id} not found")
    return vpcs[0].get("CidrBlock")
