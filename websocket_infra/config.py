from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from websocket_infra.exceptions import ConfigurationError

# naming
PROJECT_NAME = "WebSocketApi"
RESOURCE_PREFIX = "websocket-api"
SERVICE_NAME = "websocketapi"
DISCOVERY_TAG = "WebSocketApi"

# host layout
APP_DIR = "/var/www/websocketapi"
APP_BINARY = f"{APP_DIR}/WebSocketApi.dll"
APP_USER = "www-data"
APP_PORT = 5000
LISTEN_URL = f"http://0.0.0.0:{APP_PORT}"
BOOTSTRAP_LOG_PATH = "/var/log/user-data.log"
RUNTIME_CHANNEL = "8.0"
RUNTIME_INSTALL_DIR = "/usr/share/dotnet"

# traffic
HTTP_PORT = 80
HTTPS_PORT = 443

# compute
DEFAULT_INSTANCE_TYPE = "t3.small"
MACHINE_IMAGE_PARAMETER = (
    "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id"
)
ROOT_DEVICE_NAME = "/dev/sda1"
ROOT_VOLUME_GIB = 20

# network
DEFAULT_VPC_CIDR = "10.0.0.0/16"
SUBNET_CIDR_MASK = 24
REDUNDANCY_FACTOR = 2  # availability zones
NAT_GATEWAYS = 1

# artifact store
ARTIFACT_EXPIRATION_DAYS = 30

DEFAULT_REGION = "us-east-1"


class Environment(str, Enum):
    DEV = "dev"
    PROD = "prod"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Environment":
        """Resolve an environment identifier; empty means ``dev``."""
        if value is None or not str(value).strip():
            return cls.DEV
        normalized = str(value).strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            allowed = ", ".join(e.value for e in cls)
            raise ConfigurationError(
                f"Unknown environment {value!r}; expected one of: {allowed}"
            ) from None


DEFAULT_ENVIRONMENT = Environment.DEV


class EnvironmentSettings(BaseModel):
    """Every value that varies between provisioning runs."""

    model_config = ConfigDict(frozen=True)

    environment: Environment = DEFAULT_ENVIRONMENT
    instance_type: str = DEFAULT_INSTANCE_TYPE
    vpc_cidr: str = DEFAULT_VPC_CIDR
    create_vpc: bool = True
    vpc_id: Optional[str] = None
    deployer_role_arn: Optional[str] = Field(
        default=None,
        description="Role of the external pipeline allowed to upload artifacts",
    )
    enable_monitoring_agent: bool = False

    @property
    def name(self) -> str:
        return self.environment.value

    @property
    def runtime_mode(self) -> str:
        return "Production" if self.environment is Environment.PROD else "Development"

    @property
    def stack_id(self) -> str:
        return f"{PROJECT_NAME}Stack-{self.name}"

    @property
    def stack_name(self) -> str:
        return f"{RESOURCE_PREFIX}-{self.name}"

    @property
    def stack_description(self) -> str:
        return f"WebSocket API infrastructure for {self.name} environment"

    @property
    def tags(self) -> Dict[str, str]:
        return {
            "Environment": self.name,
            "Project": PROJECT_NAME,
            "ManagedBy": "CDK",
        }

    def resource_name(self, kind: str) -> str:
        return f"{RESOURCE_PREFIX}-{kind}-{self.name}"

    def export_name(self, key: str) -> str:
        return f"{PROJECT_NAME}-{key}-{self.name}"


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def settings_from_context(get_context: Callable[[str], Any]) -> EnvironmentSettings:
    """
    Build settings from CDK context values.

    *get_context* is normally ``app.node.try_get_context``; it returns None for
    keys that were not supplied.  Recognised keys:
      - environment            dev | prod (default dev)
      - instanceType           e.g. t3.medium
      - vpcId                  reuse an existing VPC
      - createVpc              false together with vpcId
      - deployerRoleArn        role granted upload access to the bucket
      - enableMonitoringAgent  attach CloudWatchAgentServerPolicy
    """
    environment = Environment.parse(get_context("environment"))
    vpc_id = get_context("vpcId") or None
    create_vpc = get_context("createVpc")
    if create_vpc is None:
        create_vpc = vpc_id is None
    create_vpc = _as_bool(create_vpc)
    if not create_vpc and not vpc_id:
        raise ConfigurationError("createVpc is false but no vpcId was supplied")
    monitoring = get_context("enableMonitoringAgent")

    return EnvironmentSettings(
        environment=environment,
        instance_type=get_context("instanceType") or DEFAULT_INSTANCE_TYPE,
        create_vpc=create_vpc,
        vpc_id=vpc_id,
        deployer_role_arn=get_context("deployerRoleArn") or None,
        enable_monitoring_agent=_as_bool(monitoring) if monitoring is not None else False,
    )
