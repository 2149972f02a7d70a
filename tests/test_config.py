"""Environment selection and derived names."""

import pytest

from websocket_infra.config import (
    DEFAULT_INSTANCE_TYPE,
    Environment,
    EnvironmentSettings,
    settings_from_context,
)
from websocket_infra.exceptions import ConfigurationError


def _context(values):
    return values.get


def test_parse_defaults_to_dev():
    assert Environment.parse(None) is Environment.DEV
    assert Environment.parse("") is Environment.DEV
    assert Environment.parse("  PROD ") is Environment.PROD


def test_parse_rejects_unknown_environment():
    with pytest.raises(ConfigurationError, match="staging"):
        Environment.parse("staging")


def test_names_follow_environment():
    settings = EnvironmentSettings(environment=Environment.PROD)
    assert settings.stack_id == "WebSocketApiStack-prod"
    assert settings.stack_name == "websocket-api-prod"
    assert settings.resource_name("alb") == "websocket-api-alb-prod"
    assert settings.export_name("ALB-DNS") == "WebSocketApi-ALB-DNS-prod"
    assert settings.tags == {
        "Environment": "prod",
        "Project": "WebSocketApi",
        "ManagedBy": "CDK",
    }


def test_runtime_mode():
    assert EnvironmentSettings(environment=Environment.DEV).runtime_mode == "Development"
    assert EnvironmentSettings(environment=Environment.PROD).runtime_mode == "Production"


def test_settings_from_empty_context():
    settings = settings_from_context(_context({}))
    assert settings.environment is Environment.DEV
    assert settings.instance_type == DEFAULT_INSTANCE_TYPE
    assert settings.create_vpc is True
    assert settings.vpc_id is None
    assert settings.enable_monitoring_agent is False


def test_settings_from_context_with_existing_vpc():
    settings = settings_from_context(_context({
        "environment": "prod",
        "vpcId": "vpc-0123",
        "instanceType": "t3.medium",
        "enableMonitoringAgent": "true",
    }))
    assert settings.environment is Environment.PROD
    assert settings.create_vpc is False
    assert settings.vpc_id == "vpc-0123"
    assert settings.instance_type == "t3.medium"
    assert settings.enable_monitoring_agent is True


def test_vpc_id_ignored_when_create_vpc_forced():
    settings = settings_from_context(_context({"vpcId": "vpc-0123", "createVpc": True}))
    assert settings.create_vpc is True


def test_create_vpc_false_requires_vpc_id():
    with pytest.raises(ConfigurationError):
        settings_from_context(_context({"createVpc": "false"}))
