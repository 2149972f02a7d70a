"""
Topology composition and host bootstrap generation for the WebSocket API.

Provides environment settings, the network plan, the bootstrap script
generator, traffic admission policies and the resource graph the CDK stack
is built from.
"""

from websocket_infra.config import Environment, EnvironmentSettings, settings_from_context

from websocket_infra.network import (
    NetworkSegment,
    NetworkTopology,
    PermissionEdge,
    build_topology,
)

from websocket_infra.bootstrap import BootstrapContext, BootstrapScriptGenerator

from websocket_infra.admission import (
    AffinityRouter,
    HealthCheckPolicy,
    StickinessPolicy,
    TargetBinding,
    TargetHealthTracker,
)

from websocket_infra.graph import ResourceGraph, ResourceKind, compose
