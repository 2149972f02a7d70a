"""
Command line helpers for the WebSocket API infrastructure.

Usage:
    python -m websocket_infra.cli render-bootstrap --environment prod
    python -m websocket_infra.cli describe --environment dev
    python -m websocket_infra.cli outputs --environment dev --region us-east-1
    python -m websocket_infra.cli check-vpc vpc-0abc --region us-east-1
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

import boto3

from websocket_infra.bootstrap import BootstrapScriptGenerator
from websocket_infra.config import DEFAULT_REGION, Environment, EnvironmentSettings
from websocket_infra.deployment import fetch_stack_outputs, find_instances_by_tag, resolve_vpc
from websocket_infra.exceptions import InfraError
from websocket_infra.graph import compose

logger = logging.getLogger("websocket_infra")


def _settings(args: argparse.Namespace) -> EnvironmentSettings:
    return EnvironmentSettings(environment=Environment.parse(args.environment))


def cmd_render_bootstrap(args: argparse.Namespace) -> int:
    sys.stdout.write(BootstrapScriptGenerator.for_settings(_settings(args)).render())
    return 0


def cmd_describe(args: argparse.Namespace) -> int:
    graph = compose(_settings(args))
    print(json.dumps(graph.describe(), indent=2))
    return 0


def cmd_outputs(args: argparse.Namespace) -> int:
    settings = _settings(args)
    session = boto3.Session(region_name=args.region)
    outputs = fetch_stack_outputs(session.client("cloudformation"), settings.stack_name)
    instances = find_instances_by_tag(session.client("ec2"), settings.environment)
    logger.info("Found %d running instance(s) tagged %s", len(instances), outputs.instance_tag)

    payload = outputs.model_dump()
    payload["running_instances"] = instances
    print(json.dumps(payload, indent=2))
    return 0


def cmd_check_vpc(args: argparse.Namespace) -> int:
    ec2 = boto3.client("ec2", region_name=args.region)
    cidr = resolve_vpc(ec2, args.vpc_id)
    print(f"{args.vpc_id} {cidr}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="WebSocket API infrastructure helpers")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    def _env(p: argparse.ArgumentParser) -> None:
        p.add_argument("-e", "--environment", default=os.getenv("ENVIRONMENT", "dev"),
                       help="dev or prod (default: dev)")

    p = sub.add_parser("render-bootstrap", help="Print the instance user data script")
    _env(p)
    p.set_defaults(func=cmd_render_bootstrap)

    p = sub.add_parser("describe", help="Print the resource graph in build order")
    _env(p)
    p.set_defaults(func=cmd_describe)

    region = os.getenv("AWS_REGION", os.getenv("CDK_DEFAULT_REGION", DEFAULT_REGION))

    p = sub.add_parser("outputs", help="Show outputs and tagged instances of a deployed stack")
    _env(p)
    p.add_argument("--region", default=region)
    p.set_defaults(func=cmd_outputs)

    p = sub.add_parser("check-vpc", help="Verify an existing VPC before reusing it")
    p.add_argument("vpc_id")
    p.add_argument("--region", default=region)
    p.set_defaults(func=cmd_check_vpc)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
    )
    try:
        return args.func(args)
    except InfraError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
