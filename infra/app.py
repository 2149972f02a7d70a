#!/usr/bin/env python3
"""
AWS CDK entry point.

Provisions, per environment (``-c environment=dev|prod``, default dev):
  - VPC with public/private subnets (or an existing VPC via ``-c vpcId=...``)
  - S3 bucket for deployment artifacts
  - IAM role for the EC2 instance
  - EC2 instance running the WebSocket API behind nginx
  - Application Load Balancer with sticky sessions
"""

import logging
import os

import aws_cdk as cdk

from stacks.websocket_api_stack import WebSocketApiStack
from websocket_infra.config import DEFAULT_REGION, settings_from_context

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger("infra")

app = cdk.App()

settings = settings_from_context(app.node.try_get_context)
logger.info("Synthesizing %s for environment %s", settings.stack_name, settings.name)

WebSocketApiStack(
    app,
    settings.stack_id,
    settings=settings,
    stack_name=settings.stack_name,
    description=settings.stack_description,
    env=cdk.Environment(
        account=os.getenv("CDK_DEFAULT_ACCOUNT"),
        region=os.getenv("CDK_DEFAULT_REGION") or DEFAULT_REGION,
    ),
    tags=settings.tags,
)

app.synth()
