"""
The fixed topology: seven stacks wired together by named exports.

    NetworkInfraStack ──> WorkloadInfraStack ──> ServiceStack
            │                     │                   ^
            │                     └──> PipelineStack  │
            ├──> SecurityStack                        │
            └─────────────────────────────────────────┘
    SnsNotificationStack ─────────────────────────────┘
    ServiceResourcesStack

Example:
    from stratus.config import load_config
    from stratus.topology import build_app

    app = build_app(load_config("deploy.yaml"))
    plan = app.plan()
"""

import structlog

from stratus.config import DeploymentConfig
from stratus.core import App
from stratus.topology.network import NETWORK_STACK, declare_network_stack
from stratus.topology.workload import WORKLOAD_STACK, declare_workload_stack
from stratus.topology.security import SECURITY_STACK, declare_security_stack
from stratus.topology.notifications import NOTIFICATION_STACK, declare_notification_stack
from stratus.topology.service import (
    SERVICE_RESOURCES_STACK,
    SERVICE_STACK,
    declare_service_resources_stack,
    declare_service_stack,
)
from stratus.topology.pipeline import PIPELINE_STACK, declare_pipeline_stack

logger = structlog.get_logger(__name__)

STACK_BUILDERS = (
    declare_network_stack,
    declare_workload_stack,
    declare_security_stack,
    declare_notification_stack,
    declare_service_resources_stack,
    declare_service_stack,
    declare_pipeline_stack,
)

EXTERNAL_EXPORTS = (
    "CognitoUserPoolClientId",
    "CognitoUserPoolId",
    "KmsKeyArn",
    "ArtifactBucketArn",
    "CodeStarConnectionArn",
    "PipelineSnsArn",
)
"""Keys imported by the topology but published outside it"""


def build_app(config: DeploymentConfig) -> App:
    """Declare every stack of the topology for one environment."""
    app = App(name=config.name, environment=config.environment, tags=config.tags)
    for declare in STACK_BUILDERS:
        declare(app, config)
    logger.debug("topology_declared", app=config.name, stacks=len(app.list_stacks()))
    return app


__all__ = [
    "build_app",
    "STACK_BUILDERS",
    "EXTERNAL_EXPORTS",
    "NETWORK_STACK",
    "WORKLOAD_STACK",
    "SECURITY_STACK",
    "NOTIFICATION_STACK",
    "SERVICE_RESOURCES_STACK",
    "SERVICE_STACK",
    "PIPELINE_STACK",
]
