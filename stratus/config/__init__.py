"""
Deployment configuration.

Plain pydantic models, one per stack, plus the root DeploymentConfig that
is loaded from YAML.
"""

from stratus.config.infra import (
    AccountConfig,
    NetworkConfig,
    WorkloadConfig,
    SecurityConfig,
    NotificationConfig,
)
from stratus.config.service import (
    ServiceResourcesConfig,
    ServiceConfig,
    PipelineConfig,
)
from stratus.config.deployment import DeploymentConfig, load_config, config_from_dict

__all__ = [
    # Shared infrastructure
    "AccountConfig",
    "NetworkConfig",
    "WorkloadConfig",
    "SecurityConfig",
    "NotificationConfig",
    # Service
    "ServiceResourcesConfig",
    "ServiceConfig",
    "PipelineConfig",
    # Root
    "DeploymentConfig",
    "load_config",
    "config_from_dict",
]
