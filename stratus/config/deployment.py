"""
Root deployment configuration and YAML loading.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from stratus.config.infra import (
    AccountConfig,
    NetworkConfig,
    NotificationConfig,
    SecurityConfig,
    WorkloadConfig,
)
from stratus.config.service import PipelineConfig, ServiceConfig, ServiceResourcesConfig
from stratus.core.errors import ConfigError

ENVIRONMENT_VARIABLE = "STRATUS_ENVIRONMENT"


class DeploymentConfig(BaseModel):
    """
    Everything needed to declare the topology of one environment.

    Example:
        config = DeploymentConfig(
            name="demo",
            environment="production",
            account=AccountConfig(account_id="123456789012"),
            service_resources=ServiceResourcesConfig(ecr_repo_name="demo-service-ecr-repo"),
        )
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="demo", description="Application name")
    environment: str = Field(default="default", description="Deployment environment")
    account: AccountConfig = Field(default_factory=AccountConfig, description="Target account")
    tags: dict[str, str] = Field(
        default_factory=lambda: {"environment-type": "Demo"}, description="Tags applied to every stack"
    )
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    workload: WorkloadConfig = Field(default_factory=WorkloadConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    service_resources: ServiceResourcesConfig
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)

    @property
    def source_repository(self) -> str:
        return self.pipeline.repository or self.service_resources.ecr_repo_name


def load_config(path: str | Path) -> DeploymentConfig:
    """
    Load a deployment configuration from a YAML file.

    The ``STRATUS_ENVIRONMENT`` environment variable, when set, overrides
    the ``environment`` field of the file.

    Raises:
        ConfigError: If the file cannot be read, parsed or validated
    """
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    return config_from_dict(data, source=str(path))


def config_from_dict(data: dict[str, Any], source: str = "<dict>") -> DeploymentConfig:
    """Validate a configuration mapping, applying the environment override."""
    data = dict(data)
    override = os.environ.get(ENVIRONMENT_VARIABLE)
    if override:
        data["environment"] = override

    try:
        return DeploymentConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {source}:\n{e}") from e
