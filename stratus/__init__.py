"""
stratus: infrastructure-as-code for a containerized web service.

stratus declares the service's infrastructure as a set of stacks that
publish and consume named exports, checks the cross-stack wiring before
anything is deployed, and drives the service's delivery pipeline
(Source -> Build -> Approval -> Deploy).

Example:
    from stratus import build_app, load_config

    app = build_app(load_config("deploy.yaml"))
    plan = app.plan()
    print(plan.order)
"""

__version__ = "0.1.0"

from stratus.core import (
    App,
    Deployer,
    InMemoryBackend,
    InMemoryExportRegistry,
    Plan,
    Ref,
    Stack,
)
from stratus.core.errors import StratusError
from stratus.config import DeploymentConfig, load_config
from stratus.topology import build_app

__all__ = [
    "__version__",
    "App",
    "Deployer",
    "InMemoryBackend",
    "InMemoryExportRegistry",
    "Plan",
    "Ref",
    "Stack",
    "StratusError",
    "DeploymentConfig",
    "load_config",
    "build_app",
]
