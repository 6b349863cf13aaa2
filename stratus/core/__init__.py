"""
Core stratus functionality.

- Stack: resources, exports and imports of one deployable unit
- App: declares stacks and plans the dependency graph between them
- Deployer: resolves imports at deploy time and applies stacks in order
"""

from stratus.core.refs import Ref, DeferredValue, Attr
from stratus.core.stack import Stack, Resource, Export
from stratus.core.app import App, Plan, PlanDiff, StackChange
from stratus.core.dag import DAG
from stratus.core.deploy import (
    Backend,
    Deployer,
    DeploymentReport,
    ExportRegistry,
    InMemoryBackend,
    InMemoryExportRegistry,
)

__all__ = [
    "Ref",
    "DeferredValue",
    "Attr",
    "Stack",
    "Resource",
    "Export",
    "App",
    "Plan",
    "PlanDiff",
    "StackChange",
    "DAG",
    "Backend",
    "Deployer",
    "DeploymentReport",
    "ExportRegistry",
    "InMemoryBackend",
    "InMemoryExportRegistry",
]
