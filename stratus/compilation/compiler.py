"""
Compiler: turns declared stacks into templates for a provisioning engine.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from stratus.core import Plan, Stack
from stratus.core.errors import StratusError


class _TemplateDumper(yaml.SafeDumper):
    """Write shared values in full; templates never use YAML anchors."""

    def ignore_aliases(self, data: Any) -> bool:
        return True


@dataclass
class CompiledTemplate:
    """
    A stack rendered for one provisioning engine.

    ``body`` is the template document; ``tags`` are applied to the engine's
    stack object rather than written into the template.
    """

    stack_name: str
    body: dict[str, Any]
    tags: dict[str, str] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(self.body, indent=2)

    def to_yaml(self) -> str:
        return yaml.dump(self.body, Dumper=_TemplateDumper, sort_keys=False)

    def render(self, format: str = "json") -> str:
        """Render the template as ``json`` or ``yaml``."""
        if format == "json":
            return self.to_json()
        if format == "yaml":
            return self.to_yaml()
        raise ValueError(f"Unsupported template format: {format}")

    def write(self, directory: str | Path, format: str = "json") -> Path:
        """Write the template to ``<directory>/<stack>.template.<format>``."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{self.stack_name}.template.{format}"
        path.write_text(self.render(format))
        return path


class Compiler(ABC):
    """
    Abstract compiler interface.

    Engine-specific compilers implement this interface to transform
    stratus stacks into deployable templates.
    """

    @abstractmethod
    def compile_stack(self, stack: Stack) -> CompiledTemplate:
        """
        Compile one stack.

        Raises:
            CompilationError: If the stack cannot be expressed for this engine
        """
        pass

    def compile(self, plan: Plan) -> list[CompiledTemplate]:
        """Compile every stack of a plan, in deploy order."""
        return [self.compile_stack(stack) for stack in plan.stacks]


class CompilationError(StratusError):
    """Raised when stack compilation fails."""
    pass
