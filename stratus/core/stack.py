"""
Stack: an independently deployable unit of infrastructure.

A Stack owns an ordered set of resources, publishes named exports and
records the imports it consumes. Resources are attached through the
explicit stack handle; there is no ambient "current stack".
"""

from typing import Any
from dataclasses import dataclass, field

from stratus.core.errors import DuplicateExportKey
from stratus.core.refs import Attr, DeferredValue, Ref, iter_tokens


@dataclass
class Resource:
    """
    A declared resource. Type and properties are opaque to stratus and are
    handed to the provisioning backend unchanged (apart from token
    resolution).
    """

    logical_id: str
    """Identifier of the resource within its stack"""

    type: str
    """Provider resource type, e.g. AWS::EC2::VPC"""

    properties: dict[str, Any] = field(default_factory=dict)
    """Resource configuration payload"""

    depends_on: list[str] = field(default_factory=list)
    """Logical ids of resources in the same stack this one waits for"""

    def attr(self, attribute: str | None = None) -> Attr:
        """Reference an attribute of this resource (None for its id)."""
        return Attr(self.logical_id, attribute)

    @property
    def ref(self) -> Attr:
        return Attr(self.logical_id)


@dataclass
class Export:
    """A named value published by a stack."""

    stack: str
    key: str
    value: Any
    description: str = ""


class Stack:
    """
    Container for the resources of one deployable unit.

    Example:
        network = app.declare_stack("NetworkInfraStack")

        vpc = network.resource("PrimaryVpc", "AWS::EC2::VPC", {
            "CidrBlock": "10.0.0.0/16",
        })
        network.export("PrimaryVpcId", vpc.attr("VpcId"))

        workload = app.declare_stack("WorkloadInfraStack")
        workload.resource("TargetGroup", "AWS::ElasticLoadBalancingV2::TargetGroup", {
            "VpcId": workload.import_value("PrimaryVpcId"),
        })
    """

    def __init__(
        self,
        name: str,
        config: dict[str, Any] | None = None,
        tags: dict[str, str] | None = None,
        description: str = "",
    ):
        self.name = name
        self.config = dict(config or {})
        self.tags = dict(tags or {})
        self.description = description
        self._resources: dict[str, Resource] = {}
        self._exports: dict[str, Export] = {}
        self._imports: list[Ref] = []

    def resource(
        self,
        logical_id: str,
        type: str,
        properties: dict[str, Any] | None = None,
        depends_on: list[str] | None = None,
    ) -> Resource:
        """
        Declare a resource in this stack.

        Any DeferredValue found in ``properties`` is recorded as an import
        of this stack.

        Raises:
            ValueError: If the logical id is already used in this stack
        """
        if logical_id in self._resources:
            raise ValueError(f"Resource '{logical_id}' already declared in stack '{self.name}'")

        properties = dict(properties or {})
        self._record_imports(properties)

        resource = Resource(
            logical_id=logical_id,
            type=type,
            properties=properties,
            depends_on=list(depends_on or []),
        )
        self._resources[logical_id] = resource
        return resource

    def export(self, key: str, value: Any, description: str = "") -> Export:
        """
        Publish a named value.

        Raises:
            DuplicateExportKey: If this stack already exports ``key``
        """
        if key in self._exports:
            raise DuplicateExportKey(self.name, key)

        self._record_imports(value)
        export = Export(stack=self.name, key=key, value=value, description=description)
        self._exports[key] = export
        return export

    def import_value(self, key: str | Ref, producer: str | None = None) -> DeferredValue:
        """
        Import a value exported by another stack.

        Args:
            key: Export key, or a Ref
            producer: Optional producing stack, pins the import to one exporter

        Returns:
            DeferredValue to place in resource properties or exports
        """
        ref = key if isinstance(key, Ref) else Ref(key, producer=producer)
        self._add_import(ref)
        return DeferredValue(ref)

    def add_tags(self, **tags: str) -> None:
        """Add tags applied to every resource of the stack."""
        self.tags.update(tags)

    def _record_imports(self, value: Any) -> None:
        for token in iter_tokens(value):
            if isinstance(token, DeferredValue):
                self._add_import(token.ref)

    def _add_import(self, ref: Ref) -> None:
        if ref not in self._imports:
            self._imports.append(ref)

    @property
    def resources(self) -> list[Resource]:
        return list(self._resources.values())

    @property
    def exports(self) -> dict[str, Export]:
        return dict(self._exports)

    @property
    def imports(self) -> list[Ref]:
        return list(self._imports)

    def get_resource(self, logical_id: str) -> Resource | None:
        """Get resource by logical id."""
        return self._resources.get(logical_id)

    def fingerprint(self) -> dict[str, Any]:
        """
        Stable description of this stack's cross-stack contract.

        Used to compare plans: two definitions with the same fingerprint
        produce no export/import changes.
        """
        return {
            "exports": {key: repr(export.value) for key, export in sorted(self._exports.items())},
            "imports": sorted(str(ref) for ref in self._imports),
        }

    def __repr__(self) -> str:
        return (
            f"Stack({self.name}, resources={len(self._resources)}, "
            f"exports={len(self._exports)}, imports={len(self._imports)})"
        )
