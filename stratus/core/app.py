"""
App: the set of stacks declared for one deployment environment.

The App is where stacks are declared and where the cross-stack wiring is
checked. ``App.plan()`` turns the declared imports and exports into a
dependency graph and fails fast on anything that would make the deploy
order ambiguous.
"""

from typing import Any
from dataclasses import dataclass, field

import structlog

from stratus.core.dag import DAG
from stratus.core.errors import (
    AmbiguousExport,
    DuplicateStackName,
    ImportCycle,
    UnknownExport,
)
from stratus.core.refs import DeferredValue, Ref
from stratus.core.stack import Export, Resource, Stack

logger = structlog.get_logger(__name__)


class App:
    """
    Registry of stacks for one environment.

    Example:
        app = App(name="demo", environment="production")

        network = app.declare_stack("NetworkInfraStack")
        vpc = network.resource("PrimaryVpc", "AWS::EC2::VPC", {...})
        app.export(network, "PrimaryVpcId", vpc.attr("VpcId"))

        service = app.declare_stack("ServiceStack")
        service.resource("TargetGroup", "AWS::ElasticLoadBalancingV2::TargetGroup", {
            "VpcId": app.import_value("PrimaryVpcId"),
        })

        plan = app.plan()
        plan.order  # ['NetworkInfraStack', 'ServiceStack']
    """

    def __init__(
        self,
        name: str = "stratus",
        environment: str = "default",
        tags: dict[str, str] | None = None,
    ):
        self.name = name
        self.environment = environment
        self.tags = dict(tags or {})
        self._stacks: dict[str, Stack] = {}

    def declare_stack(
        self,
        name: str,
        resources: list[Resource] | None = None,
        config: dict[str, Any] | None = None,
        tags: dict[str, str] | None = None,
        description: str = "",
    ) -> Stack:
        """
        Register a stack.

        Args:
            name: Unique stack name
            resources: Optional resources to declare up front
            config: Stack configuration, kept for reference
            tags: Tags applied on top of the app-wide tags
            description: Human readable description

        Returns:
            The Stack handle used for all further declarations

        Raises:
            DuplicateStackName: If a stack with this name already exists
        """
        if name in self._stacks:
            raise DuplicateStackName(name)

        stack = Stack(
            name=name,
            config=config,
            tags={**self.tags, **(tags or {})},
            description=description,
        )
        for resource in resources or []:
            stack.resource(
                resource.logical_id,
                resource.type,
                resource.properties,
                depends_on=resource.depends_on,
            )

        self._stacks[name] = stack
        logger.debug("stack_declared", stack=name, environment=self.environment)
        return stack

    def export(self, stack: Stack, key: str, value: Any, description: str = "") -> Export:
        """Publish a named value from ``stack``. See Stack.export."""
        return stack.export(key, value, description=description)

    def import_value(self, key: str, producer: str | None = None) -> DeferredValue:
        """
        Create a deferred import of ``key``.

        The import is attached to whichever stack the value is declared on.
        """
        return DeferredValue(Ref(key, producer=producer))

    def get_stack(self, name: str) -> Stack | None:
        """Get stack by name."""
        return self._stacks.get(name)

    def list_stacks(self) -> list[str]:
        """List all stack names in declaration order."""
        return list(self._stacks.keys())

    @property
    def stacks(self) -> list[Stack]:
        return list(self._stacks.values())

    def plan(self) -> 'Plan':
        """
        Build the dependency graph and validate the cross-stack wiring.

        Nothing is applied. Any error here blocks the whole plan.

        Raises:
            AmbiguousExport: A bare import matches more than one producer
            UnknownExport: An explicit producer does not export the key
            ImportCycle: Imports form a directed cycle
        """
        dag = DAG()
        for stack in self._stacks.values():
            dag.add_node(stack.name, stack)

        producers_by_key: dict[str, list[str]] = {}
        for stack in self._stacks.values():
            for key in stack.exports:
                producers_by_key.setdefault(key, []).append(stack.name)

        bindings: dict[str, dict[Ref, str | None]] = {}
        external: dict[str, list[Ref]] = {}

        for stack in self._stacks.values():
            stack_bindings: dict[Ref, str | None] = {}
            for ref in stack.imports:
                producer = self._bind(stack, ref, producers_by_key)
                stack_bindings[ref] = producer
                if producer is None or producer not in self._stacks:
                    external.setdefault(stack.name, []).append(ref)
                else:
                    dag.add_edge(producer, stack.name, key=ref.key)
            bindings[stack.name] = stack_bindings

        cycle = dag.detect_cycles()
        if cycle:
            raise ImportCycle(cycle)

        plan = Plan(
            app_name=self.name,
            environment=self.environment,
            dag=dag,
            order=dag.topological_sort(),
            levels=dag.get_execution_levels(),
            bindings=bindings,
            external_imports=external,
            fingerprints={s.name: s.fingerprint() for s in self._stacks.values()},
        )
        logger.info(
            "plan_built",
            app=self.name,
            environment=self.environment,
            stacks=len(plan.order),
            edges=len(dag.edges),
            external_imports=sum(len(refs) for refs in external.values()),
        )
        return plan

    def _bind(self, stack: Stack, ref: Ref, producers_by_key: dict[str, list[str]]) -> str | None:
        """Pick the producing stack for one import, or None for an external import."""
        if ref.producer is not None:
            if ref.producer in self._stacks and ref.key not in self._stacks[ref.producer].exports:
                raise UnknownExport(ref.producer, ref.key, stack.name)
            return ref.producer

        producers = producers_by_key.get(ref.key, [])
        if len(producers) > 1:
            raise AmbiguousExport(ref.key, producers, stack.name)
        return producers[0] if producers else None

    def __repr__(self) -> str:
        return f"App({self.name}, environment={self.environment}, stacks={len(self._stacks)})"


@dataclass
class StackChange:
    """Export/import changes of one stack between two plans."""

    stack: str
    added_exports: list[str] = field(default_factory=list)
    removed_exports: list[str] = field(default_factory=list)
    changed_exports: list[str] = field(default_factory=list)
    added_imports: list[str] = field(default_factory=list)
    removed_imports: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return any([
            self.added_exports,
            self.removed_exports,
            self.changed_exports,
            self.added_imports,
            self.removed_imports,
        ])


@dataclass
class PlanDiff:
    """Differences in the cross-stack contract between two plans."""

    added_stacks: list[str] = field(default_factory=list)
    removed_stacks: list[str] = field(default_factory=list)
    changes: list[StackChange] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added_stacks or self.removed_stacks or self.changes)


@dataclass
class Plan:
    """
    The validated deployment graph of an App.

    ``order`` is a deploy order, ``levels`` groups stacks that can be
    deployed in parallel. stratus only emits the partial order; scheduling
    is left to the deployer or external orchestrator.
    """

    app_name: str
    environment: str
    dag: DAG
    order: list[str]
    levels: list[list[str]]
    bindings: dict[str, dict[Ref, str | None]]
    """Per stack: import -> producing stack (None when external)"""

    external_imports: dict[str, list[Ref]] = field(default_factory=dict)
    """Per stack: imports not satisfied by any stack in this app"""

    fingerprints: dict[str, dict[str, Any]] = field(default_factory=dict)

    def get_stack(self, name: str) -> Stack:
        return self.dag.nodes[name].stack

    @property
    def stacks(self) -> list[Stack]:
        return [self.get_stack(name) for name in self.order]

    def producer_of(self, stack: str, ref: Ref) -> str | None:
        """Producing stack bound to an import of ``stack``."""
        return self.bindings.get(stack, {}).get(ref, ref.producer)

    def teardown_order(self) -> list[str]:
        return list(reversed(self.order))

    def snapshot(self) -> dict[str, Any]:
        """JSON-serializable summary used to diff against later plans."""
        return {
            "app": self.app_name,
            "environment": self.environment,
            "order": list(self.order),
            "stacks": {name: self.fingerprints[name] for name in self.order},
        }

    def diff(self, previous: 'Plan | dict[str, Any] | None') -> PlanDiff:
        """
        Compare this plan's exports and imports with a previous plan.

        Args:
            previous: Earlier Plan or its snapshot(). None means nothing deployed.
        """
        if previous is None:
            return PlanDiff(added_stacks=list(self.order))

        before = previous.snapshot() if isinstance(previous, Plan) else previous
        before_stacks: dict[str, Any] = before.get("stacks", {})
        after_stacks = self.snapshot()["stacks"]

        result = PlanDiff(
            added_stacks=[name for name in after_stacks if name not in before_stacks],
            removed_stacks=[name for name in before_stacks if name not in after_stacks],
        )

        for name, after in after_stacks.items():
            if name not in before_stacks:
                continue
            old = before_stacks[name]
            old_exports, new_exports = old.get("exports", {}), after["exports"]
            old_imports, new_imports = set(old.get("imports", [])), set(after["imports"])

            change = StackChange(
                stack=name,
                added_exports=sorted(set(new_exports) - set(old_exports)),
                removed_exports=sorted(set(old_exports) - set(new_exports)),
                changed_exports=sorted(
                    key for key in set(new_exports) & set(old_exports)
                    if new_exports[key] != old_exports[key]
                ),
                added_imports=sorted(new_imports - old_imports),
                removed_imports=sorted(old_imports - new_imports),
            )
            if change.has_changes:
                result.changes.append(change)

        return result

    def visualize(self) -> str:
        """Generate a text view of the deploy order and wiring."""
        lines = [f"App: {self.app_name} ({self.environment})", "=" * 50, ""]

        lines.append("Deploy levels:")
        for i, level in enumerate(self.levels):
            lines.append(f"  {i}: {', '.join(level)}")
        lines.append("")

        lines.append("Dependencies:")
        for edge in self.dag.edges:
            lines.append(f"  {edge.producer} -> {edge.consumer} (via {', '.join(edge.keys)})")

        if self.external_imports:
            lines.append("")
            lines.append("External imports:")
            for stack, refs in self.external_imports.items():
                lines.append(f"  {stack}: {', '.join(str(r) for r in refs)}")

        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"Plan({self.app_name}, stacks={len(self.order)}, levels={len(self.levels)})"
