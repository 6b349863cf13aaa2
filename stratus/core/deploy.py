"""
Deploy-time resolution of cross-stack imports.

The Deployer walks a Plan in topological order. Before a stack is handed
to the provisioning backend, every import it declares is resolved against
the ExportRegistry of the target environment. A stack whose imports cannot
be resolved, or whose apply fails, is marked failed; stacks that depend on
it are skipped, and every unrelated stack still deploys.
"""

from typing import Any
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import structlog

from stratus.core.app import Plan
from stratus.core.errors import DeployError, ResourceCreationFailure, UnresolvedImport
from stratus.core.refs import Attr, DeferredValue, Ref, substitute
from stratus.core.stack import Stack

logger = structlog.get_logger(__name__)


class ExportRegistry(ABC):
    """
    Store of values published by deployed stacks in one environment.

    Lookups without a producer return the value of whichever stack most
    recently published the key.
    """

    @abstractmethod
    def publish(self, producer: str, key: str, value: Any) -> None:
        """Record ``key`` as published by ``producer``."""
        pass

    @abstractmethod
    def lookup(self, key: str, producer: str | None = None) -> Any:
        """
        Return the current value of an export.

        Raises:
            KeyError: If the key has not been published (by ``producer``)
        """
        pass

    @abstractmethod
    def withdraw(self, producer: str) -> None:
        """Forget every export published by ``producer``."""
        pass


class InMemoryExportRegistry(ExportRegistry):
    """
    Dictionary-backed export registry.

    Example:
        registry = InMemoryExportRegistry()
        registry.seed("KmsKeyArn", "arn:aws:kms:...")   # published outside the app
    """

    EXTERNAL_PRODUCER = "external"

    def __init__(self):
        # key -> {producer: value}, most recent publisher last
        self._exports: dict[str, dict[str, Any]] = {}

    def publish(self, producer: str, key: str, value: Any) -> None:
        published = self._exports.setdefault(key, {})
        published.pop(producer, None)
        published[producer] = value

    def seed(self, key: str, value: Any, producer: str = EXTERNAL_PRODUCER) -> None:
        """Publish a value that comes from outside the app."""
        self.publish(producer, key, value)

    def lookup(self, key: str, producer: str | None = None) -> Any:
        published = self._exports.get(key)
        if not published:
            raise KeyError(key)
        if producer is None:
            return next(reversed(published.values()))
        return published[producer]

    def withdraw(self, producer: str) -> None:
        for key in list(self._exports):
            self._exports[key].pop(producer, None)
            if not self._exports[key]:
                del self._exports[key]

    def as_dict(self) -> dict[str, Any]:
        """Current value per key."""
        return {key: next(reversed(values.values())) for key, values in self._exports.items()}


class Backend(ABC):
    """
    Provisioning engine interface.

    Backends translate a stack into real infrastructure. They receive the
    stack with its imports already resolved and return the concrete value
    of each export.
    """

    @abstractmethod
    def apply(self, stack: Stack, imports: dict[Ref, Any]) -> dict[str, Any]:
        """
        Create or update a stack in place.

        Args:
            stack: The stack to apply
            imports: Resolved value for every import of the stack

        Returns:
            Concrete value for each export key
        """
        pass

    @abstractmethod
    def destroy(self, stack: Stack) -> None:
        """Delete every resource of a stack."""
        pass

    def get_provider_name(self) -> str:
        return "unknown"


class InMemoryBackend(Backend):
    """
    Backend that records applied stacks instead of provisioning them.

    Resource attributes resolve to ``"<stack>/<logical_id>[.<attribute>]"``,
    which is enough to check wiring locally and in tests.
    """

    def __init__(self, fail_on: set[str] | None = None):
        self.fail_on = set(fail_on or ())
        self.deployed: dict[str, dict[str, dict[str, Any]]] = {}
        self.apply_count: dict[str, int] = {}

    def get_provider_name(self) -> str:
        return "memory"

    def apply(self, stack: Stack, imports: dict[Ref, Any]) -> dict[str, Any]:
        if stack.name in self.fail_on:
            raise RuntimeError(f"simulated failure applying '{stack.name}'")

        def resolve(token: DeferredValue | Attr) -> Any:
            if isinstance(token, DeferredValue):
                return imports[token.ref]
            return f"{stack.name}/{token}"

        self.deployed[stack.name] = {
            resource.logical_id: substitute(resource.properties, resolve)
            for resource in stack.resources
        }
        self.apply_count[stack.name] = self.apply_count.get(stack.name, 0) + 1

        return {key: substitute(export.value, resolve) for key, export in stack.exports.items()}

    def destroy(self, stack: Stack) -> None:
        self.deployed.pop(stack.name, None)


@dataclass
class DeploymentReport:
    """Outcome of a deploy or destroy run."""

    deployed: list[str] = field(default_factory=list)
    failed: dict[str, DeployError] = field(default_factory=dict)
    skipped: dict[str, list[str]] = field(default_factory=dict)
    """Per skipped stack: the failed stacks it depends on"""

    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not self.failed and not self.skipped

    def raise_for_failures(self) -> None:
        """Re-raise the first failure, if any."""
        for error in self.failed.values():
            raise error


class Deployer:
    """
    Deploys the stacks of a Plan in dependency order.

    Example:
        registry = InMemoryExportRegistry()
        deployer = Deployer(InMemoryBackend(), registry)
        report = deployer.deploy(app.plan())
        report.raise_for_failures()
    """

    def __init__(self, backend: Backend, registry: ExportRegistry):
        self.backend = backend
        self.registry = registry

    def deploy(self, plan: Plan, only: list[str] | None = None) -> DeploymentReport:
        """
        Deploy the stacks of a plan.

        Args:
            plan: Validated plan
            only: Optional subset of stacks; their producers are expected
                to be deployed already

        Returns:
            DeploymentReport with deployed, failed and skipped stacks
        """
        selected = set(only) if only is not None else set(plan.order)
        unknown = selected - set(plan.order)
        if unknown:
            raise ValueError(f"Unknown stacks: {', '.join(sorted(unknown))}")

        report = DeploymentReport()
        broken: set[str] = set()

        for name in plan.order:
            if name not in selected:
                continue

            blocked_by = [dep for dep in plan.dag.get_dependencies(name) if dep in broken]
            if blocked_by:
                report.skipped[name] = blocked_by
                broken.add(name)
                logger.warning("stack_skipped", stack=name, blocked_by=blocked_by)
                continue

            try:
                report.outputs[name] = self.deploy_stack(plan, name)
                report.deployed.append(name)
            except DeployError as e:
                report.failed[name] = e
                broken.add(name)
                logger.error("stack_failed", stack=name, error=str(e))

        logger.info(
            "deploy_finished",
            environment=plan.environment,
            deployed=len(report.deployed),
            failed=len(report.failed),
            skipped=len(report.skipped),
        )
        return report

    def deploy_stack(self, plan: Plan, name: str) -> dict[str, Any]:
        """
        Resolve imports, apply one stack and publish its exports.

        Raises:
            UnresolvedImport: If an import has no published value
            ResourceCreationFailure: If the backend fails
        """
        stack = plan.get_stack(name)
        imports = self.resolve_imports(plan, stack)

        logger.info("stack_deploying", stack=name, imports=len(imports), backend=self.backend.get_provider_name())
        try:
            outputs = self.backend.apply(stack, imports)
        except DeployError:
            raise
        except Exception as e:
            raise ResourceCreationFailure(name, str(e)) from e

        missing = [key for key in stack.exports if key not in outputs]
        if missing:
            raise ResourceCreationFailure(name, f"backend returned no value for exports {missing}")
        for key in stack.exports:
            self.registry.publish(name, key, outputs[key])

        logger.info("stack_deployed", stack=name, exports=sorted(stack.exports))
        return outputs

    def resolve_imports(self, plan: Plan, stack: Stack) -> dict[Ref, Any]:
        """Look up the current value of every import of ``stack``."""
        resolved: dict[Ref, Any] = {}
        for ref in stack.imports:
            producer = plan.producer_of(stack.name, ref)
            try:
                resolved[ref] = self.registry.lookup(ref.key, producer)
            except KeyError:
                raise UnresolvedImport(stack.name, ref.key, producer) from None
        return resolved

    def destroy(self, plan: Plan) -> DeploymentReport:
        """
        Tear down every stack in reverse dependency order.

        When a stack cannot be removed, the stacks it imports from stay in
        place (they are reported as skipped); unrelated stacks are still
        torn down.
        """
        report = DeploymentReport()
        kept: dict[str, list[str]] = {}

        for name in plan.teardown_order():
            if name in kept:
                report.skipped[name] = kept[name]
                logger.warning("stack_destroy_skipped", stack=name, kept_for=kept[name])
                continue

            stack = plan.get_stack(name)
            try:
                self.backend.destroy(stack)
            except Exception as e:
                report.failed[name] = ResourceCreationFailure(name, f"destroy failed: {e}")
                logger.error("stack_destroy_failed", stack=name, error=str(e))
                for producer in plan.dag.get_transitive_dependencies(name):
                    kept.setdefault(producer, []).append(name)
                continue

            self.registry.withdraw(name)
            report.deployed.append(name)
            logger.info("stack_destroyed", stack=name)
        return report
