"""
Exception hierarchy for stack declaration, planning and deployment.

Plan-time errors block the whole plan and surface synchronously to the
caller. Deploy-time errors are scoped to the stack that raised them.
"""


class StratusError(Exception):
    """Base class for all stratus errors."""
    pass


class ConfigError(StratusError):
    """Raised when deployment configuration cannot be loaded or validated."""
    pass


class PlanError(StratusError):
    """Raised when a stack definition cannot be planned."""
    pass


class DuplicateStackName(PlanError):
    """Raised when a stack name is declared twice in one app."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Stack '{name}' is already declared")


class DuplicateExportKey(PlanError):
    """Raised when a stack exports the same key twice in one definition pass."""

    def __init__(self, stack: str, key: str):
        self.stack = stack
        self.key = key
        super().__init__(f"Stack '{stack}' already exports '{key}'")


class ImportCycle(PlanError):
    """Raised when stack imports form a directed cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Import cycle between stacks: {' -> '.join(cycle)}")


class AmbiguousExport(PlanError):
    """Raised when a bare import matches exports from more than one stack."""

    def __init__(self, key: str, producers: list[str], consumer: str):
        self.key = key
        self.producers = producers
        self.consumer = consumer
        super().__init__(
            f"Stack '{consumer}' imports '{key}', which is exported by "
            f"{', '.join(repr(p) for p in producers)}. "
            f"Import it with an explicit producer reference."
        )


class UnknownExport(PlanError):
    """Raised when an explicit reference names a producer that does not export the key."""

    def __init__(self, producer: str, key: str, consumer: str):
        self.producer = producer
        self.key = key
        self.consumer = consumer
        super().__init__(
            f"Stack '{consumer}' imports '{key}' from '{producer}', "
            f"but '{producer}' does not export it"
        )


class DeployError(StratusError):
    """Raised when a single stack fails to deploy."""

    def __init__(self, stack: str, message: str):
        self.stack = stack
        super().__init__(message)


class UnresolvedImport(DeployError):
    """Raised at deploy time when no stack has published an imported key."""

    def __init__(self, stack: str, key: str, producer: str | None = None):
        self.key = key
        self.producer = producer
        source = f" from '{producer}'" if producer else ""
        super().__init__(
            stack,
            f"Stack '{stack}' imports '{key}'{source}, but no value has been published"
        )


class ResourceCreationFailure(DeployError):
    """Raised when the provisioning backend fails to apply a stack."""

    def __init__(self, stack: str, reason: str):
        self.reason = reason
        super().__init__(stack, f"Failed to apply stack '{stack}': {reason}")
