"""
Pipeline run errors.

Every error here is fatal to the run that raised it. Runs never retry;
a failed run has to be started again from Source.
"""

from stratus.core.errors import StratusError


class PipelineError(StratusError):
    """Base class for errors raised while a pipeline run executes."""

    stage: str | None = None
    """Stage in which the error was raised, set by the run"""


class InvalidTransition(PipelineError):
    """Raised when an operation is not allowed in the run's current state."""
    pass


class ConcurrentRunError(PipelineError):
    """Raised when a run is started while another run of the pipeline is active."""

    def __init__(self, pipeline: str, active_run: str):
        self.pipeline = pipeline
        self.active_run = active_run
        super().__init__(
            f"Pipeline '{pipeline}' already has an active run ({active_run}); "
            f"concurrent runs are not supported"
        )


class SourceFailure(PipelineError):
    """Raised when the source action cannot fetch the configured branch."""
    pass


class BuildStepFailure(PipelineError):
    """Raised when a build step exits non-zero."""

    def __init__(self, step: str, message: str):
        self.step = step
        super().__init__(f"Build step '{step}' failed: {message}")


class SecretDecryptFailure(BuildStepFailure):
    """Raised when the environment secret blob cannot be decrypted."""

    def __init__(self, message: str):
        super().__init__("decrypt_secrets", message)


class RegistryAuthFailure(BuildStepFailure):
    """Raised when the image registry rejects authentication."""

    def __init__(self, message: str):
        super().__init__("registry_login", message)


class VersionTagParseFailure(BuildStepFailure):
    """Raised when the latest image tag does not end in a numeric suffix."""

    def __init__(self, tag: str):
        self.tag = tag
        super().__init__("compute_tag", f"cannot increment image tag '{tag}'")


class ImagePushFailure(BuildStepFailure):
    """Raised when pushing the image to the registry fails."""

    def __init__(self, message: str):
        super().__init__("push", message)


class ApprovalRejected(PipelineError):
    """Raised when the manual approval is rejected or abandoned."""

    def __init__(self, approver: str | None = None, comment: str = ""):
        self.approver = approver
        self.comment = comment
        who = f" by {approver}" if approver else ""
        why = f": {comment}" if comment else ""
        super().__init__(f"Approval rejected{who}{why}")


class DeployTimeout(PipelineError):
    """Raised when the rolling update does not finish within the deployment timeout."""

    def __init__(self, service: str, timeout_minutes: int):
        self.service = service
        self.timeout_minutes = timeout_minutes
        super().__init__(f"Deployment of '{service}' did not complete within {timeout_minutes} minutes")


class DeployHealthCheckFailure(PipelineError):
    """Raised when the new revision fails its health checks during rollout."""

    def __init__(self, service: str, reason: str):
        self.service = service
        self.reason = reason
        super().__init__(f"Deployment of '{service}' is unhealthy: {reason}")
