"""
Pipeline actions.

Each stage runs exactly one action. An action receives the artifact of the
previous stage and returns the files of its own output artifact (or None
when the stage produces no artifact, like Approval).
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from stratus.pipeline.artifacts import Artifact
from stratus.pipeline.errors import PipelineError
from stratus.pipeline.services import ComputeService, SourceConnection

IMAGE_DEFINITIONS_FILE = "imagedefinitions.json"
"""Fixed name of the deployment descriptor written by the build stage"""

DEFAULT_DEPLOY_TIMEOUT = timedelta(minutes=60)


@dataclass
class ActionContext:
    """What an action gets to see of its run."""

    pipeline: str
    run_id: str
    stage: str
    input: Artifact | None = None
    logger: Any = None


@dataclass
class ActionOutput:
    """Files and metadata an action hands to the next stage."""

    files: dict[str, bytes] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)


class Action(ABC):
    """A unit of work run by one stage."""

    name: str = "action"

    @abstractmethod
    def execute(self, context: ActionContext) -> ActionOutput | None:
        """
        Run the action.

        Raises:
            PipelineError: On any failure; the run goes to FAILED
        """
        pass


class SourceAction(Action):
    """
    Fetch the configured branch of the connected repository.

    Pushes to the branch never start a run on their own; see
    ``Pipeline.handle_push``.
    """

    def __init__(
        self,
        connection: SourceConnection,
        owner: str,
        repository: str,
        branch: str = "main",
        name: str = "Github",
    ):
        self.connection = connection
        self.owner = owner
        self.repository = repository
        self.branch = branch
        self.name = name

    def execute(self, context: ActionContext) -> ActionOutput:
        revision = self.connection.fetch(self.owner, self.repository, self.branch)
        if context.logger is not None:
            context.logger.info("source_fetched", commit=revision.commit_id, branch=revision.branch)
        return ActionOutput(
            files=dict(revision.files),
            metadata={
                "commit_id": revision.commit_id,
                "branch": revision.branch,
                "repository": self.repository,
            },
        )


@dataclass(frozen=True)
class ApprovalDecision:
    """An external human decision on a run waiting in Approval."""

    approved: bool
    approver: str | None = None
    comment: str = ""
    decided_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EcsDeployAction(Action):
    """
    Roll the target service onto the images named in the descriptor.

    If the rollout fails for any reason, the service is pointed back at
    the revision it ran before, so a failed run never leaves a partial
    rollout behind.
    """

    def __init__(
        self,
        service: ComputeService,
        cluster_name: str,
        service_name: str,
        timeout: timedelta = DEFAULT_DEPLOY_TIMEOUT,
        name: str = "Deploy",
    ):
        self.service = service
        self.cluster_name = cluster_name
        self.service_name = service_name
        self.timeout = timeout
        self.name = name

    def execute(self, context: ActionContext) -> ActionOutput:
        if context.input is None:
            raise PipelineError("Deploy stage has no input artifact")

        image_definitions = parse_image_definitions(context.input.read(IMAGE_DEFINITIONS_FILE))
        previous = self.service.current_revision(self.cluster_name, self.service_name)

        try:
            revision = self.service.deploy(
                self.cluster_name,
                self.service_name,
                image_definitions,
                self.timeout,
            )
        except Exception:
            self.service.restore(self.cluster_name, self.service_name, previous)
            if context.logger is not None:
                context.logger.warning("deploy_restored", revision=previous)
            raise

        return ActionOutput(metadata={"previous_revision": previous, "revision": revision})


def render_image_definitions(container_name: str, image_uri: str) -> bytes:
    """Deployment descriptor naming the container image to roll out."""
    return json.dumps([{"name": container_name, "imageUri": image_uri}]).encode()


def parse_image_definitions(content: bytes) -> list[dict[str, str]]:
    """
    Parse and validate a deployment descriptor.

    Raises:
        PipelineError: If the descriptor is not a list of {name, imageUri}
    """
    try:
        data = json.loads(content)
    except ValueError as e:
        raise PipelineError(f"Invalid {IMAGE_DEFINITIONS_FILE}: {e}") from e

    if not isinstance(data, list) or not data:
        raise PipelineError(f"{IMAGE_DEFINITIONS_FILE} must be a non-empty list")
    for entry in data:
        if not isinstance(entry, dict) or "name" not in entry or "imageUri" not in entry:
            raise PipelineError(f"{IMAGE_DEFINITIONS_FILE} entries need 'name' and 'imageUri'")
    return data
