"""
Container delivery pipeline.

- Pipeline / PipelineRun: the Source -> Build -> Approval -> Deploy state machine
- Actions: source fetch, container image build, ECS deploy
- Versioning: next image tag from the registry's latest tag
- Notifications: one FailureEvent per failed run
"""

from stratus.pipeline.state import PipelineState, FailureEventType, STAGES
from stratus.pipeline.artifacts import Artifact, ArtifactStore, InMemoryArtifactStore
from stratus.pipeline.notifications import FailureEvent, NotificationSink, InMemoryNotificationSink
from stratus.pipeline.actions import (
    Action,
    ActionContext,
    ActionOutput,
    ApprovalDecision,
    EcsDeployAction,
    SourceAction,
)
from stratus.pipeline.build import BuildScript, ContainerImageBuild
from stratus.pipeline.versioning import next_image_tag, latest_tag
from stratus.pipeline.run import Pipeline, PipelineRun

__all__ = [
    "PipelineState",
    "FailureEventType",
    "STAGES",
    "Artifact",
    "ArtifactStore",
    "InMemoryArtifactStore",
    "FailureEvent",
    "NotificationSink",
    "InMemoryNotificationSink",
    "Action",
    "ActionContext",
    "ActionOutput",
    "ApprovalDecision",
    "EcsDeployAction",
    "SourceAction",
    "BuildScript",
    "ContainerImageBuild",
    "next_image_tag",
    "latest_tag",
    "Pipeline",
    "PipelineRun",
]
