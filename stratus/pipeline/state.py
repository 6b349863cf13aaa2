"""
States and transitions of a pipeline run.
"""

from enum import Enum


class PipelineState(Enum):
    """States of a pipeline run."""

    PENDING = "Pending"
    SOURCE = "Source"
    BUILD = "Build"
    APPROVAL = "Approval"
    DEPLOY = "Deploy"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.SUCCEEDED, PipelineState.FAILED)


STAGES: tuple[PipelineState, ...] = (
    PipelineState.SOURCE,
    PipelineState.BUILD,
    PipelineState.APPROVAL,
    PipelineState.DEPLOY,
)
"""Fixed stage order"""


TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.PENDING: frozenset({PipelineState.SOURCE}),
    PipelineState.SOURCE: frozenset({PipelineState.BUILD, PipelineState.FAILED}),
    PipelineState.BUILD: frozenset({PipelineState.APPROVAL, PipelineState.FAILED}),
    PipelineState.APPROVAL: frozenset({PipelineState.DEPLOY, PipelineState.FAILED}),
    PipelineState.DEPLOY: frozenset({PipelineState.SUCCEEDED, PipelineState.FAILED}),
    PipelineState.SUCCEEDED: frozenset(),
    PipelineState.FAILED: frozenset(),
}


def can_transition(current: PipelineState, target: PipelineState) -> bool:
    return target in TRANSITIONS[current]


def next_stage(current: PipelineState) -> PipelineState:
    """Stage that follows ``current``; SUCCEEDED after the last stage."""
    if current is PipelineState.PENDING:
        return STAGES[0]
    index = STAGES.index(current)
    if index + 1 < len(STAGES):
        return STAGES[index + 1]
    return PipelineState.SUCCEEDED


class FailureEventType(str, Enum):
    """Failure notification event types."""

    ACTION = "codepipeline-pipeline-action-execution-failed"
    STAGE = "codepipeline-pipeline-stage-execution-failed"
    PIPELINE = "codepipeline-pipeline-pipeline-execution-failed"
