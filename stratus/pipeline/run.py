"""
Pipeline runs.

A Pipeline owns its stage actions, its artifact store and its notification
sink. Each call to ``Pipeline.start_run()`` creates a PipelineRun that moves
through the fixed stages:

    Pending -> Source -> Build -> Approval -> Deploy -> Succeeded
                  \\         \\         \\          \\
                   `---------`---------`----------`--> Failed

The run executes synchronously until it reaches Approval, then returns.
Nothing waits while the approval is pending; the run resumes only when
``approve()`` or ``reject()`` is called on it.
"""

import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from stratus.pipeline.actions import Action, ActionContext, ApprovalDecision
from stratus.pipeline.artifacts import Artifact, ArtifactStore, InMemoryArtifactStore
from stratus.pipeline.errors import (
    ApprovalRejected,
    ConcurrentRunError,
    InvalidTransition,
    PipelineError,
)
from stratus.pipeline.notifications import FailureEvent, InMemoryNotificationSink, NotificationSink
from stratus.pipeline.state import FailureEventType, PipelineState, can_transition, next_stage

logger = structlog.get_logger(__name__)

ABANDONED = "abandoned"


class Pipeline:
    """
    Delivery pipeline for one service.

    Example:
        pipeline = Pipeline(
            name="demo-service-pipeline",
            source=SourceAction(connection, owner="acme", repository="demo-service"),
            build=ContainerImageBuild(...),
            deploy=EcsDeployAction(ecs, "primary-cluster", "demo-service"),
            notification_sink=SnsNotificationSink(topic_arn),
        )

        run = pipeline.start_run()      # runs Source and Build
        run.approve("alice")            # runs Deploy
        run.state                       # PipelineState.SUCCEEDED
    """

    def __init__(
        self,
        name: str,
        source: Action,
        build: Action,
        deploy: Action,
        artifact_store: ArtifactStore | None = None,
        notification_sink: NotificationSink | None = None,
        trigger_on_push: bool = False,
    ):
        self.name = name
        self.actions: dict[PipelineState, Action] = {
            PipelineState.SOURCE: source,
            PipelineState.BUILD: build,
            PipelineState.DEPLOY: deploy,
        }
        self.artifact_store = artifact_store or InMemoryArtifactStore()
        self.notification_sink = notification_sink or InMemoryNotificationSink()
        self.trigger_on_push = trigger_on_push
        self.runs: list[PipelineRun] = []
        self._lock = threading.Lock()

    @property
    def active_run(self) -> 'PipelineRun | None':
        """The run that has not reached a terminal state yet, if any."""
        for run in reversed(self.runs):
            if not run.state.is_terminal:
                return run
        return None

    def start_run(self, run_id: str | None = None) -> 'PipelineRun':
        """
        Start a run manually.

        The run executes Source and Build before this returns, and stops
        at Approval (or in Failed).

        Raises:
            ConcurrentRunError: If another run of this pipeline is still active
        """
        with self._lock:
            active = self.active_run
            if active is not None:
                raise ConcurrentRunError(self.name, active.run_id)
            run = PipelineRun(self, run_id or uuid.uuid4().hex)
            self.runs.append(run)

        run.start()
        return run

    def handle_push(self, branch: str, commit_id: str | None = None) -> 'PipelineRun | None':
        """
        Handle a push to the connected repository.

        Pushes only start a run when the pipeline triggers on push, which
        the delivery pipelines declared by stratus never do.
        """
        if not self.trigger_on_push:
            logger.info("push_ignored", pipeline=self.name, branch=branch, commit=commit_id)
            return None
        return self.start_run()

    def run(self, approver: Callable[['PipelineRun'], ApprovalDecision]) -> 'PipelineRun':
        """
        Start a run and settle the approval with ``approver`` in-process.

        Args:
            approver: Called once with the run waiting in Approval

        Returns:
            The run, in a terminal state
        """
        run = self.start_run()
        if run.state is PipelineState.APPROVAL:
            decision = approver(run)
            if decision.approved:
                run.approve(decision.approver, decision.comment)
            else:
                run.reject(decision.approver, decision.comment)
        return run

    def __repr__(self) -> str:
        return f"Pipeline({self.name}, runs={len(self.runs)})"


class PipelineRun:
    """One execution of a Pipeline."""

    def __init__(self, pipeline: Pipeline, run_id: str):
        self.pipeline = pipeline
        self.run_id = run_id
        self.state = PipelineState.PENDING
        self.history: list[tuple[PipelineState, datetime]] = [
            (PipelineState.PENDING, datetime.now(timezone.utc))
        ]
        self.artifacts: dict[PipelineState, Artifact] = {}
        self.approval: ApprovalDecision | None = None
        self.error: PipelineError | None = None
        self.failure_event: FailureEvent | None = None
        self.log = logger.bind(pipeline=pipeline.name, run_id=run_id)

    @property
    def stages_run(self) -> list[PipelineState]:
        """States the run has entered, in order."""
        return [state for state, _ in self.history]

    def start(self) -> None:
        if self.state is not PipelineState.PENDING:
            raise InvalidTransition(f"Run {self.run_id} has already started")
        self._transition(PipelineState.SOURCE)
        self._advance()

    def approve(self, approver: str | None = None, comment: str = "") -> None:
        """
        Approve the pending deployment and run the Deploy stage.

        Raises:
            InvalidTransition: If the run is not waiting in Approval
        """
        self._require_approval("approve")
        self.approval = ApprovalDecision(approved=True, approver=approver, comment=comment)
        self.log.info("approval_granted", approver=approver)
        self._transition(PipelineState.DEPLOY)
        self._advance()

    def reject(self, approver: str | None = None, comment: str = "") -> None:
        """
        Reject the pending deployment. The run fails and Deploy never runs.

        Raises:
            InvalidTransition: If the run is not waiting in Approval
        """
        self._require_approval("reject")
        self.approval = ApprovalDecision(approved=False, approver=approver, comment=comment)
        self.log.info("approval_rejected", approver=approver, comment=comment)
        self._fail(
            ApprovalRejected(approver, comment),
            FailureEventType.STAGE,
            action_name="Approve",
        )

    def abandon(self) -> None:
        """Give up on a run waiting in Approval."""
        self.reject(comment=ABANDONED)

    def _require_approval(self, operation: str) -> None:
        if self.state is not PipelineState.APPROVAL:
            raise InvalidTransition(
                f"Cannot {operation} run {self.run_id} in state {self.state.value}"
            )

    def _advance(self) -> None:
        """Run stages until the run waits for approval or ends."""
        while self.state in self.pipeline.actions:
            stage = self.state
            action = self.pipeline.actions[stage]

            try:
                upstream = self._input_for(stage)
            except KeyError as e:
                self._fail(
                    PipelineError(f"Missing input artifact for {stage.value}: {e}"),
                    FailureEventType.PIPELINE,
                )
                return
            except Exception as e:
                self._fail(
                    _as_pipeline_error(e, f"Cannot read input artifact for {stage.value}"),
                    FailureEventType.PIPELINE,
                )
                return

            context = ActionContext(
                pipeline=self.pipeline.name,
                run_id=self.run_id,
                stage=stage.value,
                input=upstream,
                logger=self.log.bind(stage=stage.value, action=action.name),
            )
            try:
                output = action.execute(context)
            except Exception as e:
                self._fail(_as_pipeline_error(e), FailureEventType.ACTION, action_name=action.name)
                return

            if output is not None:
                artifact = Artifact(
                    pipeline=self.pipeline.name,
                    run_id=self.run_id,
                    stage=stage.value,
                    files=dict(output.files),
                    metadata=dict(output.metadata),
                )
                try:
                    self.pipeline.artifact_store.put(artifact)
                except Exception as e:
                    self._fail(
                        _as_pipeline_error(e, f"Cannot store {stage.value} artifact"),
                        FailureEventType.PIPELINE,
                    )
                    return
                self.artifacts[stage] = artifact

            self._transition(next_stage(stage))

    def _input_for(self, stage: PipelineState) -> Artifact | None:
        """
        Fetch the artifact the stage consumes from the store.

        Raises:
            KeyError: If the upstream artifact was never produced or was evicted
        """
        upstream = {
            PipelineState.BUILD: PipelineState.SOURCE,
            PipelineState.DEPLOY: PipelineState.BUILD,
        }.get(stage)
        if upstream is None:
            return None
        return self.pipeline.artifact_store.get(self.pipeline.name, self.run_id, upstream.value)

    def _transition(self, target: PipelineState) -> None:
        if not can_transition(self.state, target):
            raise InvalidTransition(
                f"Run {self.run_id} cannot move from {self.state.value} to {target.value}"
            )
        previous = self.state
        self.state = target
        self.history.append((target, datetime.now(timezone.utc)))
        self.log.info("run_transition", previous=previous.value, state=target.value)

    def _fail(
        self,
        error: PipelineError,
        event_type: FailureEventType,
        action_name: str | None = None,
    ) -> None:
        stage = self.state
        error.stage = stage.value
        self.error = error
        self._transition(PipelineState.FAILED)
        self.log.error(
            "run_failed",
            stage=stage.value,
            action=action_name,
            error=str(error),
            error_type=type(error).__name__,
        )

        self.failure_event = FailureEvent(
            event_type=event_type,
            pipeline_name=self.pipeline.name,
            stage_name=stage.value,
            run_id=self.run_id,
            action_name=action_name,
            reason=str(error),
        )
        self.pipeline.notification_sink.notify(self.failure_event)

    def summary(self) -> dict[str, Any]:
        """JSON-serializable view of the run."""
        return {
            "pipeline": self.pipeline.name,
            "run_id": self.run_id,
            "state": self.state.value,
            "stages": [state.value for state in self.stages_run],
            "error": str(self.error) if self.error else None,
            "artifacts": {
                stage.value: dict(artifact.metadata) for stage, artifact in self.artifacts.items()
            },
        }

    def __repr__(self) -> str:
        return f"PipelineRun({self.pipeline.name}, {self.run_id}, state={self.state.value})"


def _as_pipeline_error(error: Exception, context: str | None = None) -> PipelineError:
    """Wrap an unexpected exception so the run can record it."""
    if isinstance(error, PipelineError) and context is None:
        return error
    message = f"{type(error).__name__}: {error}"
    wrapped = PipelineError(f"{context}: {message}" if context else message)
    wrapped.__cause__ = error
    return wrapped
