"""
Failure notifications.

A pipeline has one notification sink. A FailureEvent is emitted exactly
once when a run enters FAILED; successful runs emit nothing.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from stratus.pipeline.state import FailureEventType


class FailureEvent(BaseModel):
    """Structured failure event delivered to the notification sink."""

    event_type: FailureEventType = Field(..., description="Failure level")
    pipeline_name: str = Field(..., description="Pipeline that failed")
    stage_name: str = Field(..., description="Stage in which the run failed")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the run entered Failed",
    )
    run_id: str = Field(..., description="Failed run")
    action_name: str | None = Field(default=None, description="Failing action, if any")
    reason: str = Field(default="", description="Error message")

    model_config = {"frozen": True}


class NotificationSink(ABC):
    """External channel receiving failure events."""

    @abstractmethod
    def notify(self, event: FailureEvent) -> None:
        pass


class InMemoryNotificationSink(NotificationSink):
    """Sink that collects events, for local runs and tests."""

    def __init__(self):
        self.events: list[FailureEvent] = []

    def notify(self, event: FailureEvent) -> None:
        self.events.append(event)
