"""
Artifacts passed between pipeline stages.

An artifact is identified by (run id, stage) and owned by its run. The
store keeps the artifacts of a fixed number of recent runs per pipeline
and evicts older runs when a new run stores its first artifact.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class Artifact:
    """Opaque, versioned output of one stage."""

    pipeline: str
    run_id: str
    stage: str
    files: dict[str, bytes] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> tuple[str, str]:
        return (self.run_id, self.stage)

    def read(self, filename: str) -> bytes:
        """Return the content of one file in the artifact."""
        try:
            return self.files[filename]
        except KeyError:
            raise KeyError(
                f"Artifact {self.run_id}/{self.stage} has no file '{filename}'"
            ) from None


class ArtifactStore(ABC):
    """Storage shared by all runs of a pipeline."""

    def __init__(self, retain_runs: int = 20):
        if retain_runs < 1:
            raise ValueError("retain_runs must be at least 1")
        self.retain_runs = retain_runs

    @abstractmethod
    def put(self, artifact: Artifact) -> None:
        """Store an artifact, evicting runs beyond the retention count."""
        pass

    @abstractmethod
    def get(self, pipeline: str, run_id: str, stage: str) -> Artifact:
        """
        Fetch an artifact.

        Raises:
            KeyError: If the artifact does not exist (or was evicted)
        """
        pass

    @abstractmethod
    def list_runs(self, pipeline: str) -> list[str]:
        """Run ids with stored artifacts, oldest first."""
        pass

    def exists(self, pipeline: str, run_id: str, stage: str) -> bool:
        try:
            self.get(pipeline, run_id, stage)
        except KeyError:
            return False
        return True


class InMemoryArtifactStore(ArtifactStore):
    """Artifact store kept in process memory."""

    def __init__(self, retain_runs: int = 20):
        super().__init__(retain_runs)
        # pipeline -> run_id -> stage -> artifact, runs in insertion order
        self._artifacts: dict[str, dict[str, dict[str, Artifact]]] = {}

    def put(self, artifact: Artifact) -> None:
        runs = self._artifacts.setdefault(artifact.pipeline, {})
        runs.setdefault(artifact.run_id, {})[artifact.stage] = artifact

        while len(runs) > self.retain_runs:
            oldest = next(iter(runs))
            del runs[oldest]

    def get(self, pipeline: str, run_id: str, stage: str) -> Artifact:
        try:
            return self._artifacts[pipeline][run_id][stage]
        except KeyError:
            raise KeyError(f"No artifact for {pipeline}/{run_id}/{stage}") from None

    def list_runs(self, pipeline: str) -> list[str]:
        return list(self._artifacts.get(pipeline, {}))
