"""
External services used by pipeline actions.

These are the seams between the run state machine and the outside world
(source control, KMS, container registry, docker, ECS). AWS and docker
implementations live in ``stratus.providers``; tests use in-memory fakes.
"""

from typing import Any
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta


@dataclass(frozen=True)
class SourceRevision:
    """Snapshot of the connected repository at one commit."""

    commit_id: str
    branch: str
    files: dict[str, bytes] = field(default_factory=dict)
    message: str = ""


class SourceConnection(ABC):
    """Connected source repository."""

    @abstractmethod
    def fetch(self, owner: str, repository: str, branch: str) -> SourceRevision:
        """
        Fetch the head of ``branch``.

        Raises:
            SourceFailure: If the branch cannot be fetched
        """
        pass


class SecretDecrypter(ABC):
    """Managed-key decryption of the environment secret blob."""

    @abstractmethod
    def decrypt(self, ciphertext: bytes, key_id: str) -> bytes:
        """
        Raises:
            SecretDecryptFailure: If the blob cannot be decrypted with ``key_id``
        """
        pass


class ImageRegistry(ABC):
    """Container image registry (read tags, provide push credentials)."""

    @abstractmethod
    def repository_uri(self, repository: str) -> str:
        """Fully qualified repository URI, without tag."""
        pass

    @abstractmethod
    def login_password(self) -> str:
        """
        Short-lived password for ``docker login``.

        Raises:
            RegistryAuthFailure: If credentials cannot be obtained
        """
        pass

    @abstractmethod
    def describe_images(self, repository: str) -> list[dict[str, Any]]:
        """Image descriptions with ``imageTags`` and ``imagePushedAt``."""
        pass

    @property
    def username(self) -> str:
        return "AWS"


class ContainerBuilder(ABC):
    """Build tooling; every method raises BuildStepFailure on non-zero exit."""

    @abstractmethod
    def install(self, commands: list[str]) -> None:
        pass

    @abstractmethod
    def login(self, registry: str, username: str, password: str) -> None:
        """
        Raises:
            RegistryAuthFailure: If the registry rejects the credentials
        """
        pass

    @abstractmethod
    def build(self, context: dict[str, bytes], image: str, build_args: dict[str, str]) -> None:
        pass

    @abstractmethod
    def tag(self, source: str, target: str) -> None:
        pass

    @abstractmethod
    def push(self, image: str) -> None:
        """
        Raises:
            ImagePushFailure: If the push fails
        """
        pass


class ComputeService(ABC):
    """Container service that receives rolling updates."""

    @abstractmethod
    def current_revision(self, cluster: str, service: str) -> str:
        """Task definition revision the service currently runs."""
        pass

    @abstractmethod
    def deploy(
        self,
        cluster: str,
        service: str,
        image_definitions: list[dict[str, str]],
        timeout: timedelta,
    ) -> str:
        """
        Register a new revision with the given images and roll it out.

        Returns:
            The new revision identifier

        Raises:
            DeployTimeout: If the rollout does not settle within ``timeout``
            DeployHealthCheckFailure: If the new tasks are unhealthy
        """
        pass

    @abstractmethod
    def restore(self, cluster: str, service: str, revision: str) -> None:
        """Point the service back at ``revision``."""
        pass
