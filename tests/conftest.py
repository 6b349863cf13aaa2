"""
Shared fixtures: in-memory stand-ins for the services pipeline actions use.
"""

from datetime import datetime, timedelta, timezone

import pytest

from stratus.config import config_from_dict
from stratus.pipeline import (
    ContainerImageBuild,
    EcsDeployAction,
    InMemoryArtifactStore,
    InMemoryNotificationSink,
    Pipeline,
    SourceAction,
)
from stratus.pipeline.errors import BuildStepFailure, DeployHealthCheckFailure, SourceFailure
from stratus.pipeline.services import (
    ComputeService,
    ContainerBuilder,
    ImageRegistry,
    SecretDecrypter,
    SourceConnection,
    SourceRevision,
)

ENCRYPTED_ENV = ".enc.env.production"


class FakeSourceConnection(SourceConnection):
    def __init__(self, files=None, commit_id="a1b2c3d", fail=False):
        self.files = files if files is not None else {
            "Dockerfile": b"FROM node:20\n",
            ENCRYPTED_ENV: b"ciphertext",
        }
        self.commit_id = commit_id
        self.fail = fail
        self.fetches = []

    def fetch(self, owner, repository, branch):
        self.fetches.append((owner, repository, branch))
        if self.fail:
            raise SourceFailure(f"branch '{branch}' not found")
        return SourceRevision(commit_id=self.commit_id, branch=branch, files=dict(self.files))


class FakeDecrypter(SecretDecrypter):
    def __init__(self, plaintext=b"API_KEY=secret\n"):
        self.plaintext = plaintext
        self.calls = []

    def decrypt(self, ciphertext, key_id):
        self.calls.append((ciphertext, key_id))
        return self.plaintext


class FakeRegistry(ImageRegistry):
    def __init__(self, tags=None):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.images = [
            {"imageTags": [tag], "imagePushedAt": now + timedelta(minutes=i)}
            for i, tag in enumerate(tags or [])
        ]
        self.logins = 0

    def repository_uri(self, repository):
        return f"123456789012.dkr.ecr.ap-south-1.amazonaws.com/{repository}"

    def login_password(self):
        self.logins += 1
        return "password"

    def describe_images(self, repository):
        return list(self.images)


class FakeBuilder(ContainerBuilder):
    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.calls = []
        self.context = None
        self.build_args = None

    def _record(self, step, *args):
        self.calls.append((step,) + args)
        if step == self.fail_on:
            raise BuildStepFailure(step, "exit status 1")

    def install(self, commands):
        self._record("install", tuple(commands))

    def login(self, registry, username, password):
        self._record("login", registry, username)

    def build(self, context, image, build_args):
        self.context = dict(context)
        self.build_args = dict(build_args)
        self._record("build", image)

    def tag(self, source, target):
        self._record("tag", source, target)

    def push(self, image):
        self._record("push", image)

    @property
    def steps(self):
        return [call[0] for call in self.calls]


class FakeComputeService(ComputeService):
    def __init__(self, revision="demo-task:1", error=None):
        self.revision = revision
        self.error = error
        self.deployments = []
        self.restored = []

    def current_revision(self, cluster, service):
        return self.revision

    def deploy(self, cluster, service, image_definitions, timeout):
        self.deployments.append((cluster, service, image_definitions))
        if self.error is not None:
            raise self.error
        number = int(self.revision.rsplit(":", 1)[1]) + 1
        self.revision = f"demo-task:{number}"
        return self.revision

    def restore(self, cluster, service, revision):
        self.restored.append(revision)
        self.revision = revision


@pytest.fixture
def source():
    return FakeSourceConnection()


@pytest.fixture
def registry():
    return FakeRegistry(tags=["1.6", "1.7"])


@pytest.fixture
def builder():
    return FakeBuilder()


@pytest.fixture
def decrypter():
    return FakeDecrypter()


@pytest.fixture
def compute():
    return FakeComputeService()


@pytest.fixture
def sink():
    return InMemoryNotificationSink()


@pytest.fixture
def make_pipeline(source, registry, builder, decrypter, compute, sink):
    """Factory for a demo pipeline wired to the fakes."""

    def make(**overrides):
        options = dict(
            name="demo-service-pipeline",
            source=SourceAction(source, owner="Demo", repository="demo-service"),
            build=ContainerImageBuild(
                registry=registry,
                builder=builder,
                decrypter=decrypter,
                repository="demo-service-ecr-repo",
                container_name="DemoContainer",
                kms_key_id="key-1",
                encrypted_env_path="/" + ENCRYPTED_ENV,
            ),
            deploy=EcsDeployAction(compute, "PrimaryWorkloadCluster", "DemoService"),
            artifact_store=InMemoryArtifactStore(),
            notification_sink=sink,
        )
        options.update(overrides)
        return Pipeline(**options)

    return make


@pytest.fixture
def make_compute():
    """Factory for compute fakes whose deploy raises ``error``."""
    return FakeComputeService


@pytest.fixture
def unhealthy_compute():
    return FakeComputeService(error=DeployHealthCheckFailure("DemoService", "tasks failed ELB health checks"))


@pytest.fixture
def config():
    """Minimal valid deployment configuration."""
    return config_from_dict({
        "name": "demo",
        "environment": "production",
        "account": {"account_id": "123456789012", "region": "ap-south-1"},
        "service_resources": {"ecr_repo_name": "demo-service-ecr-repo"},
        "pipeline": {"kms_key_id": "0ecdd329-key"},
    })


@pytest.fixture
def missing_branch():
    """Source connection whose branch does not exist."""
    return FakeSourceConnection(fail=True)
