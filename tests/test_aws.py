"""
Tests for the AWS providers, using botocore Stubbers.
"""

import base64
import io
import json
import zipfile
from datetime import datetime, timedelta, timezone

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import ANY, Stubber
from stratus.core import Stack
from stratus.core.errors import ResourceCreationFailure
from stratus.pipeline import FailureEvent, FailureEventType
from stratus.pipeline.artifacts import Artifact
from stratus.pipeline.errors import (
    DeployHealthCheckFailure,
    BuildStepFailure,
    DeployTimeout,
    PipelineError,
    RegistryAuthFailure,
    SecretDecryptFailure,
)
from stratus.providers.aws import (
    CloudFormationBackend,
    CloudFormationExportRegistry,
    EcrRegistry,
    EcsService,
    KmsDecrypter,
    S3ArtifactStore,
    SnsNotificationSink,
    SsmParameterStore,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
STACK_ID = "arn:aws:cloudformation:ap-south-1:123456789012:stack/NetworkInfraStack/abc"


def _client(service: str):
    return boto3.client(
        service,
        region_name="ap-south-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def stubbed():
    """Yield a factory of (client, stubber) pairs and check every stub was used."""
    stubbers = []

    def make(service: str):
        client = _client(service)
        stubber = Stubber(client)
        stubber.activate()
        stubbers.append(stubber)
        return client, stubber

    yield make
    for stubber in stubbers:
        stubber.assert_no_pending_responses()
        stubber.deactivate()


def _body(data: bytes) -> StreamingBody:
    return StreamingBody(io.BytesIO(data), len(data))


class TestKmsDecrypter:
    """Tests for KmsDecrypter."""

    def test_decrypt(self, stubbed):
        """The plaintext of the blob is returned."""
        client, stubber = stubbed("kms")
        stubber.add_response(
            "decrypt",
            {"Plaintext": b"API_KEY=secret", "KeyId": "key-1"},
            {"CiphertextBlob": b"blob", "KeyId": "key-1"},
        )

        assert KmsDecrypter(client=client).decrypt(b"blob", "key-1") == b"API_KEY=secret"

    def test_decrypt_failure(self, stubbed):
        """KMS errors become SecretDecryptFailure."""
        client, stubber = stubbed("kms")
        stubber.add_client_error("decrypt", "InvalidCiphertextException", "bad blob")

        with pytest.raises(SecretDecryptFailure, match="InvalidCiphertextException"):
            KmsDecrypter(client=client).decrypt(b"blob", "key-1")


class TestEcrRegistry:
    """Tests for EcrRegistry."""

    def test_repository_uri_from_account(self):
        """With account and region known, no API call is needed."""
        registry = EcrRegistry("123456789012", "ap-south-1", client=_client("ecr"))

        assert registry.repository_uri("demo") == "123456789012.dkr.ecr.ap-south-1.amazonaws.com/demo"

    def test_repository_uri_lookup(self, stubbed):
        """Without an account, the repository is described."""
        client, stubber = stubbed("ecr")
        stubber.add_response(
            "describe_repositories",
            {"repositories": [{"repositoryUri": "123456789012.dkr.ecr.ap-south-1.amazonaws.com/demo"}]},
            {"repositoryNames": ["demo"]},
        )

        assert EcrRegistry(client=client).repository_uri("demo").endswith("/demo")

    def test_login_password(self, stubbed):
        """The password is the second half of the decoded token."""
        client, stubber = stubbed("ecr")
        token = base64.b64encode(b"AWS:s3cret").decode()
        stubber.add_response("get_authorization_token", {"authorizationData": [{"authorizationToken": token}]}, {})

        assert EcrRegistry(client=client).login_password() == "s3cret"

    def test_login_failure(self, stubbed):
        """Authorization errors become RegistryAuthFailure."""
        client, stubber = stubbed("ecr")
        stubber.add_client_error("get_authorization_token", "AccessDeniedException", "denied")

        with pytest.raises(RegistryAuthFailure):
            EcrRegistry(client=client).login_password()

    def test_describe_images(self, stubbed):
        """Image details of every page are returned."""
        client, stubber = stubbed("ecr")
        stubber.add_response(
            "describe_images",
            {"imageDetails": [{"imageTags": ["1.7"], "imagePushedAt": NOW}]},
            {"repositoryName": "demo"},
        )

        images = EcrRegistry(client=client).describe_images("demo")

        assert images[0]["imageTags"] == ["1.7"]


class TestSsmParameterStore:
    """Tests for SsmParameterStore."""

    def test_resolve(self, stubbed):
        """Each environment variable gets its decrypted parameter value."""
        client, stubber = stubbed("ssm")
        stubber.add_response(
            "get_parameter",
            {"Parameter": {"Name": "/github/token", "Type": "SecureString", "Value": "ghp_token"}},
            {"Name": "/github/token", "WithDecryption": True},
        )

        values = SsmParameterStore(client=client).resolve({"GITHUB_TOKEN": "/github/token"})

        assert values == {"GITHUB_TOKEN": "ghp_token"}

    def test_missing_parameter(self, stubbed):
        """Unreadable parameters fail the build."""
        client, stubber = stubbed("ssm")
        stubber.add_client_error("get_parameter", "ParameterNotFound", "not found")

        with pytest.raises(BuildStepFailure, match="ParameterNotFound") as exc_info:
            SsmParameterStore(client=client).resolve({"GITHUB_TOKEN": "/github/token"})

        assert exc_info.value.step == "parameter_store"


class TestSnsNotificationSink:
    """Tests for SnsNotificationSink."""

    def test_publish(self, stubbed):
        """Events are published as JSON with their type as an attribute."""
        client, stubber = stubbed("sns")
        event = FailureEvent(
            event_type=FailureEventType.ACTION,
            pipeline_name="demo-service-pipeline",
            stage_name="Build",
            run_id="run-1",
            action_name="Docker-Build",
            reason="push failed",
            timestamp=NOW,
        )
        stubber.add_response("publish", {"MessageId": "m-1"}, {
            "TopicArn": "arn:aws:sns:ap-south-1:123456789012:pipeline",
            "Subject": "demo-service-pipeline failed in Build",
            "Message": event.model_dump_json(),
            "MessageAttributes": {
                "event_type": {"DataType": "String", "StringValue": FailureEventType.ACTION.value},
            },
        })

        SnsNotificationSink("arn:aws:sns:ap-south-1:123456789012:pipeline", client=client).notify(event)


class TestCloudFormationExportRegistry:
    """Tests for CloudFormationExportRegistry."""

    def _exports(self, stubber):
        stubber.add_response("list_exports", {
            "Exports": [{"ExportingStackId": STACK_ID, "Name": "PrimaryVpcId", "Value": "vpc-1"}],
        }, {})

    def test_lookup(self, stubbed):
        """Exports are found by name and exporting stack."""
        client, stubber = stubbed("cloudformation")
        self._exports(stubber)

        assert CloudFormationExportRegistry(client=client).lookup("PrimaryVpcId", "NetworkInfraStack") == "vpc-1"

    def test_lookup_wrong_producer(self, stubbed):
        """An export of another stack does not satisfy a pinned import."""
        client, stubber = stubbed("cloudformation")
        self._exports(stubber)

        with pytest.raises(KeyError):
            CloudFormationExportRegistry(client=client).lookup("PrimaryVpcId", "OtherStack")

    def test_published_values_first(self, stubbed):
        """Values published during this run are served without an API call."""
        client, _ = stubbed("cloudformation")
        registry = CloudFormationExportRegistry(client=client)
        registry.publish("NetworkInfraStack", "PrimaryVpcId", "vpc-2")

        assert registry.lookup("PrimaryVpcId") == "vpc-2"


class TestCloudFormationBackend:
    """Tests for CloudFormationBackend."""

    def _stack(self) -> Stack:
        stack = Stack("NetworkInfraStack", tags={"environment-type": "Demo"})
        vpc = stack.resource("PrimaryVpc", "AWS::EC2::VPC", {"CidrBlock": "10.0.0.0/16"})
        stack.export("PrimaryVpcId", vpc.ref)
        return stack

    def _described(self, status: str, outputs=None) -> dict:
        stack = {"StackName": "NetworkInfraStack", "CreationTime": NOW, "StackStatus": status}
        if outputs is not None:
            stack["Outputs"] = outputs
        return {"Stacks": [stack]}

    def test_create(self, stubbed):
        """A missing stack is created and its exports returned."""
        client, stubber = stubbed("cloudformation")
        name = {"StackName": "NetworkInfraStack"}
        stubber.add_client_error(
            "describe_stacks", "ValidationError", "Stack with id NetworkInfraStack does not exist",
            expected_params=name,
        )
        stubber.add_response("create_stack", {"StackId": STACK_ID}, {
            "StackName": "NetworkInfraStack",
            "TemplateBody": ANY,
            "Capabilities": ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"],
            "Tags": [{"Key": "environment-type", "Value": "Demo"}],
        })
        stubber.add_response("describe_stacks", self._described("CREATE_COMPLETE"), name)
        stubber.add_response("describe_stacks", self._described("CREATE_COMPLETE", [
            {"OutputKey": "PrimaryVpcId", "OutputValue": "vpc-1", "ExportName": "PrimaryVpcId"},
            {"OutputKey": "Internal", "OutputValue": "x"},
        ]), name)

        outputs = CloudFormationBackend(client=client, poll_interval=1).apply(self._stack(), {})

        assert outputs == {"PrimaryVpcId": "vpc-1"}

    def test_update_without_changes(self, stubbed):
        """An unchanged stack is left alone."""
        client, stubber = stubbed("cloudformation")
        name = {"StackName": "NetworkInfraStack"}
        stubber.add_response("describe_stacks", self._described("UPDATE_COMPLETE"), name)
        stubber.add_client_error("update_stack", "ValidationError", "No updates are to be performed.")
        stubber.add_response("describe_stacks", self._described("UPDATE_COMPLETE", [
            {"OutputKey": "PrimaryVpcId", "OutputValue": "vpc-1", "ExportName": "PrimaryVpcId"},
        ]), name)

        outputs = CloudFormationBackend(client=client, poll_interval=1).apply(self._stack(), {})

        assert outputs == {"PrimaryVpcId": "vpc-1"}

    def test_failed_create(self, stubbed):
        """A stack that rolls back fails with ResourceCreationFailure."""
        client, stubber = stubbed("cloudformation")
        stubber.add_client_error("describe_stacks", "ValidationError", "Stack with id NetworkInfraStack does not exist")
        stubber.add_response("create_stack", {"StackId": STACK_ID})
        stubber.add_response("describe_stacks", self._described("ROLLBACK_COMPLETE"))

        with pytest.raises(ResourceCreationFailure):
            CloudFormationBackend(client=client, poll_interval=1).apply(self._stack(), {})

    def test_destroy_missing_stack(self, stubbed):
        """Destroying a stack that does not exist is a no-op."""
        client, stubber = stubbed("cloudformation")
        stubber.add_client_error("describe_stacks", "ValidationError", "Stack with id NetworkInfraStack does not exist")

        CloudFormationBackend(client=client).destroy(self._stack())


class TestEcsService:
    """Tests for EcsService."""

    CLUSTER = "PrimaryWorkloadCluster"
    SERVICE = "DemoService"
    OLD = "arn:aws:ecs:ap-south-1:123456789012:task-definition/DemoTaskDefinition:1"
    NEW = "arn:aws:ecs:ap-south-1:123456789012:task-definition/DemoTaskDefinition:2"

    def _prepare_rollout(self, stubber):
        services = {"cluster": self.CLUSTER, "services": [self.SERVICE]}
        stubber.add_response("describe_services", {"services": [{"taskDefinition": self.OLD}]}, services)
        stubber.add_response("describe_task_definition", {"taskDefinition": {
            "taskDefinitionArn": self.OLD,
            "family": "DemoTaskDefinition",
            "revision": 1,
            "status": "ACTIVE",
            "networkMode": "bridge",
            "containerDefinitions": [{"name": "DemoContainer", "image": "repo:1.7", "cpu": 1024}],
        }}, {"taskDefinition": self.OLD})
        stubber.add_response("register_task_definition", {"taskDefinition": {"taskDefinitionArn": self.NEW}}, {
            "family": "DemoTaskDefinition",
            "networkMode": "bridge",
            "containerDefinitions": [{"name": "DemoContainer", "image": "repo:1.8", "cpu": 1024}],
        })
        stubber.add_response("update_service", {"service": {"taskDefinition": self.NEW}}, {
            "cluster": self.CLUSTER,
            "service": self.SERVICE,
            "taskDefinition": self.NEW,
        })
        return services

    def test_deploy(self, stubbed):
        """A new revision with the new image is rolled out."""
        client, stubber = stubbed("ecs")
        services = self._prepare_rollout(stubber)
        stubber.add_response("describe_services", {"services": [{
            "taskDefinition": self.NEW,
            "deployments": [{"taskDefinition": self.NEW, "rolloutState": "COMPLETED"}],
            "runningCount": 1,
            "desiredCount": 1,
        }], "failures": []}, services)

        revision = EcsService(client=client).deploy(
            self.CLUSTER, self.SERVICE, [{"name": "DemoContainer", "imageUri": "repo:1.8"}], timedelta(minutes=5)
        )

        assert revision == self.NEW

    def test_failed_rollout(self, stubbed):
        """A FAILED rollout raises DeployHealthCheckFailure."""
        client, stubber = stubbed("ecs")
        services = self._prepare_rollout(stubber)
        unstable = {"services": [{
            "taskDefinition": self.NEW,
            "deployments": [
                {"taskDefinition": self.NEW, "rolloutState": "FAILED", "rolloutStateReason": "tasks failed to start"},
                {"taskDefinition": self.OLD, "rolloutState": "COMPLETED"},
            ],
            "runningCount": 1,
            "desiredCount": 1,
        }], "failures": []}
        stubber.add_response("describe_services", unstable, services)
        stubber.add_response("describe_services", unstable, services)

        with pytest.raises(DeployHealthCheckFailure, match="tasks failed to start"):
            EcsService(client=client, poll_interval=1).deploy(
                self.CLUSTER, self.SERVICE, [{"name": "DemoContainer", "imageUri": "repo:1.8"}], timedelta(seconds=2)
            )

    def test_rollout_timeout(self, stubbed):
        """A rollout still in progress when the wait ends raises DeployTimeout."""
        client, stubber = stubbed("ecs")
        services = self._prepare_rollout(stubber)
        in_progress = {"services": [{
            "taskDefinition": self.NEW,
            "deployments": [
                {"taskDefinition": self.NEW, "rolloutState": "IN_PROGRESS"},
                {"taskDefinition": self.OLD, "rolloutState": "COMPLETED"},
            ],
            "runningCount": 1,
            "desiredCount": 1,
        }], "failures": []}
        stubber.add_response("describe_services", in_progress, services)
        stubber.add_response("describe_services", in_progress, services)

        with pytest.raises(DeployTimeout):
            EcsService(client=client, poll_interval=1).deploy(
                self.CLUSTER, self.SERVICE, [{"name": "DemoContainer", "imageUri": "repo:1.8"}], timedelta(seconds=2)
            )

    def test_unknown_container(self, stubbed):
        """Descriptors naming a container the task lacks are rejected."""
        client, stubber = stubbed("ecs")
        stubber.add_response("describe_services", {"services": [{"taskDefinition": self.OLD}]})
        stubber.add_response("describe_task_definition", {"taskDefinition": {
            "containerDefinitions": [{"name": "DemoContainer", "image": "repo:1.7"}],
        }})

        with pytest.raises(PipelineError, match="Sidecar"):
            EcsService(client=client).deploy(
                self.CLUSTER, self.SERVICE, [{"name": "Sidecar", "imageUri": "x"}], timedelta(minutes=1)
            )

    def test_restore(self, stubbed):
        """Restoring points the service at the given revision."""
        client, stubber = stubbed("ecs")
        stubber.add_response("update_service", {"service": {"taskDefinition": self.OLD}}, {
            "cluster": self.CLUSTER,
            "service": self.SERVICE,
            "taskDefinition": self.OLD,
        })

        EcsService(client=client).restore(self.CLUSTER, self.SERVICE, self.OLD)


class TestS3ArtifactStore:
    """Tests for S3ArtifactStore."""

    def test_put_first_run(self, stubbed):
        """The artifact is zipped and the run index created."""
        client, stubber = stubbed("s3")
        stubber.add_response("put_object", {}, {
            "Bucket": "artifacts",
            "Key": "pipeline/demo/run-1/Source.zip",
            "Body": ANY,
            "Metadata": {"commit_id": "abc"},
        })
        stubber.add_client_error("get_object", "NoSuchKey", "missing", expected_params={
            "Bucket": "artifacts",
            "Key": "pipeline/demo/runs.json",
        })
        stubber.add_response("put_object", {}, {
            "Bucket": "artifacts",
            "Key": "pipeline/demo/runs.json",
            "Body": json.dumps(["run-1"]).encode(),
        })

        store = S3ArtifactStore("artifacts", prefix="pipeline/", client=client)
        store.put(Artifact(
            pipeline="demo",
            run_id="run-1",
            stage="Source",
            files={"Dockerfile": b"FROM node:20\n"},
            metadata={"commit_id": "abc"},
        ))

    def test_get(self, stubbed):
        """Artifacts are unzipped with their metadata."""
        client, stubber = stubbed("s3")
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr("imagedefinitions.json", b"[]")
        data = buffer.getvalue()
        stubber.add_response("get_object", {
            "Body": _body(data),
            "Metadata": {"image_tag": "1.8"},
            "LastModified": NOW,
        }, {"Bucket": "artifacts", "Key": "demo/run-1/Build.zip"})

        artifact = S3ArtifactStore("artifacts", client=client).get("demo", "run-1", "Build")

        assert artifact.read("imagedefinitions.json") == b"[]"
        assert artifact.metadata == {"image_tag": "1.8"}
        assert artifact.created_at == NOW

    def test_get_missing(self, stubbed):
        """Missing artifacts raise KeyError."""
        client, stubber = stubbed("s3")
        stubber.add_client_error("get_object", "NoSuchKey", "missing")

        with pytest.raises(KeyError):
            S3ArtifactStore("artifacts", client=client).get("demo", "run-1", "Build")

    def test_eviction(self, stubbed):
        """Runs beyond the retention count are deleted."""
        client, stubber = stubbed("s3")
        stubber.add_response("put_object", {})
        stubber.add_response("get_object", {"Body": _body(json.dumps(["run-1"]).encode())})
        stubber.add_response(
            "list_objects_v2",
            {"Contents": [{"Key": "demo/run-1/Source.zip"}, {"Key": "demo/run-1/Build.zip"}]},
            {"Bucket": "artifacts", "Prefix": "demo/run-1/"},
        )
        stubber.add_response("delete_objects", {}, {
            "Bucket": "artifacts",
            "Delete": {"Objects": [{"Key": "demo/run-1/Source.zip"}, {"Key": "demo/run-1/Build.zip"}]},
        })
        stubber.add_response("put_object", {}, {
            "Bucket": "artifacts",
            "Key": "demo/runs.json",
            "Body": json.dumps(["run-2"]).encode(),
        })

        store = S3ArtifactStore("artifacts", retain_runs=1, client=client)
        store.put(Artifact(pipeline="demo", run_id="run-2", stage="Source"))
