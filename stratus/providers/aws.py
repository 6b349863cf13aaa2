"""
AWS implementations of the stratus backends and pipeline services.

Requires the ``aws`` extra (boto3). Every class accepts a ready-made
boto3 client, which is how tests inject botocore Stubbers; otherwise a
client is created from ``session`` or the default session.
"""

import base64
import io
import json
import zipfile
from datetime import timedelta
from typing import Any

import boto3
import structlog
from botocore.exceptions import ClientError, WaiterError

from stratus.compilation import CloudFormationCompiler, Compiler
from stratus.config import AccountConfig
from stratus.core import Backend, ExportRegistry, Ref, Stack
from stratus.core.errors import ResourceCreationFailure
from stratus.pipeline.actions import DEFAULT_DEPLOY_TIMEOUT
from stratus.pipeline.artifacts import Artifact, ArtifactStore
from stratus.pipeline.errors import (
    BuildStepFailure,
    DeployHealthCheckFailure,
    DeployTimeout,
    PipelineError,
    RegistryAuthFailure,
    SecretDecryptFailure,
)
from stratus.pipeline.notifications import FailureEvent, NotificationSink
from stratus.pipeline.services import ComputeService, ImageRegistry, SecretDecrypter

logger = structlog.get_logger(__name__)


def aws_session(account: AccountConfig) -> boto3.Session:
    """boto3 session for the configured account profile and region."""
    return boto3.Session(profile_name=account.profile, region_name=account.region)


def _client(service: str, client: Any, session: boto3.Session | None) -> Any:
    if client is not None:
        return client
    return (session or boto3.Session()).client(service)


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def _error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", str(error))


# ---------------------------------------------------------------------------
# CloudFormation
# ---------------------------------------------------------------------------


class CloudFormationBackend(Backend):
    """
    Provision stacks as CloudFormation stacks.

    Imports are compiled to ``Fn::ImportValue`` and resolved by
    CloudFormation itself; the Deployer has already checked that every
    imported key is published before ``apply`` is called.

    Example:
        backend = CloudFormationBackend(session=aws_session(config.account))
        Deployer(backend, CloudFormationExportRegistry(session=...)).deploy(plan)
    """

    CAPABILITIES = ("CAPABILITY_IAM", "CAPABILITY_NAMED_IAM")

    def __init__(
        self,
        compiler: Compiler | None = None,
        client: Any = None,
        session: boto3.Session | None = None,
        poll_interval: int = 10,
        max_attempts: int = 360,
    ):
        self.compiler = compiler or CloudFormationCompiler()
        self.client = _client("cloudformation", client, session)
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts

    def get_provider_name(self) -> str:
        return "cloudformation"

    def apply(self, stack: Stack, imports: dict[Ref, Any]) -> dict[str, Any]:
        template = self.compiler.compile_stack(stack)
        arguments = {
            "StackName": stack.name,
            "TemplateBody": template.to_json(),
            "Capabilities": list(self.CAPABILITIES),
            "Tags": [{"Key": k, "Value": v} for k, v in sorted(template.tags.items())],
        }

        status = self.stack_status(stack.name)
        if status == "ROLLBACK_COMPLETE":
            # A stack whose creation rolled back can only be deleted.
            logger.warning("stack_recreate", stack=stack.name, status=status)
            self.destroy(stack)
            status = None

        if status is None:
            self.client.create_stack(**arguments)
            self._wait("stack_create_complete", stack.name)
        else:
            try:
                self.client.update_stack(**arguments)
            except ClientError as e:
                if "No updates are to be performed" not in _error_message(e):
                    raise
                logger.info("stack_unchanged", stack=stack.name)
            else:
                self._wait("stack_update_complete", stack.name)

        return self.stack_exports(stack.name)

    def destroy(self, stack: Stack) -> None:
        if self.stack_status(stack.name) is None:
            return
        self.client.delete_stack(StackName=stack.name)
        self._wait("stack_delete_complete", stack.name)

    def stack_status(self, name: str) -> str | None:
        """Current stack status, or None if the stack does not exist."""
        try:
            response = self.client.describe_stacks(StackName=name)
        except ClientError as e:
            if "does not exist" in _error_message(e):
                return None
            raise
        return response["Stacks"][0]["StackStatus"]

    def stack_exports(self, name: str) -> dict[str, Any]:
        """Export name -> value of a deployed stack."""
        response = self.client.describe_stacks(StackName=name)
        outputs = response["Stacks"][0].get("Outputs", [])
        return {
            output["ExportName"]: output["OutputValue"]
            for output in outputs
            if "ExportName" in output
        }

    def _wait(self, waiter_name: str, stack_name: str) -> None:
        waiter = self.client.get_waiter(waiter_name)
        try:
            waiter.wait(
                StackName=stack_name,
                WaiterConfig={"Delay": self.poll_interval, "MaxAttempts": self.max_attempts},
            )
        except WaiterError as e:
            raise ResourceCreationFailure(stack_name, f"{waiter_name}: {e}") from e


class CloudFormationExportRegistry(ExportRegistry):
    """
    Export registry backed by the account's CloudFormation exports.

    CloudFormation publishes and withdraws exports itself when stacks are
    created or deleted; ``publish`` only keeps the value visible to the
    rest of the current deploy run.
    """

    def __init__(self, client: Any = None, session: boto3.Session | None = None):
        self.client = _client("cloudformation", client, session)
        self._published: dict[str, tuple[str, Any]] = {}

    def publish(self, producer: str, key: str, value: Any) -> None:
        self._published[key] = (producer, value)

    def withdraw(self, producer: str) -> None:
        for key in [k for k, (p, _) in self._published.items() if p == producer]:
            del self._published[key]

    def lookup(self, key: str, producer: str | None = None) -> Any:
        if key in self._published:
            published_by, value = self._published[key]
            if producer is None or producer == published_by:
                return value

        for export in self.list_exports():
            if export["Name"] != key:
                continue
            if producer is not None and f":stack/{producer}/" not in export["ExportingStackId"]:
                continue
            return export["Value"]
        raise KeyError(key)

    def list_exports(self) -> list[dict[str, str]]:
        paginator = self.client.get_paginator("list_exports")
        exports: list[dict[str, str]] = []
        for page in paginator.paginate():
            exports.extend(page.get("Exports", []))
        return exports


# ---------------------------------------------------------------------------
# Pipeline services
# ---------------------------------------------------------------------------


class EcrRegistry(ImageRegistry):
    """Amazon ECR image registry."""

    def __init__(
        self,
        account_id: str | None = None,
        region: str | None = None,
        client: Any = None,
        session: boto3.Session | None = None,
    ):
        self.account_id = account_id
        self.region = region
        self.client = _client("ecr", client, session)

    def repository_uri(self, repository: str) -> str:
        if self.account_id and self.region:
            return f"{self.account_id}.dkr.ecr.{self.region}.amazonaws.com/{repository}"
        response = self.client.describe_repositories(repositoryNames=[repository])
        return response["repositories"][0]["repositoryUri"]

    def login_password(self) -> str:
        try:
            response = self.client.get_authorization_token()
        except ClientError as e:
            raise RegistryAuthFailure(_error_message(e)) from e

        token = response["authorizationData"][0]["authorizationToken"]
        _, _, password = base64.b64decode(token).decode().partition(":")
        if not password:
            raise RegistryAuthFailure("authorization token has no password")
        return password

    def describe_images(self, repository: str) -> list[dict[str, Any]]:
        paginator = self.client.get_paginator("describe_images")
        images: list[dict[str, Any]] = []
        for page in paginator.paginate(repositoryName=repository):
            images.extend(page.get("imageDetails", []))
        return images


class KmsDecrypter(SecretDecrypter):
    """Decrypt the environment blob with AWS KMS."""

    def __init__(self, client: Any = None, session: boto3.Session | None = None):
        self.client = _client("kms", client, session)

    def decrypt(self, ciphertext: bytes, key_id: str) -> bytes:
        try:
            response = self.client.decrypt(CiphertextBlob=ciphertext, KeyId=key_id)
        except ClientError as e:
            raise SecretDecryptFailure(f"{_error_code(e)}: {_error_message(e)}") from e
        return response["Plaintext"]


class SsmParameterStore:
    """Build environment values kept in SSM Parameter Store."""

    def __init__(self, client: Any = None, session: boto3.Session | None = None):
        self.client = _client("ssm", client, session)

    def resolve(self, parameters: dict[str, str]) -> dict[str, str]:
        """
        Read the decrypted value of each parameter.

        Args:
            parameters: Environment variable name -> parameter name

        Raises:
            BuildStepFailure: If a parameter cannot be read
        """
        values: dict[str, str] = {}
        for variable, name in parameters.items():
            try:
                response = self.client.get_parameter(Name=name, WithDecryption=True)
            except ClientError as e:
                raise BuildStepFailure(
                    "parameter_store", f"{name}: {_error_code(e)}: {_error_message(e)}"
                ) from e
            values[variable] = response["Parameter"]["Value"]
        return values


class EcsService(ComputeService):
    """
    Rolling updates of an ECS service.

    A deployment registers a copy of the running task definition with the
    new container images, points the service at it and waits for the
    service to become stable.
    """

    # register_task_definition accepts these fields of describe_task_definition
    REGISTER_FIELDS = (
        "family",
        "taskRoleArn",
        "executionRoleArn",
        "networkMode",
        "containerDefinitions",
        "volumes",
        "placementConstraints",
        "requiresCompatibilities",
        "cpu",
        "memory",
        "pidMode",
        "ipcMode",
        "proxyConfiguration",
        "ephemeralStorage",
        "runtimePlatform",
    )

    def __init__(self, client: Any = None, session: boto3.Session | None = None, poll_interval: int = 15):
        self.client = _client("ecs", client, session)
        self.poll_interval = poll_interval

    def current_revision(self, cluster: str, service: str) -> str:
        return self._describe(cluster, service)["taskDefinition"]

    def deploy(
        self,
        cluster: str,
        service: str,
        image_definitions: list[dict[str, str]],
        timeout: timedelta = DEFAULT_DEPLOY_TIMEOUT,
    ) -> str:
        current = self.current_revision(cluster, service)
        definition = self.client.describe_task_definition(taskDefinition=current)["taskDefinition"]

        images = {entry["name"]: entry["imageUri"] for entry in image_definitions}
        containers = definition["containerDefinitions"]
        unknown = set(images) - {container["name"] for container in containers}
        if unknown:
            raise PipelineError(
                f"Task definition {current} has no container named {', '.join(sorted(unknown))}"
            )

        registration = {k: definition[k] for k in self.REGISTER_FIELDS if k in definition}
        registration["containerDefinitions"] = [
            {**container, "image": images.get(container["name"], container["image"])}
            for container in containers
        ]
        revision = self.client.register_task_definition(**registration)["taskDefinition"]["taskDefinitionArn"]

        self.client.update_service(cluster=cluster, service=service, taskDefinition=revision)
        logger.info("ecs_rollout_started", cluster=cluster, service=service, revision=revision)

        attempts = max(1, int(timeout.total_seconds() // self.poll_interval))
        try:
            self.client.get_waiter("services_stable").wait(
                cluster=cluster,
                services=[service],
                WaiterConfig={"Delay": self.poll_interval, "MaxAttempts": attempts},
            )
        except WaiterError as e:
            reason = self._rollout_failure(e.last_response, revision)
            if reason is not None:
                raise DeployHealthCheckFailure(service, reason) from e
            raise DeployTimeout(service, int(timeout.total_seconds() // 60)) from e

        return revision

    def restore(self, cluster: str, service: str, revision: str) -> None:
        self.client.update_service(cluster=cluster, service=service, taskDefinition=revision)
        logger.info("ecs_revision_restored", cluster=cluster, service=service, revision=revision)

    def _describe(self, cluster: str, service: str) -> dict[str, Any]:
        response = self.client.describe_services(cluster=cluster, services=[service])
        services = response.get("services", [])
        if not services:
            raise PipelineError(f"ECS service '{service}' not found in cluster '{cluster}'")
        return services[0]

    @staticmethod
    def _rollout_failure(response: dict[str, Any] | None, revision: str) -> str | None:
        for svc in (response or {}).get("services", []):
            for deployment in svc.get("deployments", []):
                if deployment.get("taskDefinition") == revision and deployment.get("rolloutState") == "FAILED":
                    return deployment.get("rolloutStateReason", "rollout failed")
        return None


class SnsNotificationSink(NotificationSink):
    """Publish failure events to an SNS topic."""

    SUBJECT_LIMIT = 100

    def __init__(self, topic_arn: str, client: Any = None, session: boto3.Session | None = None):
        self.topic_arn = topic_arn
        self.client = _client("sns", client, session)

    def notify(self, event: FailureEvent) -> None:
        subject = f"{event.pipeline_name} failed in {event.stage_name}"[: self.SUBJECT_LIMIT]
        self.client.publish(
            TopicArn=self.topic_arn,
            Subject=subject,
            Message=event.model_dump_json(),
            MessageAttributes={
                "event_type": {"DataType": "String", "StringValue": event.event_type.value},
            },
        )
        logger.info("failure_notified", topic=self.topic_arn, run_id=event.run_id)


class S3ArtifactStore(ArtifactStore):
    """
    Artifact store in an S3 bucket.

    Layout::

        {prefix}{pipeline}/runs.json              run ids, oldest first
        {prefix}{pipeline}/{run_id}/{stage}.zip   one zip per artifact
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        retain_runs: int = 20,
        client: Any = None,
        session: boto3.Session | None = None,
    ):
        super().__init__(retain_runs)
        self.bucket = bucket
        self.prefix = prefix
        self.client = _client("s3", client, session)

    def put(self, artifact: Artifact) -> None:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for name, content in sorted(artifact.files.items()):
                archive.writestr(name, content)

        self.client.put_object(
            Bucket=self.bucket,
            Key=self._artifact_key(artifact.pipeline, artifact.run_id, artifact.stage),
            Body=buffer.getvalue(),
            Metadata=dict(artifact.metadata),
        )

        runs = self.list_runs(artifact.pipeline)
        if artifact.run_id not in runs:
            runs.append(artifact.run_id)
        while len(runs) > self.retain_runs:
            self._delete_run(artifact.pipeline, runs.pop(0))
        self.client.put_object(
            Bucket=self.bucket,
            Key=self._index_key(artifact.pipeline),
            Body=json.dumps(runs).encode(),
        )

    def get(self, pipeline: str, run_id: str, stage: str) -> Artifact:
        try:
            response = self.client.get_object(
                Bucket=self.bucket,
                Key=self._artifact_key(pipeline, run_id, stage),
            )
        except ClientError as e:
            if _error_code(e) in ("NoSuchKey", "404"):
                raise KeyError(f"No artifact for {pipeline}/{run_id}/{stage}") from None
            raise

        with zipfile.ZipFile(io.BytesIO(response["Body"].read())) as archive:
            files = {name: archive.read(name) for name in archive.namelist()}

        return Artifact(
            pipeline=pipeline,
            run_id=run_id,
            stage=stage,
            files=files,
            metadata=dict(response.get("Metadata", {})),
            created_at=response["LastModified"],
        )

    def list_runs(self, pipeline: str) -> list[str]:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._index_key(pipeline))
        except ClientError as e:
            if _error_code(e) in ("NoSuchKey", "404"):
                return []
            raise
        return list(json.loads(response["Body"].read()))

    def _delete_run(self, pipeline: str, run_id: str) -> None:
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=f"{self.prefix}{pipeline}/{run_id}/"):
            keys = [{"Key": item["Key"]} for item in page.get("Contents", [])]
            if keys:
                self.client.delete_objects(Bucket=self.bucket, Delete={"Objects": keys})
        logger.debug("artifacts_evicted", pipeline=pipeline, run_id=run_id)

    def _index_key(self, pipeline: str) -> str:
        return f"{self.prefix}{pipeline}/runs.json"

    def _artifact_key(self, pipeline: str, run_id: str, stage: str) -> str:
        return f"{self.prefix}{pipeline}/{run_id}/{stage}.zip"
