"""
Container image build stage.

The build runs a fixed sequence of steps. Each step is fatal on failure
and never retried:

    install -> decrypt_secrets -> registry_login -> compute_tag
            -> build -> tag -> push -> emit_descriptor

The same sequence is published as a versioned BuildScript so a managed
build service (CodeBuild) can run it; the run state machine only cares
whether the stage succeeded and which descriptor it produced.
"""

import os
from string import Template
from typing import Any, Callable, Mapping
from dataclasses import dataclass, field

import yaml

from stratus.pipeline.actions import (
    IMAGE_DEFINITIONS_FILE,
    Action,
    ActionContext,
    ActionOutput,
    render_image_definitions,
)
from stratus.pipeline.errors import BuildStepFailure, PipelineError, SecretDecryptFailure
from stratus.pipeline.services import ContainerBuilder, ImageRegistry, SecretDecrypter
from stratus.pipeline.versioning import latest_tag, next_image_tag

BUILD_STEPS = (
    "install",
    "decrypt_secrets",
    "registry_login",
    "compute_tag",
    "build",
    "tag",
    "push",
    "emit_descriptor",
)

DECRYPTED_ENV_FILE = ".env"


def expand_build_args(build_args: Mapping[str, str], environment: Mapping[str, str]) -> dict[str, str]:
    """
    Substitute ``$NAME`` and ``${NAME}`` references in build argument values.

    Raises:
        BuildStepFailure: If a value references a variable that is not set
    """
    expanded: dict[str, str] = {}
    for key, value in build_args.items():
        try:
            expanded[key] = Template(value).substitute(environment)
        except KeyError as e:
            raise BuildStepFailure(
                "build", f"build argument {key} references unset variable ${e.args[0]}"
            ) from None
        except ValueError as e:
            raise BuildStepFailure("build", f"build argument {key}: {e}") from None
    return expanded


@dataclass
class BuildScript:
    """
    Versioned build script handed to a managed build service.

    The script is data: phases of shell commands plus the artifact files
    the build must leave behind.
    """

    version: str = "0.2"
    phases: dict[str, list[str]] = field(default_factory=dict)
    parameter_store: dict[str, str] = field(default_factory=dict)
    artifact_files: list[str] = field(default_factory=lambda: [IMAGE_DEFINITIONS_FILE])

    def to_dict(self) -> dict[str, Any]:
        spec: dict[str, Any] = {"version": self.version}
        if self.parameter_store:
            spec["env"] = {"parameter-store": dict(self.parameter_store)}
        spec["phases"] = {phase: {"commands": list(commands)} for phase, commands in self.phases.items()}
        spec["artifacts"] = {"files": list(self.artifact_files)}
        return spec

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False)

    @classmethod
    def for_container_image(
        cls,
        repository: str,
        container_name: str,
        encrypted_env_path: str,
        install_commands: list[str] | None = None,
        build_args: dict[str, str] | None = None,
        parameter_store: dict[str, str] | None = None,
    ) -> 'BuildScript':
        """
        Shell rendition of ContainerImageBuild.

        Expects AWS_ACCOUNT_ID, AWS_DEFAULT_REGION and KMS_KEY_ID in the
        build environment.
        """
        registry = "$AWS_ACCOUNT_ID.dkr.ecr.$AWS_DEFAULT_REGION.amazonaws.com"
        image = f"{registry}/{repository}:$IMAGE_TAG"
        args = " ".join(f"--build-arg {k}={v}" for k, v in (build_args or {}).items())
        build = f"docker build {args} -t {repository}:$IMAGE_TAG ." if args else f"docker build -t {repository}:$IMAGE_TAG ."
        describe = (
            f"aws ecr describe-images --repository-name {repository} "
            "--query 'sort_by(imageDetails[?imageTags != `null`], &imagePushedAt)[-1].imageTags[0]' "
            "--output text"
        )

        return cls(
            parameter_store=dict(parameter_store or {}),
            phases={
                "install": list(install_commands or []),
                "pre_build": [
                    f"aws kms decrypt --ciphertext-blob fileb://$(pwd){encrypted_env_path} "
                    f"--key-id $KMS_KEY_ID --output text --query Plaintext | base64 --decode > {DECRYPTED_ENV_FILE}",
                    "aws ecr get-login-password --region $AWS_DEFAULT_REGION | "
                    f"docker login --username AWS --password-stdin {registry}",
                    f"current_version=$({describe})",
                    'if [ "$current_version" = "None" ]; then IMAGE_TAG=1.0; else '
                    'IMAGE_TAG="${current_version%.*}.$((${current_version##*.} + 1))"; fi',
                ],
                "build": [
                    build,
                    f"docker tag {repository}:$IMAGE_TAG {image}",
                ],
                "post_build": [
                    f"docker push {image}",
                    f"printf '[{{\"name\":\"{container_name}\",\"imageUri\":\"%s\"}}]' {image} > {IMAGE_DEFINITIONS_FILE}",
                ],
            },
        )


class ContainerImageBuild(Action):
    """
    Build, version and push the service image, then emit the deployment
    descriptor.

    Example:
        build = ContainerImageBuild(
            registry=EcrRegistry(account_id="123456789012", region="ap-south-1"),
            builder=DockerCli(),
            decrypter=KmsDecrypter(session=session),
            repository="demo-service-ecr-repo",
            container_name="DemoContainer",
            kms_key_id="0ecdd329-...",
        )
    """

    def __init__(
        self,
        registry: ImageRegistry,
        builder: ContainerBuilder,
        decrypter: SecretDecrypter,
        repository: str,
        container_name: str,
        kms_key_id: str,
        encrypted_env_path: str = ".enc.env.production",
        install_commands: list[str] | None = None,
        build_args: dict[str, str] | None = None,
        build_environment: Callable[[], Mapping[str, str]] | None = None,
        name: str = "Docker-Build",
    ):
        self.registry = registry
        self.builder = builder
        self.decrypter = decrypter
        self.repository = repository
        self.container_name = container_name
        self.kms_key_id = kms_key_id
        self.encrypted_env_path = encrypted_env_path.lstrip("/")
        self.install_commands = list(install_commands or [])
        self.build_args = dict(build_args or {})
        self.build_environment = build_environment or (lambda: os.environ)
        self.name = name

    def execute(self, context: ActionContext) -> ActionOutput:
        if context.input is None:
            raise PipelineError("Build stage has no source artifact")

        log = context.logger
        files = dict(context.input.files)

        def step(name: str, fn: Callable[[], Any]) -> Any:
            if log is not None:
                log.info("build_step", step=name)
            try:
                return fn()
            except BuildStepFailure:
                raise
            except PipelineError as e:
                raise BuildStepFailure(name, str(e)) from e
            except Exception as e:
                raise BuildStepFailure(name, f"{type(e).__name__}: {e}") from e

        step("install", lambda: self.builder.install(self.install_commands))

        files[DECRYPTED_ENV_FILE] = step("decrypt_secrets", lambda: self._decrypt(files))

        repository_uri = step("registry_login", self._login)

        tag = step("compute_tag", self._next_tag)
        local_image = f"{self.repository}:{tag}"
        remote_image = f"{repository_uri}:{tag}"

        step("build", lambda: self.builder.build(
            files, local_image, expand_build_args(self.build_args, self.build_environment())
        ))
        step("tag", lambda: self.builder.tag(local_image, remote_image))
        step("push", lambda: self.builder.push(remote_image))

        descriptor = step(
            "emit_descriptor",
            lambda: render_image_definitions(self.container_name, remote_image),
        )

        if log is not None:
            log.info("image_pushed", image=remote_image, tag=tag)

        return ActionOutput(
            files={IMAGE_DEFINITIONS_FILE: descriptor},
            metadata={"image_tag": tag, "image_uri": remote_image},
        )

    def _decrypt(self, files: dict[str, bytes]) -> bytes:
        ciphertext = files.get(self.encrypted_env_path)
        if ciphertext is None:
            raise SecretDecryptFailure(f"'{self.encrypted_env_path}' not found in source artifact")
        return self.decrypter.decrypt(ciphertext, self.kms_key_id)

    def _next_tag(self) -> str:
        return next_image_tag(latest_tag(self.registry.describe_images(self.repository)))

    def _login(self) -> str:
        repository_uri = self.registry.repository_uri(self.repository)
        registry_host = repository_uri.split("/", 1)[0]
        self.builder.login(registry_host, self.registry.username, self.registry.login_password())
        return repository_uri
