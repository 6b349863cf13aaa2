"""
Container builds with the docker CLI.
"""

import subprocess
import tempfile
from pathlib import Path

import structlog

from stratus.pipeline.errors import BuildStepFailure, ImagePushFailure, RegistryAuthFailure
from stratus.pipeline.services import ContainerBuilder

logger = structlog.get_logger(__name__)


class DockerCli(ContainerBuilder):
    """
    ContainerBuilder that shells out to ``docker``.

    Example:
        builder = DockerCli()
        builder.login("123456789012.dkr.ecr.ap-south-1.amazonaws.com", "AWS", password)
        builder.build(files, "demo-service-ecr-repo:1.8", {"NODE_VERSION": "20"})
    """

    def __init__(self, executable: str = "docker", shell: str = "/bin/sh"):
        self.executable = executable
        self.shell = shell

    def install(self, commands: list[str]) -> None:
        for command in commands:
            self._run([self.shell, "-c", command], step="install")

    def login(self, registry: str, username: str, password: str) -> None:
        try:
            self._run(
                [self.executable, "login", "--username", username, "--password-stdin", registry],
                step="registry_login",
                input=password,
            )
        except BuildStepFailure as e:
            raise RegistryAuthFailure(str(e)) from e

    def build(self, context: dict[str, bytes], image: str, build_args: dict[str, str]) -> None:
        """Write the source files to a scratch directory and build it."""
        with tempfile.TemporaryDirectory(prefix="stratus-build-") as workdir:
            root = Path(workdir)
            for name, content in context.items():
                path = root / name
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(content)

            cmd = [self.executable, "build"]
            for key, value in build_args.items():
                cmd.extend(["--build-arg", f"{key}={value}"])
            cmd.extend(["-t", image, str(root)])
            self._run(cmd, step="build")

    def tag(self, source: str, target: str) -> None:
        self._run([self.executable, "tag", source, target], step="tag")

    def push(self, image: str) -> None:
        try:
            self._run([self.executable, "push", image], step="push")
        except BuildStepFailure as e:
            raise ImagePushFailure(str(e)) from e

    def _run(self, cmd: list[str], step: str, input: str | None = None) -> subprocess.CompletedProcess:
        """
        Run one command.

        Raises:
            BuildStepFailure: If the command exits non-zero or cannot be started
        """
        logger.debug("docker_command", step=step, command=cmd[:2])
        try:
            return subprocess.run(
                cmd,
                input=input,
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            message = f"command exited with status {e.returncode}"
            if e.stderr:
                message += f"\n{e.stderr.strip()}"
            raise BuildStepFailure(step, message) from e
        except OSError as e:
            raise BuildStepFailure(step, f"cannot run {cmd[0]}: {e}") from e
