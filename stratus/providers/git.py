"""
Source checkouts with the git CLI.
"""

import subprocess
import tempfile
from pathlib import Path

import structlog

from stratus.pipeline.errors import SourceFailure
from stratus.pipeline.services import SourceConnection, SourceRevision

logger = structlog.get_logger(__name__)


class GitSourceConnection(SourceConnection):
    """
    Shallow-clone a branch and hand its files to the pipeline.

    Args:
        base_url: Prefix of repository URLs; the repository URL is
            ``{base_url}/{owner}/{repository}.git``
    """

    def __init__(self, base_url: str = "https://github.com", executable: str = "git"):
        self.base_url = base_url.rstrip("/")
        self.executable = executable

    def url(self, owner: str, repository: str) -> str:
        return f"{self.base_url}/{owner}/{repository}.git"

    def fetch(self, owner: str, repository: str, branch: str) -> SourceRevision:
        url = self.url(owner, repository)
        with tempfile.TemporaryDirectory(prefix="stratus-source-") as workdir:
            checkout = Path(workdir) / repository
            self._git("clone", "--depth", "1", "--branch", branch, url, str(checkout))
            commit_id = self._git("rev-parse", "HEAD", cwd=checkout).strip()
            message = self._git("log", "-1", "--format=%s", cwd=checkout).strip()

            files = {
                path.relative_to(checkout).as_posix(): path.read_bytes()
                for path in sorted(checkout.rglob("*"))
                if path.is_file() and ".git" not in path.relative_to(checkout).parts
            }

        logger.info("source_cloned", repository=f"{owner}/{repository}", branch=branch, commit=commit_id)
        return SourceRevision(commit_id=commit_id, branch=branch, files=files, message=message)

    def _git(self, *args: str, cwd: Path | None = None) -> str:
        cmd = [self.executable, *args]
        try:
            result = subprocess.run(cmd, cwd=cwd, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            message = f"git {args[0]} failed"
            if e.stderr:
                message += f": {e.stderr.strip()}"
            raise SourceFailure(message) from e
        except OSError as e:
            raise SourceFailure(f"cannot run {self.executable}: {e}") from e
        return result.stdout
