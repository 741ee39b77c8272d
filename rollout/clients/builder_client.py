import subprocess
import logging

from rollout.errors import BuildError, PublishError

logger = logging.getLogger(__name__)


class BuilderClient:
    def __init__(self, executable: str = "docker"):
        self.executable: str = executable

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess:
        return subprocess.run(cmd, check=False, capture_output=True, text=True)

    def build(self, context: str, image: str, dockerfile: str | None = None) -> None:
        cmd = [self.executable, "build", "-t", image]
        if dockerfile:
            cmd += ["-f", dockerfile]
        cmd.append(context)
        try:
            result = self._run(cmd)
        except OSError as e:
            raise BuildError(f"Cannot run {self.executable}: {e}") from e
        if result.returncode != 0:
            logger.error(f"Build of {image} failed with code {result.returncode}")
            raise BuildError(f"Build of {image} failed: {result.stderr.strip()}")

    def push(self, image: str) -> None:
        try:
            result = self._run([self.executable, "push", image])
        except OSError as e:
            raise PublishError(f"Cannot run {self.executable}: {e}") from e
        if result.returncode != 0:
            logger.error(f"Push of {image} failed with code {result.returncode}")
            raise PublishError(f"Push of {image} failed: {result.stderr.strip()}")
