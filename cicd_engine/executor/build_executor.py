"""
Build Executor
==============
Build Agent collaborators: run one stage command against a run workspace and
report {exit_status, captured_output, duration}.

BOUNDARY RULES (CRITICAL):
    - Executor ONLY observes execution.
    - Executor NEVER decides stage outcome — the stage handler does.
    - Executor NEVER raises for command failures; infrastructure errors are
      reported through ``CommandResult.error``.
    - Cancellation (ABORT / timeout) kills the process or container before
      the CancelledError propagates.

AGENTS:
    ShellBuildAgent  — asyncio subprocess on the host, process group killed
                       on cancel.
    DockerBuildAgent — ephemeral sandbox container per command, workspace
                       mounted at /workspace, container destroyed after.
"""
import asyncio
import os
import signal
import time
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import docker
from docker.errors import APIError, ImageNotFound
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout

from cicd_engine.core.config import DOCKER_IMAGE
from cicd_engine.pipeline.cancellation import CancellationToken

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Command Result (returned to stage handlers)
# ---------------------------------------------------------------------------
@dataclass
class CommandResult:
    """
    Structured output from a single command execution.

    Fields
    ------
    exit_status : int
        Process exit code (0 = success). -1 when the command never ran.
    captured_output : str
        Combined stdout + stderr.
    duration : float
        Wall clock seconds.
    log_excerpt : str
        First + last N lines for status descriptions and the run archive.
    environment_metadata : dict
        Agent info: image, container id, workdir.
    error : str | None
        Infrastructure failure message (not a failing build).
    timed_out : bool
        True when the agent killed the command at its timeout.
    """
    exit_status: int = -1
    captured_output: str = ""
    duration: float = 0.0
    log_excerpt: str = ""
    environment_metadata: dict = field(default_factory=dict)
    error: Optional[str] = None
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_status == 0 and self.error is None


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 30
_EXCERPT_TAIL_LINES = 30


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """
    Create an abbreviated log showing the first and last N lines.

    If the log is short enough, returns it as-is.
    """
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    omitted = total - head - tail
    return "\n".join(
        lines[:head]
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + lines[-tail:]
    )


class BuildAgent:
    """Collaborator contract: execute(command_spec, workspace, timeout, token) → CommandResult."""

    kind = "abstract"

    async def execute(
        self,
        command_spec: str,
        workspace: str,
        timeout: float,
        token: Optional[CancellationToken] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Host shell agent
# ---------------------------------------------------------------------------
class ShellBuildAgent(BuildAgent):

    kind = "shell"

    async def execute(
        self,
        command_spec: str,
        workspace: str,
        timeout: float,
        token: Optional[CancellationToken] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        result = CommandResult(environment_metadata={"agent": self.kind, "workdir": workspace})
        if token is not None and token.cancelled:
            result.error = "cancelled before start"
            return result

        start = time.monotonic()
        proc = await asyncio.create_subprocess_shell(
            command_spec,
            cwd=workspace or None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env={**os.environ, "CI": "true", **(env or {})},
            start_new_session=True,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
            result.exit_status = proc.returncode if proc.returncode is not None else -1
            result.captured_output = (stdout or b"").decode("utf-8", errors="replace")
        except asyncio.TimeoutError:
            _kill_process_group(proc)
            await proc.wait()
            result.error = f"command exceeded {timeout}s"
            result.timed_out = True
            result.exit_status = -1
        except asyncio.CancelledError:
            _kill_process_group(proc)
            await asyncio.shield(proc.wait())
            logger.warning("Shell command cancelled, process %s killed", proc.pid)
            raise
        finally:
            result.duration = round(time.monotonic() - start, 3)
            result.log_excerpt = create_log_excerpt(result.captured_output)

        logger.info(
            "Shell execution complete | exit=%d | time=%.2fs | cmd=%s",
            result.exit_status, result.duration, command_spec[:80],
        )
        return result


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass


# ---------------------------------------------------------------------------
# Docker sandbox agent
# ---------------------------------------------------------------------------
# Docker resource limits
_MEMORY_LIMIT = "2g"
_CPU_COUNT = 2
_WAIT_POLL_SECONDS = 2


class DockerBuildAgent(BuildAgent):
    """
    One ephemeral container per command.

    The container is started detached; the agent then polls ``wait`` in
    short slices so the cancellation token is checked between slices.
    """

    kind = "docker"

    def __init__(self, docker_image: str = DOCKER_IMAGE, client=None) -> None:
        self.docker_image = docker_image
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def execute(
        self,
        command_spec: str,
        workspace: str,
        timeout: float,
        token: Optional[CancellationToken] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        result = CommandResult()
        start = time.monotonic()
        container = None

        if token is not None and token.cancelled:
            result.error = "cancelled before start"
            return result

        try:
            client = self._get_client()
            logger.info(
                "Starting container | image=%s | timeout=%.0fs | workspace=%s",
                self.docker_image, timeout, workspace,
            )
            container = await asyncio.to_thread(
                client.containers.run,
                image=self.docker_image,
                command=["bash", "-c", command_spec],
                volumes={os.path.abspath(workspace): {"bind": "/workspace", "mode": "rw"}},
                environment={"CI": "true", **(env or {})},
                working_dir="/workspace",
                mem_limit=_MEMORY_LIMIT,
                nano_cpus=_CPU_COUNT * 1_000_000_000,
                labels={"project": "cicd-engine", "role": "build-agent"},
                detach=True,
            )

            exit_status = None
            while exit_status is None:
                if token is not None and token.cancelled:
                    result.error = "cancelled"
                    break
                if time.monotonic() - start > timeout:
                    result.error = f"command exceeded {timeout}s"
                    result.timed_out = True
                    break
                try:
                    wait_result = await asyncio.to_thread(container.wait, timeout=_WAIT_POLL_SECONDS)
                    exit_status = wait_result.get("StatusCode", -1)
                except (ReadTimeout, RequestsConnectionError):
                    continue

            result.exit_status = exit_status if exit_status is not None else -1
            log_bytes = await asyncio.to_thread(container.logs, stdout=True, stderr=True)
            result.captured_output = log_bytes.decode("utf-8", errors="replace")
            result.environment_metadata = {
                "agent": self.kind,
                "image": self.docker_image,
                "container_id": container.short_id,
                "timeout_applied": timeout,
            }

        except ImageNotFound:
            result.error = f"Docker image '{self.docker_image}' not found"
            logger.error(result.error)

        except APIError as e:
            result.error = f"Docker API error: {e}"
            logger.error(result.error)

        finally:
            # Always destroy the container, including on cancellation
            if container is not None:
                try:
                    await asyncio.shield(asyncio.to_thread(container.remove, force=True))
                    logger.info("Container %s destroyed", container.short_id)
                except Exception:
                    logger.warning("Failed to remove container", exc_info=True)
            result.duration = round(time.monotonic() - start, 3)
            result.log_excerpt = create_log_excerpt(result.captured_output)

        logger.info(
            "Container execution complete | exit=%d | time=%.2fs",
            result.exit_status, result.duration,
        )
        return result


def create_build_agent(kind: str, docker_image: str = DOCKER_IMAGE) -> BuildAgent:
    """Build Agent factory keyed by the ``build_agent`` config option."""
    if kind == "docker":
        return DockerBuildAgent(docker_image=docker_image)
    return ShellBuildAgent()
