"""
Workspace Service
=================
Manages repository mirrors and per-run checkouts on the host machine.

Philosophy:
    - Clone ONCE per repository into <workspace_root>/mirrors/<repo-name>/
    - Each run gets its own directory <workspace_root>/runs/<run_id>/ checked
      out at the exact commit_sha (detached HEAD).
    - git runs as asyncio subprocesses so CHECKOUT is cancellable.
"""
import asyncio
import os
import shutil
import logging
from typing import List, Optional, Tuple

from cicd_engine.pipeline.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class CheckoutError(Exception):
    """git failed while preparing a run workspace."""


def get_repo_name(repo_identifier: str) -> str:
    """Extract a filesystem-safe repository name from 'owner/repo' or a URL."""
    name = repo_identifier.rstrip("/").split("/")[-1]
    if name.endswith(".git"):
        name = name[:-4]
    owner = repo_identifier.rstrip("/").split("/")[-2] if "/" in repo_identifier else ""
    owner = owner.split(":")[-1]
    return f"{owner}__{name}" if owner else name


def resolve_clone_url(repository_identifier: str, repository_url: str = "", github_token: str = "") -> str:
    """
    Clone URL for a repository, with the token embedded for private GitHub repos.
    """
    url = repository_url or f"https://github.com/{repository_identifier}.git"
    if github_token and url.startswith("https://github.com/"):
        url = url.replace("https://", f"https://x-access-token:{github_token}@", 1)
    return url


async def _git(args: List[str], cwd: Optional[str], token: Optional[CancellationToken]) -> Tuple[int, str]:
    if token is not None:
        token.raise_if_cancelled()
    proc = await asyncio.create_subprocess_exec(
        "git", *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        out, _ = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await asyncio.shield(proc.wait())
        raise
    return proc.returncode or 0, (out or b"").decode("utf-8", errors="replace")


class WorkspaceManager:

    def __init__(self, workspace_root: str, github_token: str = "") -> None:
        self.workspace_root = os.path.abspath(workspace_root)
        self.github_token = github_token
        self._mirror_locks: dict = {}

    def mirror_path(self, repository_identifier: str) -> str:
        return os.path.join(self.workspace_root, "mirrors", get_repo_name(repository_identifier))

    def run_path(self, run_id: int) -> str:
        return os.path.join(self.workspace_root, "runs", str(run_id))

    async def checkout(
        self,
        repository_identifier: str,
        commit_sha: str,
        run_id: int,
        repository_url: str = "",
        token: Optional[CancellationToken] = None,
    ) -> str:
        """
        Prepare <workspace_root>/runs/<run_id> at ``commit_sha``.

        Returns the absolute path of the run workspace.

        Raises
        ------
        CheckoutError
            When clone / fetch / checkout fails.
        StageCancelled
            When the token is cancelled between git steps.
        """
        mirror = self.mirror_path(repository_identifier)
        clone_url = resolve_clone_url(repository_identifier, repository_url, self.github_token)

        lock = self._mirror_locks.setdefault(mirror, asyncio.Lock())
        async with lock:
            if not os.path.exists(mirror):
                os.makedirs(os.path.dirname(mirror), exist_ok=True)
                logger.info("Cloning %s into %s", repository_identifier, mirror)
                code, out = await _git(["clone", "--no-checkout", clone_url, mirror], None, token)
                if code != 0:
                    raise CheckoutError(f"clone failed: {out.strip()[-400:]}")
            else:
                code, out = await _git(["fetch", "--prune", "origin"], mirror, token)
                if code != 0:
                    raise CheckoutError(f"fetch failed: {out.strip()[-400:]}")

        dest = self.run_path(run_id)
        if os.path.exists(dest):
            shutil.rmtree(dest)
        os.makedirs(os.path.dirname(dest), exist_ok=True)

        code, out = await _git(["clone", "--shared", "--no-checkout", mirror, dest], None, token)
        if code != 0:
            raise CheckoutError(f"worktree clone failed: {out.strip()[-400:]}")

        code, out = await _git(["checkout", "--force", "--detach", commit_sha], dest, token)
        if code != 0:
            # Commit pushed after the last mirror fetch
            await _git(["fetch", "origin", commit_sha], dest, token)
            code, out = await _git(["checkout", "--force", "--detach", commit_sha], dest, token)
            if code != 0:
                raise CheckoutError(f"checkout of {commit_sha[:7]} failed: {out.strip()[-400:]}")

        logger.info("Run %d workspace ready at %s (%s)", run_id, dest, commit_sha[:7])
        return dest

    def cleanup(self, run_id: int) -> None:
        """Remove a finished run's workspace."""
        dest = self.run_path(run_id)
        if os.path.exists(dest):
            shutil.rmtree(dest, ignore_errors=True)
            logger.debug("Removed workspace %s", dest)
