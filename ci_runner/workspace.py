"""
Workspace manager for per-job build directories.

Every job gets a fresh, empty directory under a shared root. The
directory is owned by the job's executor and removed when the job
reaches a terminal state, whatever the outcome.
"""

import asyncio
import logging
import re
import shutil
import tempfile
from pathlib import Path

from ci_common.errors import WorkspaceError
from ci_common.models import Workspace

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "ci_job_"


class WorkspaceManager:
    """
    Creates and destroys isolated working directories for jobs.

    Directory names are generated by tempfile.mkdtemp, so they never
    collide between concurrent jobs or across runner restarts, even when
    the same job id is seen twice.
    """

    def __init__(self, root: str | Path | None = None):
        """
        Initialize the workspace manager.

        Args:
            root: Directory under which workspaces are created.
                  Defaults to the system temporary directory.
        """
        self.root = Path(root) if root is not None else Path(tempfile.gettempdir())
        self.active: dict[Path, Workspace] = {}
        self.acquired_count = 0
        self.released_count = 0

    def _directory_prefix(self, job_id: str) -> str:
        """
        Get the directory name prefix for a job.

        Args:
            job_id: Job identifier

        Returns:
            "ci_job_{job_id}_" with anything unsafe in the id replaced
        """
        safe_id = re.sub(r"[^A-Za-z0-9_.-]", "_", job_id)[:64]
        return f"{WORKSPACE_PREFIX}{safe_id}_"

    def _create(self, job_id: str) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=self._directory_prefix(job_id), dir=self.root))

    async def acquire(self, job_id: str) -> Workspace:
        """
        Create a fresh, empty workspace for a job.

        Args:
            job_id: Job identifier

        Returns:
            The new Workspace

        Raises:
            WorkspaceError: If the directory could not be created
            asyncio.CancelledError: If the caller was cancelled; a directory
                created in the meantime is removed before this is raised
        """
        # The thread keeps running when the caller is cancelled
        creation = asyncio.ensure_future(asyncio.to_thread(self._create, job_id))
        try:
            path = await asyncio.shield(creation)
        except asyncio.CancelledError:
            await self._discard(job_id, creation)
            raise
        except OSError as e:
            raise WorkspaceError(
                f"Failed to create workspace for job {job_id} under {self.root}: {e}"
            ) from e

        return self._register(job_id, path)

    def _register(self, job_id: str, path: Path) -> Workspace:
        workspace = Workspace(job_id=job_id, path=path)
        self.active[path] = workspace
        self.acquired_count += 1
        logger.debug(f"Acquired workspace {path} for job {job_id}")
        return workspace

    async def _discard(self, job_id: str, creation: asyncio.Future) -> None:
        """Release the workspace of an acquire() whose caller went away."""
        try:
            path = await creation
        except OSError:
            return
        logger.info(f"Acquire for job {job_id} was cancelled, removing {path}")
        await self.release(self._register(job_id, path))

    async def release(self, workspace: Workspace) -> None:
        """
        Remove a workspace and everything in it.

        Args:
            workspace: Workspace returned by acquire()

        This is a best-effort operation that won't raise exceptions; a
        directory that cannot be removed is logged and left behind.
        """
        if self.active.pop(workspace.path, None) is None:
            logger.warning(
                f"Ignoring release of unknown workspace {workspace.path} "
                f"(job {workspace.job_id})"
            )
            return

        self.released_count += 1
        try:
            await asyncio.to_thread(shutil.rmtree, workspace.path)
            logger.debug(f"Released workspace {workspace.path}")
        except FileNotFoundError:
            logger.warning(f"Workspace {workspace.path} was already removed")
        except OSError as e:
            logger.warning(f"Failed to remove workspace {workspace.path}: {e}")

    async def purge_stale(self) -> int:
        """
        Remove workspaces left behind by a previous runner process.

        Only directories carrying the workspace prefix that are not in use
        by this manager are removed.

        Returns:
            Number of directories removed
        """
        if not self.root.is_dir():
            return 0

        removed = 0
        for path in self.root.glob(f"{WORKSPACE_PREFIX}*"):
            if not path.is_dir() or path in self.active:
                continue
            try:
                await asyncio.to_thread(shutil.rmtree, path)
                removed += 1
                logger.info(f"Removed stale workspace {path}")
            except OSError as e:
                logger.warning(f"Failed to remove stale workspace {path}: {e}")
        return removed
