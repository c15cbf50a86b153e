"""
Per-job temporary workspaces.

Each job gets its own directory named by a generated id. Client-supplied
file names never pick the directory and are reduced to a safe base name
before use.
"""

import re
import shutil
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Dict, Optional


_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]")


def safe_filename(name: str, default: str = "package.ipk") -> str:
    """Reduce a client-supplied name to a base name with no path parts."""
    base = Path(name.replace("\\", "/")).name
    base = _SAFE_NAME.sub("_", base).lstrip(".")
    return base or default


class JobWorkspace:
    """
    An isolated temporary directory for one job.

    Use as a context manager; the directory is removed on exit unless
    keep=True. `lock` serializes operations on the job's files.
    """

    PREFIX = "webos_resign_"

    def __init__(self, base_dir: Optional[str] = None, keep: bool = False,
                 job_id: Optional[str] = None):
        self.job_id = job_id or uuid.uuid4().hex
        self.keep = keep
        self.lock = threading.RLock()
        if base_dir:
            Path(base_dir).mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=f"{self.PREFIX}{self.job_id}_", dir=base_dir))

    def path_for(self, name: str) -> Path:
        """A path inside the workspace for a client-supplied name."""
        target = (self.path / safe_filename(name)).resolve()
        if target.parent != self.path.resolve():
            raise ValueError(f"Refusing path outside workspace: {name!r}")
        return target

    def subdir(self, name: str) -> Path:
        directory = self.path_for(name)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def cleanup(self) -> None:
        if self.path.exists():
            shutil.rmtree(self.path, ignore_errors=True)

    def __enter__(self) -> "JobWorkspace":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self.keep:
            self.cleanup()


class WorkspaceRegistry:
    """Track live workspaces by job id for a long-running service."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir
        self._jobs: Dict[str, JobWorkspace] = {}
        self._lock = threading.Lock()

    def create(self) -> JobWorkspace:
        workspace = JobWorkspace(self.base_dir, keep=True)
        with self._lock:
            self._jobs[workspace.job_id] = workspace
        return workspace

    def get(self, job_id: str) -> Optional[JobWorkspace]:
        with self._lock:
            return self._jobs.get(job_id)

    def release(self, job_id: str) -> None:
        with self._lock:
            workspace = self._jobs.pop(job_id, None)
        if workspace:
            with workspace.lock:
                workspace.cleanup()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
