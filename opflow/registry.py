"""
JobRegistry - Discover and load job scripts from a jobs directory.

The registry provides:
- Loading job scripts (*.py) from a directory tree by job id (file stem)
- Caching loaded scripts
- Content-addressable lookup via SHA256 hash
- Compiling a job into a Pipeline

Files under a "_deprecated" directory and files whose name starts with "_"
are ignored.
"""

import hashlib
import json
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from opflow.errors import OpflowError
from opflow.schemas import JobDef

if TYPE_CHECKING:
    from opflow.compiler import Compiler
    from opflow.pipeline import Pipeline

JOB_SUFFIX = ".py"


class JobNotFoundError(OpflowError):
    """Raised when a job script is not found."""
    pass


class JobValidationError(OpflowError):
    """Raised when a job script cannot be read."""
    pass


class JobRegistry:
    """
    Registry for loading and caching job scripts.

    Example directory structure:
        jobs/
            sync/
                sync_patients.py
            reports/
                daily_report.py
            _deprecated/
                old_sync.py        (ignored)
    """

    def __init__(self, jobs_dir: Path | str):
        """
        Initialize the registry.

        Args:
            jobs_dir: Path to directory containing job scripts
        """
        self._jobs_dir = Path(jobs_dir)
        self._cache: dict[str, JobDef] = {}
        self._hash_index: dict[str, str] = {}  # sha256 -> job_id

    @property
    def jobs_dir(self) -> Path:
        """Get the jobs directory path."""
        return self._jobs_dir

    def load(self, job_id: str) -> JobDef:
        """
        Load a job script by id.

        Results are cached for subsequent calls.

        Args:
            job_id: The job identifier (filename without extension)

        Returns:
            The loaded JobDef

        Raises:
            JobNotFoundError: If no script exists for the job id
            JobValidationError: If the script cannot be read
        """
        if job_id in self._cache:
            return self._cache[job_id]

        path = self._find_job(job_id)
        if path is None:
            raise JobNotFoundError(f"Job not found: {job_id} (searched {self._jobs_dir})")

        try:
            source = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise JobValidationError(f"Failed to load {path}: {e}") from e

        job_def = JobDef(job_id=job_id, source=source, path=path)

        self._cache[job_id] = job_def
        self._hash_index[self.compute_hash(job_def)] = job_id
        return job_def

    def load_by_hash(self, sha256: str) -> Optional[JobDef]:
        """
        Load a JobDef by its content hash.

        Args:
            sha256: The SHA256 hash of the JobDef

        Returns:
            The JobDef if found in cache, None otherwise
        """
        job_id = self._hash_index.get(sha256)
        if job_id is None:
            return None
        return self._cache.get(job_id)

    def _is_job_file(self, path: Path) -> bool:
        return (
            path.is_file()
            and not path.name.startswith("_")
            and "_deprecated" not in path.relative_to(self._jobs_dir).parts
        )

    def list_jobs(self) -> list[str]:
        """
        List all available job IDs.

        Returns:
            Sorted list of job IDs found in the jobs directory
        """
        if not self._jobs_dir.exists():
            return []

        return sorted({
            f.stem
            for f in self._jobs_dir.glob(f"**/*{JOB_SUFFIX}")
            if self._is_job_file(f)
        })

    def _find_job(self, job_id: str) -> Optional[Path]:
        """
        Find the script for a job id.

        The root directory is checked first, then subdirectories.
        """
        filename = f"{job_id}{JOB_SUFFIX}"

        root_path = self._jobs_dir / filename
        if root_path.exists() and self._is_job_file(root_path):
            return root_path

        for match in sorted(self._jobs_dir.glob(f"**/{filename}")):
            if self._is_job_file(match):
                return match
        return None

    @staticmethod
    def compute_hash(job_def: JobDef) -> str:
        """
        Compute SHA256 hash of a job for content addressing.

        Only the job id and source are hashed, so moving a file does not
        change its hash.

        Args:
            job_def: The job to hash

        Returns:
            Hexadecimal SHA256 hash string
        """
        canonical = json.dumps(
            {"job_id": job_def.job_id, "source": job_def.source},
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode()).hexdigest()

    def compile(self, job_id: str, compiler: "Compiler") -> "Pipeline":
        """Load a job and compile it into a Pipeline."""
        job_def = self.load(job_id)
        return compiler.compile(job_def.source, filename=job_def.filename, name=job_def.job_id)

    def clear_cache(self) -> None:
        """Clear the job cache."""
        self._cache.clear()
        self._hash_index.clear()

    def preload_all(self) -> int:
        """
        Preload all job scripts into cache.

        Returns:
            Number of jobs loaded

        Raises:
            JobValidationError: If any job script cannot be read
        """
        count = 0
        for job_id in self.list_jobs():
            self.load(job_id)
            count += 1
        return count
