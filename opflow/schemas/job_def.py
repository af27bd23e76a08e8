"""
JobDef schema - a job script as found on disk.

A JobDef is the static, version-controlled source of a job. It is compiled
into a Pipeline by opflow.compiler.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional


@dataclass(frozen=True)
class JobDef:
    """
    A job script.

    Attributes:
        job_id: Identifier of the job (the script filename without .py)
        source: The script's Python source
        path: Where the script was loaded from, if it came from a file
    """
    job_id: str
    source: str
    path: Optional[Path] = None

    def __post_init__(self):
        if not self.job_id:
            raise ValueError("job_id must not be empty")

    @property
    def filename(self) -> str:
        """Name used for compile errors and tracebacks."""
        return str(self.path) if self.path is not None else f"<job {self.job_id}>"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "job_id": self.job_id,
            "source": self.source,
        }
        if self.path is not None:
            result["path"] = str(self.path)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobDef":
        """Deserialize from dictionary."""
        return cls(
            job_id=data["job_id"],
            source=data["source"],
            path=Path(data["path"]) if data.get("path") else None,
        )
