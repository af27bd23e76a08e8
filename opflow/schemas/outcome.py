"""
Outcome schemas - tracking what happened to each step of a run.

StepOutcome records the result of executing one top-level step.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class StepStatus(str, Enum):
    """Status of a step execution."""
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepOutcome:
    """
    The outcome of executing a single top-level step.

    Attributes:
        index: 1-based position of the step in the pipeline
        name: Name of the step's operation
        status: Execution status (completed, failed, skipped)
        started_at: When step execution started (null if skipped)
        completed_at: When step execution completed (null if skipped)
        recovered: True when a catch handler recovered from a failure
        error: Error details if status is failed
    """
    index: int
    name: str
    status: StepStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    recovered: bool = False
    error: Optional[dict[str, Any]] = None

    def __post_init__(self):
        if self.status in (StepStatus.COMPLETED, StepStatus.FAILED):
            if self.started_at is None or self.completed_at is None:
                raise ValueError(f"{self.status.value} steps must have started_at and completed_at")
        elif self.started_at is not None or self.completed_at is not None:
            raise ValueError("Skipped steps should not have started_at or completed_at")

    @property
    def step_id(self) -> str:
        """Stable identifier of the step within its pipeline ("3:assign")."""
        return f"{self.index}:{self.name}"

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate execution duration in milliseconds if both timestamps present."""
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "index": self.index,
            "name": self.name,
            "status": self.status.value,
        }
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        if self.recovered:
            result["recovered"] = True
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepOutcome":
        """Deserialize from dictionary."""
        return cls(
            index=data["index"],
            name=data["name"],
            status=StepStatus(data["status"]),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            completed_at=datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None,
            recovered=data.get("recovered", False),
            error=data.get("error"),
        )
