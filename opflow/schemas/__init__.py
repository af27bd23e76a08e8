"""
opflow.schemas - Bookkeeping types for job runs.

JobDef -> Pipeline -> RunResult (with one StepOutcome per step)

- JobDef: a job script as found on disk
- StepOutcome: what happened to one top-level step of a run
"""

from .job_def import JobDef
from .outcome import StepOutcome, StepStatus

__all__ = [
    "JobDef",
    "StepOutcome",
    "StepStatus",
]
