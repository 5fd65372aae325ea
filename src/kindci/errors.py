# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class KindCIError(Exception):
    """Base class for everything kindci raises on purpose."""


# ----------------------------------------------------------------------
# Configuration (fatal before any job starts)
# ----------------------------------------------------------------------

class WorkflowError(KindCIError, ValueError):
    """The workflow file or the pipeline it defines is malformed."""


@dataclass
class InvalidAxisError(WorkflowError):
    job: str
    axis: str | None
    message: str

    def __str__(self) -> str:
        where = f"{self.job}" if self.axis is None else f"{self.job}: axis '{self.axis}'"
        return f"invalid matrix for {where}: {self.message}"


# ----------------------------------------------------------------------
# Job-local errors (never cross job boundaries)
# ----------------------------------------------------------------------

@dataclass
class ProvisionError(KindCIError):
    """
    Acquiring an external resource failed.

    Fails the owning job; sibling jobs are unaffected.
    """
    job: str
    resource: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"[{self.job}] could not provision '{self.resource}': {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(KindCIError):
    job: str
    step: str
    cmd: str
    exit_code: int | None

    tag = "failure"

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class StepTimeout(StepFailure):
    timeout: float | None = None

    tag = "timeout"

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' timed out after {self.timeout}s: {self.cmd}"


@dataclass
class TeardownError(KindCIError):
    """A cleanup step or a resource release failed. Reported, never hides the job status."""
    job: str
    what: str
    message: str

    def __str__(self) -> str:
        return f"[{self.job}] teardown of '{self.what}' failed: {self.message}"


# ----------------------------------------------------------------------
# Orchestrator errors (abort the whole run)
# ----------------------------------------------------------------------

class OrchestratorError(KindCIError):
    """Internal failure of the orchestrator itself, distinct from job failures."""
