# model.py
from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

Command = Union[str, Sequence[str]]


# ---------------------------------------------------------------------
# Run conditions
# ---------------------------------------------------------------------

class ConditionKind(str, Enum):
    ALWAYS = "always"
    ON_SUCCESS_SO_FAR = "on_success_so_far"
    ON_EVENT_EQUALS = "on_event_equals"
    ON_MATRIX_EQUALS = "on_matrix_equals"


@dataclass(frozen=True)
class RunCondition:
    """
    When a step is allowed to run.

    Event and matrix conditions also require that nothing failed so far.
    """
    kind: ConditionKind = ConditionKind.ON_SUCCESS_SO_FAR
    value: str | None = None
    axis: str | None = None

    def __str__(self) -> str:
        if self.kind is ConditionKind.ON_EVENT_EQUALS:
            return f"event == {self.value!r}"
        if self.kind is ConditionKind.ON_MATRIX_EQUALS:
            return f"matrix.{self.axis} == {self.value!r}"
        return self.kind.value


ALWAYS = RunCondition(ConditionKind.ALWAYS)
ON_SUCCESS_SO_FAR = RunCondition(ConditionKind.ON_SUCCESS_SO_FAR)


def on_event(kind: str) -> RunCondition:
    return RunCondition(ConditionKind.ON_EVENT_EQUALS, value=kind)


def on_matrix(axis: str, value: str) -> RunCondition:
    return RunCondition(ConditionKind.ON_MATRIX_EQUALS, value=value, axis=axis)


# ---------------------------------------------------------------------
# Definitions (what the workflow file declares)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class SecretRef:
    """Opaque reference to a secret. Only resolved when a command starts."""
    name: str

    def __repr__(self) -> str:
        return f"SecretRef({self.name!r})"


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: Command | None = None
    cwd: str | None = None
    when: RunCondition = ON_SUCCESS_SO_FAR
    env: Tuple[Tuple[str, str], ...] = ()
    secrets: Tuple[Tuple[str, SecretRef], ...] = ()
    timeout: float | None = None

    # declared output artifact
    artifact: str | None = None
    artifact_label: str | None = None

    @property
    def is_cleanup(self) -> bool:
        return self.when.kind is ConditionKind.ALWAYS

    @property
    def label(self) -> str:
        return self.artifact_label or _slugify(self.name)


@dataclass(frozen=True)
class ResourceSpec:
    """
    Something that has to exist before a job's steps run.

    `kind` selects the provisioner handler; `options` is handler specific.
    """
    kind: str
    name: str
    options: Tuple[Tuple[str, Any], ...] = ()

    def option(self, key: str, default: Any = None) -> Any:
        return dict(self.options).get(key, default)


@dataclass(frozen=True)
class Override:
    """Per-combination tweaks applied when every `match` pair equals the combination."""
    match: Tuple[Tuple[str, str], ...]
    env: Tuple[Tuple[str, str], ...] = ()
    resources: Tuple[ResourceSpec, ...] = ()

    def matches(self, combo: Mapping[str, str]) -> bool:
        return all(combo.get(axis) == value for axis, value in self.match)


@dataclass
class JobTemplate:
    """
    A CI job before matrix expansion: steps + axes + per-combination overrides.
    """
    name: str
    steps: List[Step]
    axes: Dict[str, List[str]] = field(default_factory=dict)
    overrides: List[Override] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    resources: List[ResourceSpec] = field(default_factory=list)

    # opaque scheduling hint, e.g. ["self-hosted", "windows", "x64"]
    runs_on: Tuple[str, ...] = ()


# ---------------------------------------------------------------------
# Expanded jobs
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class JobSpec:
    """
    One concrete matrix combination. Identity is (name, axes); everything
    else is carried along but ignored by == and hash().
    """
    name: str
    axes: Tuple[Tuple[str, str], ...] = ()
    env: Tuple[Tuple[str, str], ...] = field(default=(), compare=False)
    steps: Tuple[Step, ...] = field(default=(), compare=False)
    resources: Tuple[ResourceSpec, ...] = field(default=(), compare=False)
    runs_on: Tuple[str, ...] = field(default=(), compare=False)

    @property
    def job_id(self) -> str:
        if not self.axes:
            return self.name
        return f"{self.name} ({', '.join(v for _, v in self.axes)})"

    @property
    def slug(self) -> str:
        return _slugify(self.job_id)

    @property
    def matrix(self) -> Dict[str, str]:
        return dict(self.axes)

    @property
    def environment(self) -> Dict[str, str]:
        return dict(self.env)

    def __str__(self) -> str:
        return self.job_id


@dataclass(frozen=True)
class TriggerEvent:
    kind: str
    ref: str = "HEAD"
    repository: str = ""


# ---------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------

@dataclass
class ProvisionedResource:
    name: str
    kind: str
    exports: Dict[str, str] = field(default_factory=dict)
    handle: Any = None
    released: bool = False


@dataclass
class ExecutionContext:
    """Mutable per-job state. Never shared between jobs."""
    job: JobSpec
    trigger: TriggerEvent
    env: Dict[str, str] = field(default_factory=dict)
    failed: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event)
    resources: List[ProvisionedResource] = field(default_factory=list)
    env_file: Optional[Path] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def export(self, values: Mapping[str, str]) -> None:
        self.env.update({k: str(v) for k, v in values.items()})


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

class StepStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"


class JobStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobState(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    CANCELLING = "cancelling"
    COLLECTING = "collecting"
    DONE = "done"


@dataclass(frozen=True)
class StepResult:
    name: str
    status: StepStatus
    cleanup: bool = False
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    reason: str | None = None

    @property
    def executed(self) -> bool:
        return self.status is not StepStatus.SKIPPED

    @property
    def ok(self) -> bool:
        return self.status in (StepStatus.PASSED, StepStatus.SKIPPED)


@dataclass(frozen=True)
class JobResult:
    job: JobSpec
    status: JobStatus
    steps: Tuple[StepResult, ...] = ()
    artifacts: Tuple[Tuple[str, Path], ...] = ()
    states: Tuple[JobState, ...] = ()
    error: str | None = None
    teardown_errors: Tuple[str, ...] = ()

    def step(self, name: str) -> StepResult:
        for s in self.steps:
            if s.name == name:
                return s
        raise KeyError(name)

    @property
    def executed_steps(self) -> List[str]:
        return [s.name for s in self.steps if s.executed]

    @property
    def artifact_map(self) -> Dict[str, Path]:
        return dict(self.artifacts)


_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _slugify(text: str) -> str:
    return _SLUG_RE.sub("-", text).strip("-").lower() or "job"
