# config.py
from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Protocol

from .model import TriggerEvent

DEFAULT_WORKFLOW = "kindci_workflow.py"
ENV_FILE_VAR = "KINDCI_ENV"


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    """Defaults read from the environment. CLI options take precedence."""
    artifact_dir: Path = Path(".kindci/artifacts")
    work_dir: Path = Path(".kindci/work")
    workers: Optional[int] = None
    step_timeout: Optional[float] = None
    run_id: Optional[str] = None
    secret_prefix: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            artifact_dir=Path(os.environ.get("KINDCI_ARTIFACT_DIR", ".kindci/artifacts")),
            work_dir=Path(os.environ.get("KINDCI_WORK_DIR", ".kindci/work")),
            workers=_env_int("KINDCI_WORKERS", None),
            step_timeout=_env_float("KINDCI_STEP_TIMEOUT", None),
            run_id=os.environ.get("KINDCI_RUN_ID") or None,
            secret_prefix=os.environ.get("KINDCI_SECRET_PREFIX", ""),
        )


# ----------------------------------------------------------------------
# Secrets
# ----------------------------------------------------------------------

class SecretStore(Protocol):
    def resolve(self, name: str) -> Optional[str]:
        ...


class EnvSecretStore:
    """
    Resolves secret references from the orchestrator's own environment.

    Nothing is cached: the value is looked up every time a command starts.
    """

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def resolve(self, name: str) -> Optional[str]:
        return os.environ.get(f"{self.prefix}{name}")


class MappingSecretStore:
    """Secret store over a plain mapping (tests, embedding)."""

    def __init__(self, values: Mapping[str, str]):
        self._values = dict(values)

    def resolve(self, name: str) -> Optional[str]:
        return self._values.get(name)


# ----------------------------------------------------------------------
# Pipeline configuration
# ----------------------------------------------------------------------

def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class PipelineConfig:
    """
    Everything a pipeline run needs, fixed at start.

    Handed to the scheduler explicitly; there is no module level state.
    """
    trigger: TriggerEvent
    run_id: str = field(default_factory=new_run_id)
    fail_fast: bool = False
    max_workers: Optional[int] = None
    repo_root: Path = Path(".")
    artifact_root: Path = Path(".kindci/artifacts")
    work_root: Path = Path(".kindci/work")
    step_timeout: Optional[float] = None
    secrets: SecretStore = field(default_factory=EnvSecretStore)
    base_env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))

    @classmethod
    def from_settings(cls, settings: Settings, trigger: TriggerEvent, **overrides) -> "PipelineConfig":
        values = dict(
            trigger=trigger,
            run_id=settings.run_id or new_run_id(),
            max_workers=settings.workers,
            artifact_root=settings.artifact_dir,
            work_root=settings.work_dir,
            step_timeout=settings.step_timeout,
            secrets=EnvSecretStore(settings.secret_prefix),
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def workers(self) -> int:
        return self.max_workers or default_workers()

    @property
    def run_artifact_root(self) -> Path:
        return Path(self.artifact_root) / self.run_id

    @property
    def run_work_root(self) -> Path:
        return Path(self.work_root) / self.run_id
