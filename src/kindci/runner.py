# runner.py
from __future__ import annotations

import os
import runpy
import threading
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .artifacts import ArtifactCollector
from .config import PipelineConfig
from .errors import OrchestratorError, ProvisionError, TeardownError, WorkflowError
from .executor import SKIP_CANCELLED, StepExecutor, job_passed
from .model import (
    ExecutionContext,
    JobResult,
    JobSpec,
    JobState,
    JobStatus,
    JobTemplate,
    StepResult,
    StepStatus,
)
from .provision import Provisioner, ResourceHandler
from .tools import ToolRunner
from .ui.console import get_console


# ----------------------------------------------------------------------
# Job state machine
# ----------------------------------------------------------------------
#   PENDING -> PROVISIONING -> RUNNING -> COLLECTING -> DONE
#   any of PENDING/PROVISIONING/RUNNING -> CANCELLING -> COLLECTING -> DONE
# COLLECTING is on every path to DONE.

TRANSITIONS: Dict[JobState, frozenset] = {
    JobState.PENDING: frozenset({JobState.PROVISIONING, JobState.CANCELLING}),
    JobState.PROVISIONING: frozenset({JobState.RUNNING, JobState.CANCELLING}),
    JobState.RUNNING: frozenset({JobState.COLLECTING, JobState.CANCELLING}),
    JobState.CANCELLING: frozenset({JobState.COLLECTING}),
    JobState.COLLECTING: frozenset({JobState.DONE}),
    JobState.DONE: frozenset(),
}


def apply_exports(ctx: ExecutionContext, exports: Mapping[str, str], base_env: Mapping[str, str]) -> None:
    """Merge resource exports into the job env. PATH entries are prepended."""
    for key, value in exports.items():
        if key == "PATH":
            current = ctx.env.get("PATH", base_env.get("PATH", ""))
            ctx.env["PATH"] = value + os.pathsep + current if current else value
        else:
            ctx.env[key] = str(value)


class JobRunner:
    """
    Runs one JobSpec from PENDING to DONE.

    Owns the job's ExecutionContext and Provisioner; nothing here is shared
    with other jobs except the cancel event.
    """

    def __init__(
        self,
        job: JobSpec,
        config: PipelineConfig,
        *,
        tools: ToolRunner,
        handlers: Mapping[str, ResourceHandler],
        cancel_event: Optional[threading.Event] = None,
    ):
        self.job = job
        self.config = config
        self.tools = tools
        self.handlers = dict(handlers)
        self.cancel_event = cancel_event or threading.Event()
        self.state = JobState.PENDING
        self.history: List[JobState] = [JobState.PENDING]

    def _to(self, state: JobState) -> None:
        if state not in TRANSITIONS[self.state]:
            raise OrchestratorError(f"[{self.job.job_id}] illegal transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)
        get_console().print_state(self.job.job_id, state.value)

    def _cancelling(self) -> None:
        if self.state is not JobState.CANCELLING:
            self._to(JobState.CANCELLING)

    def run(self) -> JobResult:
        console = get_console()
        job = self.job
        start = time.monotonic()

        work_dir = self.config.run_work_root / job.slug
        ctx = ExecutionContext(
            job=job,
            trigger=self.config.trigger,
            env=job.environment,
            cancel_event=self.cancel_event,
            env_file=work_dir / "env",
        )
        provisioner = Provisioner(self.handlers, job=job.job_id, run_id=self.config.run_id)
        executor = StepExecutor(
            self.tools,
            repo_root=self.config.repo_root,
            secrets=self.config.secrets,
            base_env=self.config.base_env,
            default_timeout=self.config.step_timeout,
        )
        collector = ArtifactCollector(self.config.run_artifact_root, repo_root=self.config.repo_root)

        console.print_job_start(job.job_id)
        step_results: List[StepResult] = []
        error: Optional[str] = None
        teardown: List[TeardownError] = []

        try:
            if ctx.cancelled:
                # never started: nothing to clean up
                self._cancelling()
                step_results = [
                    StepResult(name=s.name, status=StepStatus.SKIPPED, cleanup=s.is_cleanup, reason=SKIP_CANCELLED)
                    for s in job.steps
                ]
            else:
                error = self._provision(ctx, provisioner)
                if ctx.cancelled:
                    self._cancelling()
                else:
                    self._to(JobState.RUNNING)
                step_results = executor.run(list(job.steps), ctx, on_cancel=self._cancelling)
                # stop signal that landed during the last step
                if ctx.cancelled:
                    self._cancelling()
        finally:
            # release before the context goes away, on every exit path
            teardown = provisioner.release_all() + executor.teardown_errors

        if error is None and executor.failures:
            error = str(executor.failures[0])

        if self.state is JobState.CANCELLING:
            status = JobStatus.CANCELLED
        elif ctx.failed or not job_passed(step_results):
            status = JobStatus.FAILED
        else:
            status = JobStatus.PASSED

        self._to(JobState.COLLECTING)
        artifacts = collector.collect(job, status.value, step_results)
        self._to(JobState.DONE)

        console.print_job_finished(job.job_id, status.value, time.monotonic() - start)
        return JobResult(
            job=job,
            status=status,
            steps=tuple(step_results),
            artifacts=tuple(artifacts.items()),
            states=tuple(self.history),
            error=error,
            teardown_errors=tuple(str(e) for e in teardown),
        )

    def _provision(self, ctx: ExecutionContext, provisioner: Provisioner) -> Optional[str]:
        """Acquire every resource in order. Returns the error text of a failed acquisition."""
        self._to(JobState.PROVISIONING)
        for spec in self.job.resources:
            if ctx.cancelled:
                return None
            try:
                # tools acquired earlier are already on PATH here
                resource = provisioner.acquire(spec, {**self.config.base_env, **ctx.env})
            except ProvisionError as e:
                # remaining non-cleanup steps are skipped, cleanup still runs
                ctx.failed = True
                get_console().print_failure(spec.name, str(e), is_job=False)
                return str(e)
            ctx.resources.append(resource)
            apply_exports(ctx, resource.exports, self.config.base_env)
        return None


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[JobTemplate]:
    """
    Load a workflow from a python file path.

    The file must define either:
      - pipeline() -> List[JobTemplate]
      - PIPELINE = [JobTemplate, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise WorkflowError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"kindci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
        jobs = globals_dict["pipeline"]()
    elif "PIPELINE" in globals_dict:
        jobs = globals_dict["PIPELINE"]

    if not isinstance(jobs, list) or not all(isinstance(j, JobTemplate) for j in jobs):
        raise WorkflowError(
            "Workflow must return/define a List[JobTemplate]. "
            "Define pipeline() -> List[JobTemplate] or PIPELINE = [JobTemplate, ...]."
        )

    return jobs
