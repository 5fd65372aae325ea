# scheduler.py
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .config import PipelineConfig
from .errors import OrchestratorError
from .model import JobResult, JobSpec, JobStatus
from .provision import ResourceHandler
from .runner import JobRunner
from .tools import ToolRunner
from .ui.console import get_console

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_ERROR = 3
EXIT_CANCELLED = 130


@dataclass(frozen=True)
class PipelineResult:
    results: Mapping[JobSpec, JobResult]

    @property
    def status(self) -> JobStatus:
        statuses = [r.status for r in self.results.values()]
        if JobStatus.FAILED in statuses:
            return JobStatus.FAILED
        if JobStatus.CANCELLED in statuses:
            return JobStatus.CANCELLED
        return JobStatus.PASSED

    @property
    def exit_code(self) -> int:
        return {
            JobStatus.PASSED: EXIT_PASSED,
            JobStatus.FAILED: EXIT_FAILED,
            JobStatus.CANCELLED: EXIT_CANCELLED,
        }[self.status]

    def by_id(self) -> Dict[str, JobResult]:
        return {job.job_id: res for job, res in self.results.items()}


class JobScheduler:
    """
    Runs independent jobs concurrently on a thread pool.

    - fail_fast=False (default): a failed job never cancels its siblings.
    - fail_fast=True: the first failure cancels every job still running.
    - cancel(): stop signal; every job still runs its cleanup and collection.
    - A job that raises unexpectedly is an orchestrator error: siblings are
      cancelled, allowed to clean up, and OrchestratorError is raised.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        tools: ToolRunner,
        handlers: Mapping[str, ResourceHandler],
        runner_factory: Optional[Callable[..., JobRunner]] = None,
    ):
        self.config = config
        self.tools = tools
        self.handlers = dict(handlers)
        self.runner_factory = runner_factory or JobRunner
        self.cancel_event = threading.Event()
        self._results: Dict[JobSpec, JobResult] = {}
        self._lock = threading.Lock()

    def cancel(self) -> None:
        if not self.cancel_event.is_set():
            get_console().print_info("\nCancelling: running cleanup steps before exit")
        self.cancel_event.set()

    def _run_one(self, job: JobSpec) -> JobResult:
        runner = self.runner_factory(
            job,
            self.config,
            tools=self.tools,
            handlers=self.handlers,
            cancel_event=self.cancel_event,
        )
        result = runner.run()
        with self._lock:
            if job in self._results:
                raise OrchestratorError(f"job {job.job_id} reported twice")
            self._results[job] = result
        return result

    def run(self, jobs: Iterable[JobSpec]) -> PipelineResult:
        jobs = list(jobs)
        if len(set(jobs)) != len(jobs):
            raise OrchestratorError("duplicate jobs passed to scheduler")

        internal: List[BaseException] = []
        with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
            in_flight: Dict[Future, JobSpec] = {pool.submit(self._run_one, j): j for j in jobs}

            while in_flight:
                # wait for one completion at a time
                fut = next(as_completed(list(in_flight.keys())))
                job = in_flight.pop(fut)
                try:
                    result = fut.result()
                except Exception as e:
                    get_console().print_error("Orchestrator error", f"{job.job_id}: {e}")
                    internal.append(e)
                    self.cancel()
                    continue

                if result.status is JobStatus.FAILED and self.config.fail_fast:
                    self.cancel()

        if internal:
            raise OrchestratorError(f"{len(internal)} job(s) crashed the orchestrator") from internal[0]

        # keep input order for reproducible output
        ordered = {j: self._results[j] for j in jobs}
        return PipelineResult(results=ordered)
