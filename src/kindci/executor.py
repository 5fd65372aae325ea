# executor.py
from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .config import ENV_FILE_VAR, SecretStore
from .errors import StepFailure, StepTimeout, TeardownError
from .model import (
    ConditionKind,
    ExecutionContext,
    RunCondition,
    Step,
    StepResult,
    StepStatus,
)
from .tools import ToolRunner, describe
from .ui.console import get_console

SKIP_CANCELLED = "job cancelled"

# ----------------------------------------------------------------------
# Run-condition evaluation
# ----------------------------------------------------------------------

def should_run(condition: RunCondition, ctx: ExecutionContext) -> Tuple[bool, str]:
    """
    Decide whether a step with `condition` runs in the current context.

    Pure: reads the failure flag, the cancel flag, the trigger and the matrix.
    Returns (run, reason) where reason explains a skip.
    """
    if condition.kind is ConditionKind.ALWAYS:
        return True, ""

    if ctx.cancelled:
        return False, SKIP_CANCELLED
    if ctx.failed:
        return False, "previous step failed"

    if condition.kind is ConditionKind.ON_EVENT_EQUALS:
        if ctx.trigger.kind != condition.value:
            return False, f"event is {ctx.trigger.kind!r}, needs {condition.value!r}"
    elif condition.kind is ConditionKind.ON_MATRIX_EQUALS:
        actual = ctx.job.matrix.get(condition.axis or "")
        if actual != condition.value:
            return False, f"matrix.{condition.axis} is {actual!r}, needs {condition.value!r}"

    return True, ""


def job_passed(results: List[StepResult]) -> bool:
    """AND over every executed step that is not a cleanup step."""
    return all(r.ok for r in results if r.executed and not r.cleanup)


# ----------------------------------------------------------------------
# Exported variables
# ----------------------------------------------------------------------

def read_env_file(path: Path) -> Dict[str, str]:
    """
    Parse KEY=VALUE lines a step wrote to its env file.

    Blank lines and lines starting with '#' are ignored. A BOM is tolerated
    since PowerShell's Out-File writes one.
    """
    if not path.exists():
        return {}
    exported: Dict[str, str] = {}
    for raw in path.read_text(encoding="utf-8-sig").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        exported[key.strip()] = value.strip()
    return exported


# ----------------------------------------------------------------------
# Step executor
# ----------------------------------------------------------------------

class StepExecutor:
    """
    Runs one job's steps, in order, inside a single ExecutionContext.
    """

    def __init__(
        self,
        tools: ToolRunner,
        *,
        repo_root: str | Path = ".",
        secrets: Optional[SecretStore] = None,
        base_env: Optional[Mapping[str, str]] = None,
        default_timeout: Optional[float] = None,
    ):
        self.tools = tools
        self.repo_root = Path(repo_root)
        self.secrets = secrets
        self.base_env = dict(base_env or {})
        self.default_timeout = default_timeout
        self.failures: List[StepFailure] = []
        self.teardown_errors: List[TeardownError] = []

    def run(
        self,
        steps: List[Step],
        ctx: ExecutionContext,
        on_cancel: Optional[Callable[[], None]] = None,
    ) -> List[StepResult]:
        """
        Execute `steps` in declaration order.

        `on_cancel` is called once, at the first step boundary where the
        context is found cancelled.
        """
        console = get_console()
        job_id = ctx.job.job_id
        results: List[StepResult] = []
        saw_cancel = False

        for step in steps:
            if ctx.cancelled and not saw_cancel:
                saw_cancel = True
                if on_cancel is not None:
                    on_cancel()

            run, reason = should_run(step.when, ctx)
            if not run:
                console.print_step_skipped(job_id, step.name, reason)
                results.append(
                    StepResult(name=step.name, status=StepStatus.SKIPPED, cleanup=step.is_cleanup, reason=reason)
                )
                continue

            console.print_step(job_id, step.name)
            result = self.run_step(step, ctx)
            results.append(result)

            if result.ok:
                continue

            if step.is_cleanup:
                err = TeardownError(job=job_id, what=step.name, message=_failure_text(result))
                self.teardown_errors.append(err)
                console.print_teardown_error(str(err))
                continue

            ctx.failed = True
            failure = self._failure_for(job_id, step, result)
            self.failures.append(failure)
            console.print_failure(step.name, f"{failure}\n{result.stderr}", exit_code=result.exit_code)

        return results

    def run_step(self, step: Step, ctx: ExecutionContext) -> StepResult:
        if step.run is None:
            # declaration-only step (artifact upload); collection happens after the job
            return StepResult(name=step.name, status=StepStatus.PASSED, cleanup=step.is_cleanup, exit_code=0)

        cwd = (self.repo_root / (step.cwd or ".")).resolve()
        if not cwd.exists():
            return StepResult(
                name=step.name,
                status=StepStatus.FAILED,
                cleanup=step.is_cleanup,
                stderr=f"cwd not found: {cwd}",
                reason="cwd not found",
            )

        env = self._step_env(step, ctx)
        if ctx.env_file is not None:
            ctx.env_file.parent.mkdir(parents=True, exist_ok=True)
            ctx.env_file.write_text("", encoding="utf-8")
            env[ENV_FILE_VAR] = str(ctx.env_file)

        timeout = step.timeout if step.timeout is not None else self.default_timeout
        proc = self.tools.run(step.run, env, cwd=cwd, timeout=timeout)

        if ctx.env_file is not None:
            exported = read_env_file(ctx.env_file)
            if exported:
                ctx.export(exported)

        if proc.timed_out:
            status = StepStatus.TIMED_OUT
        elif proc.exit_code != 0:
            status = StepStatus.FAILED
        else:
            status = StepStatus.PASSED

        return StepResult(
            name=step.name,
            status=status,
            cleanup=step.is_cleanup,
            exit_code=proc.exit_code,
            stdout=proc.stdout,
            stderr=proc.stderr,
            duration=proc.duration,
            reason=f"timeout after {timeout}s" if proc.timed_out else None,
        )

    def _step_env(self, step: Step, ctx: ExecutionContext) -> Dict[str, str]:
        env = dict(self.base_env)
        env.update(ctx.env)
        env.update(dict(step.env))
        for var, ref in step.secrets:
            value = self.secrets.resolve(ref.name) if self.secrets is not None else None
            if value is None:
                get_console().print_debug(f"[{ctx.job.job_id}] secret {ref.name!r} is not set")
                continue
            env[var] = value
        return env

    def _failure_for(self, job_id: str, step: Step, result: StepResult) -> StepFailure:
        cmd = describe(step.run) if step.run is not None else ""
        if result.status is StepStatus.TIMED_OUT:
            return StepTimeout(job=job_id, step=step.name, cmd=cmd, exit_code=result.exit_code,
                               timeout=step.timeout if step.timeout is not None else self.default_timeout)
        return StepFailure(job=job_id, step=step.name, cmd=cmd, exit_code=result.exit_code)


def _failure_text(result: StepResult) -> str:
    text = f"exit={result.exit_code}"
    if result.reason:
        text += f" ({result.reason})"
    last = result.stderr.strip().splitlines()[-1:] if result.stderr else []
    if last:
        text += f": {last[0]}"
    return text
