# tools.py
# The only place kindci starts external processes. Everything else talks to
# a ToolRunner so it can be exercised without real subprocesses.

from __future__ import annotations

import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Protocol, Sequence, Union

Command = Union[str, Sequence[str]]

# captured output is cut to its tail, in results and in job.log alike
OUTPUT_TAIL = 4000

TOOL_HINTS = {
    "kind": "Install kind (https://kind.sigs.k8s.io) or provision it with the tool() resource.",
    "kubectl": "Install kubectl or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "just": "Install just or provision it with the tool() resource.",
    "git": "Install Git or pass --ref/--repository explicitly.",
}


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class ToolRunner(Protocol):
    def run(
        self,
        command: Command,
        env: Mapping[str, str],
        *,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        ...


def describe(command: Command) -> str:
    if isinstance(command, str):
        return command
    return shlex.join([str(c) for c in command])


def tail(text: str | bytes | None, limit: int = OUTPUT_TAIL) -> str:
    if text is None:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return text[-limit:]


class SubprocessToolRunner:
    """
    Runs commands with subprocess.

    A str command goes through the shell (so steps can use pipes and
    redirects), a sequence is executed directly.
    """

    def run(
        self,
        command: Command,
        env: Mapping[str, str],
        *,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        shell = isinstance(command, str)
        args = command if shell else [str(c) for c in command]
        start = time.monotonic()
        try:
            proc = subprocess.run(
                args,
                shell=shell,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env),
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                exit_code=-1,
                stdout=tail(e.stdout),
                stderr=tail(e.stderr),
                duration=time.monotonic() - start,
                timed_out=True,
            )
        except FileNotFoundError as e:
            # argv form with a missing executable; the shell reports 127 itself
            tool = args[0] if args else "?"
            hint = TOOL_HINTS.get(Path(str(tool)).stem, f"Install {tool} or fix PATH.")
            return CommandResult(
                exit_code=127,
                stderr=f"{e}\nHint: {hint}",
                duration=time.monotonic() - start,
            )

        return CommandResult(
            exit_code=proc.returncode,
            stdout=tail(proc.stdout),
            stderr=tail(proc.stderr),
            duration=time.monotonic() - start,
        )
