# artifacts.py
from __future__ import annotations

import json
import shutil
import time
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from .model import JobSpec, Step, StepResult
from .ui.console import get_console

# ---------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------
#   <artifact_root>/<run_id>/<job slug>/
#       manifest.json        what was collected, what was missing
#       job.log              captured output of every executed step
#       <label>/...          copy of each declared artifact path
# ---------------------------------------------------------------------

MANIFEST = "manifest.json"
JOB_LOG = "job.log"


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, indent=2, ensure_ascii=False)


def declared_artifacts(steps: Iterable[Step]) -> List[Tuple[str, str]]:
    """(label, path) for every step that declares an artifact, in step order."""
    return [(s.label, s.artifact) for s in steps if s.artifact]


class ArtifactCollector:
    """
    Copies declared outputs of a finished job into the artifact store.

    Runs for every terminal status. A missing path is a warning only.
    """

    def __init__(self, root: str | Path, *, repo_root: str | Path = "."):
        self.root = Path(root)
        self.repo_root = Path(repo_root)

    def job_dir(self, job: JobSpec) -> Path:
        return self.root / job.slug

    def collect(
        self,
        job: JobSpec,
        status: str,
        step_results: List[StepResult],
    ) -> Dict[str, Path]:
        console = get_console()
        dest_root = self.job_dir(job)
        dest_root.mkdir(parents=True, exist_ok=True)

        collected: Dict[str, Path] = {}
        missing: Dict[str, str] = {}

        for label, rel in declared_artifacts(job.steps):
            src = (self.repo_root / rel).resolve()
            dest = dest_root / label
            if not src.exists():
                missing[label] = str(src)
                console.print_artifact_missing(job.job_id, label, str(src))
                continue

            if dest.is_dir():
                shutil.rmtree(dest)
            if src.is_dir():
                shutil.copytree(src, dest)
            else:
                dest.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dest / src.name)
            collected[label] = dest
            console.print_artifact(job.job_id, label, str(dest))

        log_path = dest_root / JOB_LOG
        log_path.write_text(render_log(job, step_results), encoding="utf-8")
        collected[JOB_LOG] = log_path

        manifest = {
            "job": job.job_id,
            "matrix": job.matrix,
            "runs_on": list(job.runs_on),
            "status": status,
            "collected_at": int(time.time()),
            "artifacts": {k: str(v) for k, v in collected.items()},
            "missing": missing,
            "steps": [
                {"name": r.name, "status": r.status.value, "exit_code": r.exit_code, "duration": round(r.duration, 3)}
                for r in step_results
            ],
        }
        (dest_root / MANIFEST).write_text(_json_dumps_stable(manifest), encoding="utf-8")
        return collected


def render_log(job: JobSpec, step_results: List[StepResult]) -> str:
    lines = [f"# {job.job_id}"]
    for r in step_results:
        lines.append("")
        lines.append(f"## {r.name} [{r.status.value}]" + (f" ({r.reason})" if r.reason else ""))
        if not r.executed:
            continue
        lines.append(f"exit={r.exit_code} duration={r.duration:.2f}s")
        if r.stdout:
            lines.append("--- stdout ---")
            lines.append(r.stdout.rstrip("\n"))
        if r.stderr:
            lines.append("--- stderr ---")
            lines.append(r.stderr.rstrip("\n"))
    return "\n".join(lines) + "\n"
