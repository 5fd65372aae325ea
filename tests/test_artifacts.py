"""Tests for artifact collection."""

import json

from conftest import make_job
from kindci.artifacts import MANIFEST, ArtifactCollector, declared_artifacts, render_log
from kindci.dsl import sh, upload
from kindci.model import StepResult, StepStatus


class TestArtifactCollector:
    def test_declared_artifacts_in_step_order(self):
        steps = [sh("test", "t", artifact="report.xml"), sh("x", "x"), upload("logs", "logs/")]

        assert declared_artifacts(steps) == [("test", "report.xml"), ("logs", "logs/")]

    def test_recollect_replaces_previous_copy(self, tmp_path):
        src = tmp_path / "logs"
        src.mkdir()
        (src / "a.txt").write_text("1", encoding="utf-8")
        job = make_job(upload("logs", "logs"), axes=(("os", "linux"),))
        collector = ArtifactCollector(tmp_path / "store", repo_root=tmp_path)

        collector.collect(job, "passed", [])
        (src / "a.txt").write_text("2", encoding="utf-8")
        collected = collector.collect(job, "failed", [])

        assert (collected["logs"] / "a.txt").read_text(encoding="utf-8") == "2"
        manifest = json.loads((collector.job_dir(job) / MANIFEST).read_text(encoding="utf-8"))
        assert manifest["status"] == "failed"
        assert manifest["matrix"] == {"os": "linux"}

    def test_render_log_marks_skips(self):
        job = make_job(sh("a", "a"), sh("b", "b"))
        results = [
            StepResult(name="a", status=StepStatus.FAILED, exit_code=2, stderr="boom\n"),
            StepResult(name="b", status=StepStatus.SKIPPED, reason="previous step failed"),
        ]

        log = render_log(job, results)

        assert "## a [failed]" in log
        assert "boom" in log
        assert "## b [skipped] (previous step failed)" in log
