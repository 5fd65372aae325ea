"""Tests for JobRunner: state machine, provisioning, cleanup and collection."""

import json
import os
import threading

import pytest

from conftest import FakeHandler, FakeToolRunner, fake_resource, make_job
from kindci.artifacts import JOB_LOG, MANIFEST
from kindci.dsl import always, sh, upload
from kindci.errors import OrchestratorError, WorkflowError
from kindci.executor import SKIP_CANCELLED
from kindci.model import JobState, JobStatus, StepStatus
from kindci.runner import JobRunner, load_workflow

P, PR, R, CG, CO, D = (
    JobState.PENDING,
    JobState.PROVISIONING,
    JobState.RUNNING,
    JobState.CANCELLING,
    JobState.COLLECTING,
    JobState.DONE,
)


def _runner(job, config, tools, handler=None, cancel_event=None):
    return JobRunner(
        job,
        config,
        tools=tools,
        handlers={"fake": handler or FakeHandler()},
        cancel_event=cancel_event,
    )


class TestJobRunner:
    """Tests for JobRunner.run()."""

    def test_passing_job(self, config):
        tools = FakeToolRunner()
        job = make_job(sh("a", "a"), sh("b", "b"))

        result = _runner(job, config, tools).run()

        assert result.status is JobStatus.PASSED
        assert result.states == (P, PR, R, CO, D)
        assert result.executed_steps == ["a", "b"]
        assert result.error is None

    def test_resources_released_after_failure(self, config):
        handler = FakeHandler()
        tools = FakeToolRunner({"a": 1})
        job = make_job(sh("a", "a"), resources=[fake_resource("just"), fake_resource("cluster")])

        result = _runner(job, config, tools, handler).run()

        assert result.status is JobStatus.FAILED
        assert handler.released == ["cluster", "just"]
        assert "step 'a' failed" in result.error

    def test_exports_reach_steps_and_path_is_prepended(self, config):
        handler = FakeHandler(exports={"PATH": "/opt/just", "KUBECONFIG": "/tmp/kube"})
        tools = FakeToolRunner()
        job = make_job(sh("a", "a"), resources=[fake_resource("just")])

        _runner(job, config, tools, handler).run()

        env = tools.env_for("a")
        assert env["PATH"] == os.pathsep.join(["/opt/just", "/usr/bin:/bin"])
        assert env["KUBECONFIG"] == "/tmp/kube"

    def test_provision_failure_skips_steps_but_runs_cleanup(self, config):
        handler = FakeHandler(fail=True)
        tools = FakeToolRunner()
        job = make_job(
            sh("a", "a"),
            always(sh("dump", "dump")),
            resources=[fake_resource("cluster")],
        )

        result = _runner(job, config, tools, handler).run()

        assert result.status is JobStatus.FAILED
        assert "could not provision 'cluster'" in result.error
        assert result.step("a").status is StepStatus.SKIPPED
        assert tools.commands == ["dump"]
        assert handler.released == []

    def test_cancel_mid_run(self, config):
        cancel = threading.Event()
        handler = FakeHandler()

        def interrupt(env):
            cancel.set()
            return 0

        tools = FakeToolRunner({"a": interrupt})
        job = make_job(
            sh("a", "a"),
            sh("b", "b"),
            always(sh("cleanup", "cleanup")),
            resources=[fake_resource("cluster")],
        )

        result = _runner(job, config, tools, handler, cancel).run()

        assert result.status is JobStatus.CANCELLED
        assert result.states == (P, PR, R, CG, CO, D)
        assert tools.commands == ["a", "cleanup"]
        assert result.step("b").reason == SKIP_CANCELLED
        assert handler.released == ["cluster"]

    def test_cancel_during_last_step(self, config):
        cancel = threading.Event()

        def interrupt(env):
            cancel.set()
            return 0

        tools = FakeToolRunner({"only": interrupt})
        job = make_job(sh("only", "only"))

        result = _runner(job, config, tools, cancel_event=cancel).run()

        assert result.status is JobStatus.CANCELLED
        assert result.states == (P, PR, R, CG, CO, D)

    def test_cancel_during_final_cleanup(self, config):
        cancel = threading.Event()

        def interrupt(env):
            cancel.set()
            return 0

        tools = FakeToolRunner({"dump": interrupt})
        job = make_job(sh("a", "a"), always(sh("dump", "dump")))

        result = _runner(job, config, tools, cancel_event=cancel).run()

        assert result.status is JobStatus.CANCELLED
        assert tools.commands == ["a", "dump"]

    def test_unexpected_handler_error_fails_only_the_job(self, config):
        class Exploding(FakeHandler):
            def acquire(self, spec, run_id, env):
                raise RuntimeError("kind exploded")

        tools = FakeToolRunner()
        job = make_job(sh("a", "a"), always(sh("dump", "dump")), resources=[fake_resource("cluster")])

        result = _runner(job, config, tools, Exploding()).run()

        assert result.status is JobStatus.FAILED
        assert "kind exploded" in result.error
        assert tools.commands == ["dump"]

    def test_cancel_before_start(self, config):
        cancel = threading.Event()
        cancel.set()
        handler = FakeHandler()
        tools = FakeToolRunner()
        job = make_job(sh("a", "a"), always(sh("cleanup", "cleanup")), resources=[fake_resource()])

        result = _runner(job, config, tools, handler, cancel).run()

        assert result.status is JobStatus.CANCELLED
        assert result.states == (P, CG, CO, D)
        assert tools.calls == []
        assert handler.acquired == []
        assert all(s.status is StepStatus.SKIPPED for s in result.steps)

    def test_cancelled_wins_over_failed(self, config):
        cancel = threading.Event()

        def fail_and_cancel(env):
            cancel.set()
            return 1

        tools = FakeToolRunner({"a": fail_and_cancel})
        job = make_job(sh("a", "a"), sh("b", "b"))

        result = _runner(job, config, tools, cancel_event=cancel).run()

        assert result.status is JobStatus.CANCELLED

    def test_failing_cleanup_is_reported(self, config):
        tools = FakeToolRunner({"cleanup": 1})
        job = make_job(sh("a", "a"), always(sh("cleanup", "cleanup")))

        result = _runner(job, config, tools).run()

        assert result.status is JobStatus.PASSED
        assert len(result.teardown_errors) == 1
        assert "cleanup" in result.teardown_errors[0]

    def test_release_failure_is_reported(self, config):
        handler = FakeHandler(fail_release=True)
        job = make_job(sh("a", "a"), resources=[fake_resource("cluster")])

        result = _runner(job, config, FakeToolRunner(), handler).run()

        assert result.status is JobStatus.PASSED
        assert "fake:cluster" in result.teardown_errors[0]

    def test_illegal_transition(self, config):
        runner = _runner(make_job(sh("a", "a")), config, FakeToolRunner())

        with pytest.raises(OrchestratorError, match="illegal transition"):
            runner._to(JobState.DONE)


class TestCollection:
    """Artifacts are collected for every terminal status."""

    def test_artifacts_of_failed_job(self, config, tmp_path):
        report = tmp_path / "out" / "report.txt"
        report.parent.mkdir()
        report.write_text("3 failed", encoding="utf-8")

        tools = FakeToolRunner({"test": 1})
        job = make_job(sh("test", "test", artifact="out/report.txt", artifact_label="report"))

        result = _runner(job, config, tools).run()

        artifacts = result.artifact_map
        assert result.status is JobStatus.FAILED
        assert (artifacts["report"] / "report.txt").read_text(encoding="utf-8") == "3 failed"
        assert artifacts[JOB_LOG].is_file()

        manifest = json.loads((config.run_artifact_root / job.slug / MANIFEST).read_text(encoding="utf-8"))
        assert manifest["status"] == "failed"
        assert manifest["steps"][0]["exit_code"] == 1

    def test_directory_artifact(self, config, tmp_path):
        logs = tmp_path / "oneclick-logs"
        logs.mkdir()
        (logs / "pods.txt").write_text("pod-a Running", encoding="utf-8")

        job = make_job(sh("a", "a"), upload("e2e-logs", "oneclick-logs/"))

        result = _runner(job, config, FakeToolRunner()).run()

        assert (result.artifact_map["e2e-logs"] / "pods.txt").is_file()

    def test_missing_artifact_is_a_warning(self, config, capsys):
        job = make_job(sh("a", "a"), upload("e2e-logs", "oneclick-logs/"))

        result = _runner(job, config, FakeToolRunner()).run()

        assert result.status is JobStatus.PASSED
        assert "e2e-logs" not in result.artifact_map
        assert "not found" in capsys.readouterr().err
        manifest = json.loads((config.run_artifact_root / job.slug / MANIFEST).read_text(encoding="utf-8"))
        assert "e2e-logs" in manifest["missing"]

    def test_log_contains_step_output(self, config):
        job = make_job(sh("a", "a"))

        result = _runner(job, config, FakeToolRunner()).run()

        log = result.artifact_map[JOB_LOG].read_text(encoding="utf-8")
        assert "## a [passed]" in log
        assert "ran a" in log


class TestLoadWorkflow:
    def test_pipeline_function(self, tmp_path):
        wf = tmp_path / "kindci_workflow.py"
        wf.write_text(
            "from kindci.dsl import job, sh, wf\n"
            "def pipeline():\n"
            "    return wf(job('build', sh('b', 'true')), job('test', sh('t', 'true')))\n",
            encoding="utf-8",
        )

        jobs = load_workflow(wf)

        assert [j.name for j in jobs] == ["build", "test"]

    def test_pipeline_constant(self, tmp_path):
        wf = tmp_path / "ci.py"
        wf.write_text("from kindci.dsl import job, sh\nPIPELINE = [job('x', sh('x', 'true'))]\n", encoding="utf-8")

        assert [j.name for j in load_workflow(wf)] == ["x"]

    def test_wrong_shape(self, tmp_path):
        wf = tmp_path / "ci.py"
        wf.write_text("PIPELINE = ['not a job']\n", encoding="utf-8")

        with pytest.raises(WorkflowError):
            load_workflow(wf)

    def test_not_python(self, tmp_path):
        wf = tmp_path / "ci.yml"
        wf.write_text("jobs: {}\n", encoding="utf-8")

        with pytest.raises(WorkflowError):
            load_workflow(wf)

    def test_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workflow(tmp_path / "nope.py")
