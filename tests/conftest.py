"""Pytest configuration, fakes and fixtures."""

import threading
from pathlib import Path

import pytest

from kindci.config import MappingSecretStore, PipelineConfig
from kindci.errors import ProvisionError
from kindci.model import JobSpec, ProvisionedResource, ResourceSpec, TriggerEvent
from kindci.tools import CommandResult
from kindci.ui.console import Console, set_console


class FakeToolRunner:
    """
    Records every command instead of running it.

    `behaviours` maps a command (str, or tuple for argv) to an exit code, a
    CommandResult, or a callable(env) returning either. Unknown commands go
    to `default` (callable(command, env)) or exit 0.
    """

    def __init__(self, behaviours=None, default=None):
        self.behaviours = dict(behaviours or {})
        self.default = default
        self.calls = []
        self._lock = threading.Lock()

    def run(self, command, env, *, cwd=None, timeout=None):
        key = command if isinstance(command, str) else tuple(command)
        with self._lock:
            self.calls.append((key, dict(env), timeout))

        if key in self.behaviours:
            outcome = self.behaviours[key]
            if callable(outcome):
                outcome = outcome(dict(env))
        elif self.default is not None:
            outcome = self.default(key, dict(env))
        else:
            outcome = 0

        if isinstance(outcome, CommandResult):
            return outcome
        return CommandResult(exit_code=outcome, stdout=f"ran {key}\n", stderr="" if outcome == 0 else "boom\n")

    @property
    def commands(self):
        return [c for c, _, _ in self.calls]

    def env_for(self, command):
        for c, env, _ in self.calls:
            if c == command:
                return env
        raise KeyError(command)


class FakeHandler:
    """Resource handler that counts acquisitions and releases."""

    def __init__(self, exports=None, fail=False, fail_release=False):
        self.exports = dict(exports or {})
        self.fail = fail
        self.fail_release = fail_release
        self.acquired = []
        self.released = []
        self._lock = threading.Lock()

    def acquire(self, spec, run_id, env):
        if self.fail:
            raise OSError(f"cannot create {spec.name}")
        resource = ProvisionedResource(name=spec.name, kind=spec.kind, exports=dict(self.exports), handle=run_id)
        with self._lock:
            self.acquired.append(spec.name)
        return resource

    def release(self, resource):
        with self._lock:
            self.released.append(resource.name)
        if self.fail_release:
            raise RuntimeError(f"cannot delete {resource.name}")


class FakeCluster:
    def __init__(self, node_address="172.18.0.2"):
        self.node_address = node_address
        self.created = []
        self.deleted = []

    def create(self, name, config=None, env=None):
        from kindci.cluster import ConnectionDescriptor

        self.created.append((name, config))
        return ConnectionDescriptor(
            name=name,
            server="https://127.0.0.1:6443",
            node_address=self.node_address,
            kubeconfig=Path(f"/tmp/{name}.kubeconfig"),
        )

    def delete(self, name, env=None):
        self.deleted.append(name)


class BrokenHandler(FakeHandler):
    def acquire(self, spec, run_id, env):
        raise ProvisionError(job="?", resource=spec.name, message="refused")


@pytest.fixture(autouse=True)
def console():
    """Fresh console per test so debug state never leaks."""
    c = Console(debug=False)
    set_console(c)
    return c


@pytest.fixture
def tools():
    return FakeToolRunner()


@pytest.fixture
def config(tmp_path):
    return PipelineConfig(
        trigger=TriggerEvent(kind="push", ref="main", repository="acme/widgets"),
        run_id="run1",
        repo_root=tmp_path,
        artifact_root=tmp_path / "artifacts",
        work_root=tmp_path / "work",
        base_env={"PATH": "/usr/bin:/bin"},
        secrets=MappingSecretStore({"PULL_SECRET": "s3cr3t"}),
        max_workers=4,
    )


def make_job(*steps, name="job", axes=(), env=(), resources=()):
    return JobSpec(
        name=name,
        axes=tuple(axes),
        env=tuple(env),
        steps=tuple(steps),
        resources=tuple(resources),
    )


def fake_resource(name="res"):
    return ResourceSpec(kind="fake", name=name)
