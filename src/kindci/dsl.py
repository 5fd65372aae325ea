# src/kindci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .model import (
    ALWAYS,
    ON_SUCCESS_SO_FAR,
    Command,
    JobTemplate,
    Override,
    ResourceSpec,
    RunCondition,
    SecretRef,
    Step,
    on_event,
    on_matrix,
)
from .provision import KIND_CLUSTER, TOOL

__all__ = [
    "sh", "upload", "secret", "always", "on_event", "on_matrix",
    "job", "JobBuilder", "build", "matrix", "override", "tool", "kind_cluster", "wf",
]


def _pairs(mapping: Optional[Mapping[str, Any]]) -> tuple:
    # force values to str for stable comparison + env compatibility
    return tuple((k, str(v)) for k, v in (mapping or {}).items())


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def secret(name: str) -> SecretRef:
    """Reference a secret by name; it is resolved when the step starts."""
    return SecretRef(name)


def sh(
    name: str,
    cmd: Command,
    *,
    cwd: str | None = None,
    when: RunCondition = ON_SUCCESS_SO_FAR,
    env: Optional[Mapping[str, Union[str, SecretRef]]] = None,
    timeout: float | None = None,
    artifact: str | None = None,
    artifact_label: str | None = None,
) -> Step:
    """Create a shell step. SecretRef values in `env` stay opaque until execution."""
    plain = {k: v for k, v in (env or {}).items() if not isinstance(v, SecretRef)}
    secrets = tuple((k, v) for k, v in (env or {}).items() if isinstance(v, SecretRef))
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        when=when,
        env=_pairs(plain),
        secrets=secrets,
        timeout=timeout,
        artifact=artifact,
        artifact_label=artifact_label,
    )


def upload(label: str, path: str) -> Step:
    """Declare an artifact collected after the job, whatever its outcome."""
    return Step(name=f"Upload {label}", run=None, when=ALWAYS, artifact=path, artifact_label=label)


def always(step: Step) -> Step:
    """Turn a step into a cleanup step."""
    return replace(step, when=ALWAYS)


# ---------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------

def tool(name: str, url: str, *, path_in_archive: str | None = None) -> ResourceSpec:
    """Download a tool binary before the job's steps and put it on PATH."""
    options = [("url", url)]
    if path_in_archive:
        options.append(("path_in_archive", path_in_archive))
    return ResourceSpec(kind=TOOL, name=name, options=tuple(options))


def kind_cluster(
    name: str | None = None,
    *,
    config: str | None = None,
    address_env: str = "NODE_IP",
) -> ResourceSpec:
    """Ephemeral kind cluster, deleted when the job ends. Unnamed -> kind-<run_id>."""
    options = [("address_env", address_env)]
    if config:
        options.append(("config", config))
    return ResourceSpec(kind=KIND_CLUSTER, name=name or KIND_CLUSTER, options=tuple(options))


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(**axes: Iterable[Any]) -> Dict[str, List[str]]:
    """
    Declare matrix axes; keyword order is the expansion order.

    Example:
        job("build", ..., matrix=matrix(os=["linux", "macos"], arch=["amd64", "aarch64"]))
    """
    return {axis: [str(v) for v in values] for axis, values in axes.items()}


def override(
    match: Optional[Mapping[str, Any]] = None,
    *,
    env: Optional[Mapping[str, Any]] = None,
    resources: Sequence[ResourceSpec] = (),
    **match_kw: Any,
) -> Override:
    """
    Per-combination environment/resources.

        override(arch="aarch64", env={"OPENSSL_DIR": "/usr/local/openssl-aarch64"})
    """
    m = dict(match or {})
    m.update(match_kw)
    return Override(match=_pairs(m), env=_pairs(env), resources=tuple(resources))


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    matrix: Optional[Mapping[str, Iterable[Any]]] = None,
    overrides: Optional[List[Override]] = None,
    env: Optional[Mapping[str, Any]] = None,
    resources: Optional[List[ResourceSpec]] = None,
    runs_on: Union[str, Sequence[str], None] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobTemplate:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return JobTemplate(
        name=name,
        steps=steps_final,
        axes={k: [str(v) for v in vs] for k, vs in (matrix or {}).items()},
        overrides=list(overrides or []),
        env={k: str(v) for k, v in (env or {}).items()},
        resources=list(resources or []),
        runs_on=_runs_on(runs_on),
    )


def _runs_on(value: Union[str, Sequence[str], None]) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._axes: dict[str, list[str]] = {}
        self._overrides: list[Override] = []
        self._env: dict[str, str] = {}
        self._resources: list[ResourceSpec] = []
        self._runs_on: tuple = ()

    def define_step(self, name: str, run: Command, cwd: str | None = None, **kw):
        self._steps.append(sh(name, run, cwd=cwd, **kw))
        return self

    def cleanup(self, name: str, run: Command, cwd: str | None = None, **kw):
        self._steps.append(sh(name, run, cwd=cwd, when=ALWAYS, **kw))
        return self

    def upload(self, label: str, path: str):
        self._steps.append(upload(label, path))
        return self

    def axis(self, name: str, *values: Any):
        self._axes[name] = [str(v) for v in values]
        return self

    def override(self, match: Mapping[str, Any], **env):
        self._overrides.append(override(match, env=env))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def provision(self, *resources: ResourceSpec):
        self._resources.extend(resources)
        return self

    def runs_on(self, *labels: str):
        self._runs_on = tuple(labels)
        return self

    def build(self) -> JobTemplate:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return JobTemplate(
            name=self.name,
            steps=list(self._steps),
            axes=dict(self._axes),
            overrides=list(self._overrides),
            env=dict(self._env),
            resources=list(self._resources),
            runs_on=self._runs_on,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: JobTemplate) -> List[JobTemplate]:
    """
    Workflow definition helper.

        from kindci.dsl import wf, job, sh

        def pipeline():
            return wf(
                job(...),
                job(...),
            )

    Or define PIPELINE directly:
        PIPELINE = wf(job(...), job(...))
    """
    return list(jobs)
