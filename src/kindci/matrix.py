# matrix.py
from __future__ import annotations

import itertools
import re
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

from .errors import InvalidAxisError, WorkflowError
from .model import JobSpec, JobTemplate, Override

_ENV_KEY_RE = re.compile(r"[^A-Za-z0-9]+")


def _validate_axes(job: str, axes: Mapping[str, Sequence[str]]) -> None:
    for axis, values in axes.items():
        values = list(values)
        if not values:
            raise InvalidAxisError(job=job, axis=axis, message="axis has no values")
        dupes = sorted({v for v in values if values.count(v) > 1})
        if dupes:
            raise InvalidAxisError(job=job, axis=axis, message=f"duplicate values {dupes}")


def _validate_overrides(job: str, axes: Mapping[str, Sequence[str]], overrides: Sequence[Override]) -> None:
    for ov in overrides:
        for axis, value in ov.match:
            if axis not in axes:
                raise InvalidAxisError(
                    job=job,
                    axis=axis,
                    message=f"override references undefined axis. Known axes: {sorted(axes)}",
                )
            if value not in axes[axis]:
                raise InvalidAxisError(
                    job=job,
                    axis=axis,
                    message=f"override references undefined value {value!r}. Known values: {list(axes[axis])}",
                )


def matrix_env_key(axis: str) -> str:
    return "MATRIX_" + _ENV_KEY_RE.sub("_", axis).strip("_").upper()


def expand_axes(
    axes: Mapping[str, Sequence[str]],
    overrides: Sequence[Override] = (),
    defaults: Mapping[str, str] | None = None,
    *,
    job: str = "<matrix>",
) -> List[Tuple[Tuple[Tuple[str, str], ...], Dict[str, str], List[Override]]]:
    """
    Cartesian product of `axes` in declared axis order and declared value order.

    Returns one (combination, env, matched_overrides) triple per combination.
    `env` is `defaults`, then the MATRIX_<AXIS> variables, then every
    matching override in declaration order.
    """
    _validate_axes(job, axes)
    _validate_overrides(job, axes, overrides)

    names = list(axes)
    out = []
    for values in itertools.product(*(list(axes[n]) for n in names)):
        combo = tuple(zip(names, (str(v) for v in values)))
        combo_map = dict(combo)

        env: Dict[str, str] = dict(defaults or {})
        env.update({matrix_env_key(axis): value for axis, value in combo})

        matched = [ov for ov in overrides if ov.matches(combo_map)]
        for ov in matched:
            env.update(dict(ov.env))

        out.append((combo, env, matched))
    return out


def expand(template: JobTemplate) -> List[JobSpec]:
    """Expand one JobTemplate into its JobSpecs. Pure and deterministic."""
    specs: List[JobSpec] = []
    for combo, env, matched in expand_axes(
        template.axes,
        template.overrides,
        template.env,
        job=template.name,
    ):
        resources = list(template.resources)
        for ov in matched:
            resources.extend(ov.resources)

        specs.append(
            JobSpec(
                name=template.name,
                axes=combo,
                env=tuple(sorted(env.items())),
                steps=tuple(template.steps),
                resources=tuple(resources),
                runs_on=tuple(template.runs_on),
            )
        )
    return specs


def expand_all(templates: Iterable[JobTemplate]) -> List[JobSpec]:
    """Expand every template, keeping template order. Job ids must be unique."""
    jobs: List[JobSpec] = []
    for t in templates:
        jobs.extend(expand(t))

    ids = [j.job_id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise WorkflowError(f"Duplicate job ids found: {dupes}")

    # the slug names the job's work and artifact dirs
    by_slug: Dict[str, List[str]] = {}
    for j in jobs:
        by_slug.setdefault(j.slug, []).append(j.job_id)
    clashes = {slug: ids for slug, ids in by_slug.items() if len(ids) > 1}
    if clashes:
        raise WorkflowError(f"Job ids map to the same directory name: {clashes}")
    return jobs
