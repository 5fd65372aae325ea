from .dsl import job, sh, upload, secret, always, on_event, on_matrix, matrix, override, tool, kind_cluster, wf, JobBuilder, build
from .matrix import expand, expand_all
from .model import JobSpec, JobTemplate, Step, TriggerEvent, JobResult, JobStatus
from .config import PipelineConfig
from .scheduler import JobScheduler, PipelineResult

__all__ = [
    "job", "sh", "upload", "secret", "always", "on_event", "on_matrix", "matrix", "override",
    "tool", "kind_cluster", "wf", "JobBuilder", "build",
    "expand", "expand_all",
    "JobSpec", "JobTemplate", "Step", "TriggerEvent", "JobResult", "JobStatus",
    "PipelineConfig", "JobScheduler", "PipelineResult",
]
