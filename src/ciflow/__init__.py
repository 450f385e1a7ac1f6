from .dsl import job, sh, uses, retry, matrix, trigger, concurrency, pipeline, wf, JobBuilder, build
from .engine import Engine
from .loader import load_definition
from .model import Event, Job, PipelineDefinition, Step

__all__ = [
    "job", "sh", "uses", "retry", "matrix", "trigger", "concurrency", "pipeline", "wf",
    "JobBuilder", "build", "Engine", "load_definition", "Event", "Job", "PipelineDefinition", "Step",
]
