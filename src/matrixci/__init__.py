from .dsl import axis, sh, include, exclude, allow_failure, steps, cache, deploy, pipeline, PipelineBuilder, build
from .conditions import Mode, select_branch
from .matrix import expand, expand_matrix
from .runner import load_pipeline, run
from .model import Step, JobSpec, JobOutcome, PipelineConfig, PipelineReport

__all__ = [
    "axis", "sh", "include", "exclude", "allow_failure", "steps", "cache", "deploy", "pipeline",
    "PipelineBuilder", "build", "Mode", "select_branch", "expand", "expand_matrix",
    "load_pipeline", "run", "Step", "JobSpec", "JobOutcome", "PipelineConfig", "PipelineReport",
]
