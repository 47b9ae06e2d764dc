"""Imaginator - directive-aware image generation jobs on a ComfyUI backend."""

__version__ = "0.1.0"

from imaginator.core.config import ImaginatorConfig, config
from imaginator.core.job_registry import Job, JobRegistry, JobStatus
from imaginator.core.prompt_compiler import compile_prompt

__all__ = [
    "ImaginatorConfig",
    "config",
    "Job",
    "JobRegistry",
    "JobStatus",
    "compile_prompt",
]
