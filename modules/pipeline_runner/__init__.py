"""
Pipeline Runner module.

Executes a pipeline job's enabled steps in order, persisting after each one,
and suspends on provider-delegated steps.
"""

from modules.pipeline_runner.runner import PipelineRunner, get_runner, run, run_job

__all__ = ["PipelineRunner", "get_runner", "run", "run_job"]
