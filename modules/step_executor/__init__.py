"""
Step Executor module.

Executes one pipeline step: local media transforms run to completion,
video generation is submitted to the provider and reported as pending.
"""

from modules.step_executor.executor import (
    PendingProvider,
    StepContext,
    StepExecutor,
    SyncResult,
    get_step_label,
    step_output_name,
)

__all__ = [
    "StepExecutor",
    "StepContext",
    "SyncResult",
    "PendingProvider",
    "get_step_label",
    "step_output_name",
]
