"""
Batch Coordinator module.

Fan-out of a pipeline template into child jobs and fan-in of their
terminal statuses into the batch counters.
"""

from modules.batch_coordinator.coordinator import (
    BatchCoordinator,
    expand_for_image,
    get_coordinator,
    on_child_terminal,
)

__all__ = ["BatchCoordinator", "expand_for_image", "get_coordinator", "on_child_terminal"]
