"""
Completion Router module.

Single path by which provider completions (webhook or recovery poll) resume
pipeline jobs, with an exactly-once claim per (job, request).
"""

from modules.completion_router.router import (
    NO_REQUEST_ID_REASON,
    CompletionRouter,
    get_router,
)

__all__ = ["CompletionRouter", "get_router", "NO_REQUEST_ID_REASON"]
