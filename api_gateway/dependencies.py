"""
FastAPI dependencies.

Engine services injected into the route handlers. Tests replace them through
``app.dependency_overrides``.
"""

from typing import Any, Awaitable, Callable, Dict

from modules.batch_coordinator import BatchCoordinator, get_coordinator
from modules.completion_router import CompletionRouter, get_router
from modules.publisher import Publisher, get_publisher
from shared.job_store import JobStore, job_store
from api_gateway.services.queue_service import enqueue_task

Enqueue = Callable[[str, Dict[str, Any]], Awaitable[Any]]


def get_store() -> JobStore:
    return job_store


def get_batch_coordinator() -> BatchCoordinator:
    return get_coordinator()


def get_completion_router() -> CompletionRouter:
    return get_router()


def get_job_publisher() -> Publisher:
    return get_publisher()


def get_enqueue() -> Enqueue:
    """Task enqueue function used by routes that hand work to the worker."""
    return enqueue_task
