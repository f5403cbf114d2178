"""
Queue service.

Task queue on a Redis list. The API and the engine modules push JSON task
envelopes; the worker pops and dispatches them.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.config import settings
from shared.errors import RetryableError
from shared.logging import get_logger
from shared.redis_client import redis_client

logger = get_logger(__name__)

# Environment-aware so a local worker never consumes production tasks
QUEUE_NAME = settings.queue_name

TASK_TYPES = (
    "run_pipeline_job",
    "run_job",
    "resume_completion",
    "process_batch",
    "publish_master_batch",
)


def queue_key(queue_name: Optional[str] = None) -> str:
    return f"{queue_name or QUEUE_NAME}:queue"


def build_envelope(task_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    if task_type not in TASK_TYPES:
        raise ValueError(f"Unknown task type: {task_type}")
    return {
        "task_type": task_type,
        "payload": payload,
        "enqueued_at": datetime.now(timezone.utc).isoformat(),
    }


async def enqueue_task(task_type: str, payload: Dict[str, Any]) -> None:
    """
    Push a task onto the queue.

    Args:
        task_type: One of TASK_TYPES
        payload: JSON-serializable task arguments

    Raises:
        RetryableError: If Redis rejects the push
    """
    envelope = build_envelope(task_type, payload)
    try:
        # Encode as bytes since the Redis client has decode_responses=False
        await redis_client.client.lpush(queue_key(), json.dumps(envelope, default=str).encode("utf-8"))
    except Exception as e:
        logger.error("Failed to enqueue task", exc_info=e, extra={"task_type": task_type})
        raise RetryableError(f"Failed to enqueue {task_type}: {str(e)}") from e

    logger.info("Task enqueued", extra={"task_type": task_type, "queue_name": QUEUE_NAME, **_ids(payload)})


async def queue_length() -> int:
    """Number of tasks waiting on the queue."""
    return int(await redis_client.client.llen(queue_key()))


def _ids(payload: Dict[str, Any]) -> Dict[str, Any]:
    # Only flat identifiers go into log extras
    return {key: value for key, value in payload.items() if key.endswith("_id") and isinstance(value, str)}
