"""
Queue worker process.

Pops task envelopes from the Redis queue and dispatches them to the engine
modules. Tasks run concurrently up to ``settings.worker_concurrency``.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from modules.batch_coordinator import get_coordinator
from modules.completion_router import get_router
from modules.generation_provider import ProviderEvent
from modules.pipeline_runner import get_runner
from modules.publisher import get_publisher
from shared.config import settings
from shared.errors import PipelineError, RetryableError
from shared.job_store import job_store
from shared.logging import get_logger, set_job_id
from shared.redis_client import redis_client
from api_gateway.services.queue_service import QUEUE_NAME, queue_key

logger = get_logger(__name__)

MAX_TASK_ATTEMPTS = 3
POP_TIMEOUT_SECONDS = 5

TaskHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


async def handle_run_pipeline_job(payload: Dict[str, Any]) -> Any:
    return await get_runner().run(payload["job_id"])


async def handle_run_job(payload: Dict[str, Any]) -> Any:
    return await get_runner().run_job(payload["job_id"])


async def handle_resume_completion(payload: Dict[str, Any]) -> Any:
    event = ProviderEvent(**payload["event"])
    return await get_router().process_event(event)


async def handle_process_batch(payload: Dict[str, Any]) -> Any:
    return await get_coordinator().process_batch(payload["batch_id"])


async def handle_publish_master_batch(payload: Dict[str, Any]) -> Any:
    return await get_publisher().publish_master_batch(
        payload["batch_id"],
        job_ids=payload.get("job_ids"),
        force=bool(payload.get("force", False)),
    )


HANDLERS: Dict[str, TaskHandler] = {
    "run_pipeline_job": handle_run_pipeline_job,
    "run_job": handle_run_job,
    "resume_completion": handle_resume_completion,
    "process_batch": handle_process_batch,
    "publish_master_batch": handle_publish_master_batch,
}


async def fail_job_for_task(task_type: str, payload: Dict[str, Any], reason: str) -> None:
    """Mark the job (or batch children) a crashed task was working on as failed."""
    if task_type == "process_batch":
        batch_id = payload.get("batch_id")
        if batch_id:
            await get_coordinator().fail_queued_children(batch_id, reason)
        return
    job_id = payload.get("job_id")
    if not job_id:
        return
    runner = get_runner()
    if task_type == "run_pipeline_job":
        job = await job_store.get_pipeline_job(job_id)
        if job is not None:
            await runner.mark_failed(job, reason)
    elif task_type == "run_job":
        job = await job_store.get_job(job_id)
        if job is not None:
            await runner.mark_job_failed(job, reason)


async def process_task(task: Dict[str, Any]) -> None:
    """
    Run a single task envelope.

    Pipeline errors are logged (the modules already recorded them on the job),
    retryable errors propagate so the caller can requeue, and anything else
    fails the task's job.
    """
    task_type = task.get("task_type")
    payload = task.get("payload") or {}
    handler = HANDLERS.get(task_type)
    if handler is None:
        logger.error("Unknown task type", extra={"task_type": task_type})
        return

    set_job_id(payload.get("job_id"))
    logger.info("Processing task", extra={"task_type": task_type})
    try:
        result = await handler(payload)
        logger.info("Task processed", extra={"task_type": task_type, "result": result})
    except RetryableError as e:
        logger.warning("Retryable error occurred", exc_info=e, extra={"task_type": task_type})
        raise
    except PipelineError as e:
        logger.error("Task failed", exc_info=e, extra={"task_type": task_type})
    except Exception as e:
        logger.error("Unexpected error processing task", exc_info=e, extra={"task_type": task_type})
        await fail_job_for_task(task_type, payload, f"Unexpected error: {str(e)}")


async def requeue(task: Dict[str, Any], redis=None) -> bool:
    """
    Push a task back after a retryable failure.

    Returns:
        False once the task has used MAX_TASK_ATTEMPTS
    """
    attempts = int(task.get("attempts", 1))
    if attempts >= MAX_TASK_ATTEMPTS:
        logger.error("Task dropped after retries", extra={"task_type": task.get("task_type"), "attempts": attempts})
        return False
    client = redis or redis_client.client
    await client.lpush(queue_key(), json.dumps(dict(task, attempts=attempts + 1), default=str).encode("utf-8"))
    logger.info("Task requeued", extra={"task_type": task.get("task_type"), "attempts": attempts + 1})
    return True


async def give_up(task: Dict[str, Any], error: Exception) -> None:
    """Fail whatever a task that exhausted its retries was working on."""
    reason = f"Gave up after {MAX_TASK_ATTEMPTS} attempts: {error}"
    try:
        await fail_job_for_task(task.get("task_type"), task.get("payload") or {}, reason)
    except Exception as e:
        logger.error("Failed to record task failure", exc_info=e, extra={"task_type": task.get("task_type")})


async def run_task_with_limit(task: Dict[str, Any], semaphore: asyncio.Semaphore, redis=None) -> None:
    """Run a task and release its concurrency slot. The slot is acquired by the caller."""
    try:
        await process_task(task)
    except RetryableError as e:
        if not await requeue(task, redis):
            await give_up(task, e)
    except Exception as e:
        logger.error("Task crashed", exc_info=e, extra={"task_type": task.get("task_type")})
    finally:
        semaphore.release()


def parse_task(raw: Any) -> Optional[Dict[str, Any]]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        task = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        logger.error(f"Failed to parse task JSON: {e}", extra={"raw": str(raw)[:200]})
        return None
    if not isinstance(task, dict):
        logger.error("Task envelope is not an object", extra={"raw": str(raw)[:200]})
        return None
    return task


async def worker_loop(
    redis=None,
    concurrency: Optional[int] = None,
    stop: Optional[asyncio.Event] = None
) -> None:
    """
    Pop tasks until cancelled (or until ``stop`` is set).

    A slot is taken before popping, so the worker never holds more tasks than
    it can run.
    """
    client = redis or redis_client.client
    semaphore = asyncio.Semaphore(concurrency or settings.worker_concurrency)
    running: Set[asyncio.Task] = set()
    key = queue_key()
    logger.info("Worker started", extra={"queue_name": QUEUE_NAME, "concurrency": concurrency or settings.worker_concurrency})

    try:
        while stop is None or not stop.is_set():
            await semaphore.acquire()
            try:
                popped = await client.brpop(key, timeout=POP_TIMEOUT_SECONDS)
            except asyncio.CancelledError:
                semaphore.release()
                raise
            except Exception as e:
                semaphore.release()
                logger.error(f"Error during brpop: {e}", exc_info=e)
                await asyncio.sleep(POP_TIMEOUT_SECONDS)
                continue

            # brpop returns (queue_key, value) or None on timeout
            task = parse_task(popped[1]) if popped else None
            if task is None:
                semaphore.release()
                continue

            handle = asyncio.create_task(run_task_with_limit(task, semaphore, client))
            running.add(handle)
            handle.add_done_callback(running.discard)
    except asyncio.CancelledError:
        logger.info("Worker loop cancelled")
        raise
    finally:
        if running:
            await asyncio.gather(*running, return_exceptions=True)


async def main():
    """Main entry point for worker."""
    try:
        await worker_loop()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Worker stopped")
    except Exception as e:
        logger.error("Worker crashed", exc_info=e)
        raise


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
