"""
Provider completion endpoints.

The provider webhook and the stuck-job recovery trigger both feed the
completion router.
"""

import json

from fastapi import APIRouter, Depends, Query, Request

from modules.completion_router import CompletionRouter
from shared.logging import get_logger
from api_gateway.dependencies import get_completion_router

logger = get_logger(__name__)

router = APIRouter()


@router.post("/provider-webhook")
async def provider_webhook(
    request: Request,
    completion_router: CompletionRouter = Depends(get_completion_router)
):
    """
    Receive a provider completion callback.

    Always answers 200 {"received": true} so the provider does not retry;
    the job lookup and resume happen on the worker.
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Webhook body is not JSON", extra={"error": str(e)})
        return {"received": True}
    if not isinstance(body, dict):
        logger.warning("Webhook body is not an object")
        return {"received": True}
    return await completion_router.handle_webhook(body)


@router.post("/recover-stuck-jobs")
async def recover_stuck_jobs(
    force: bool = Query(False, description="Run even if a sweep ran within the minimum interval"),
    completion_router: CompletionRouter = Depends(get_completion_router)
):
    """
    Poll the provider for jobs stuck in processing.

    Returns:
        {"skipped", "checked", "results": [{job_id, kind, action, detail}]}
    """
    return await completion_router.recover_stuck_jobs(force=force)
