"""
Post data models.

One Post row exists per (job, account, platform).
"""

from datetime import datetime
from typing import Iterable, Literal, Optional

from pydantic import BaseModel, field_serializer

PostStatus = Literal[
    "draft", "pending", "publishing", "scheduled", "published", "failed", "partial", "cancelled"
]
Platform = Literal["tiktok", "instagram", "youtube"]

# Posts in these states count as "already delivered" for forced reposts
DELIVERED_POST_STATUSES = ("published", "scheduled", "publishing")


class PublishTarget(BaseModel):
    """One distribution account a job is published to."""

    account_id: str
    platform: str = "tiktok"


class Post(BaseModel):
    id: Optional[str] = None
    job_id: str
    account_id: str
    platform: str
    caption: str = ""
    media_url: str
    status: PostStatus = "pending"
    external_post_id: Optional[str] = None
    external_url: Optional[str] = None
    publish_mode: Optional[str] = None
    scheduled_for: Optional[str] = None
    created_by: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_serializer("created_at", "updated_at")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None


def derive_post_status(platform_statuses: Iterable[str]) -> PostStatus:
    """
    Combine per-platform results of one distribution post into one status.

    Anything still in flight wins, then published/failed combinations,
    then scheduled, and draft when nothing was reported.
    """
    statuses = [s for s in platform_statuses if s]
    if not statuses:
        return "draft"
    if any(s in ("publishing", "pending") for s in statuses):
        return "publishing"
    published = sum(1 for s in statuses if s == "published")
    failed = sum(1 for s in statuses if s == "failed")
    if published == len(statuses):
        return "published"
    if published and failed:
        return "partial"
    if failed == len(statuses):
        return "failed"
    if any(s == "scheduled" for s in statuses):
        return "scheduled"
    if published:
        return "published"
    if any(s == "cancelled" for s in statuses):
        return "cancelled"
    return "draft"
