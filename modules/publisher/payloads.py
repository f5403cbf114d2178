"""
Distribution post payloads.

Platform-specific fields, publish mode fields, per-target status mapping and
the request fingerprint used for idempotency.
"""

import hashlib
import json
from typing import Any, Dict, List, Optional, Sequence

from shared.config import settings
from shared.models.post import PostStatus, PublishTarget


def platform_entry(target: PublishTarget, caption: str) -> Dict[str, Any]:
    """One element of the post's ``platforms`` list."""
    entry: Dict[str, Any] = {"platform": target.platform, "accountId": target.account_id}
    if target.platform == "tiktok":
        entry["platformSpecificData"] = {
            "privacyLevel": "PUBLIC_TO_EVERYONE",
            "allowComment": True,
            "allowDuet": True,
            "allowStitch": True,
            "contentPreviewConfirmed": True,
            "expressConsentGiven": True,
            "videoMadeWithAi": False,
            "videoCoverTimestampMs": 1000,
        }
    elif target.platform == "instagram":
        entry["platformSpecificData"] = {"shareToFeed": True, "thumbOffset": 0}
    elif target.platform == "youtube":
        entry["platformSpecificData"] = {
            "title": (caption or "Untitled Video").split("\n")[0][:100],
            "visibility": "public",
            "madeForKids": False,
            "categoryId": "22",
        }
    return entry


def build_post_body(
    targets: Sequence[PublishTarget],
    caption: str,
    media_url: str,
    publish_mode: str,
    scheduled_for: Optional[str] = None,
    timezone: Optional[str] = None
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "content": caption or "",
        "mediaItems": [{"type": "video", "url": media_url}],
        "platforms": [platform_entry(target, caption) for target in targets],
    }
    if publish_mode == "now":
        body["publishNow"] = True
    elif publish_mode == "schedule":
        body["scheduledFor"] = scheduled_for
        body["timezone"] = timezone or settings.default_timezone
        body["publishNow"] = False
    elif publish_mode == "queue":
        body["publishNow"] = False
        body["addToQueue"] = True
    elif publish_mode == "draft":
        body["isDraft"] = True
        body["publishNow"] = False
    return body


def _account_id(value: Any) -> Optional[str]:
    # Either a plain id or an expanded {"_id": ...} account object
    if isinstance(value, dict):
        return value.get("_id")
    return value


def platform_result(post: Dict[str, Any], target: PublishTarget) -> Dict[str, Any]:
    for result in post.get("platforms") or []:
        if result.get("platform") == target.platform and _account_id(result.get("accountId")) == target.account_id:
            return result
    return {}


def target_status(publish_mode: str, platform_status: Optional[str], post_status: Optional[str]) -> PostStatus:
    """Status of one (account, platform) target after the post was created."""
    if publish_mode == "draft":
        return "draft"
    if platform_status == "published":
        return "published"
    if post_status == "scheduled" or publish_mode == "schedule":
        return "scheduled"
    if platform_status == "failed":
        return "failed"
    if platform_status == "partial":
        return "partial"
    return "publishing" if publish_mode == "now" else "pending"


def request_hash(
    job_id: str,
    media_url: str,
    caption: str,
    publish_mode: str,
    scheduled_for: Optional[str],
    timezone: Optional[str],
    targets: Sequence[PublishTarget]
) -> str:
    """SHA-256 over the canonical form of a publish request."""
    scheduled = publish_mode == "schedule"
    platforms: List[str] = sorted({f"{t.platform}:{t.account_id}" for t in targets})
    canonical = json.dumps({
        "job_id": job_id,
        "media_url": media_url,
        "caption": caption,
        "mode": publish_mode,
        "scheduled_for": scheduled_for if scheduled else None,
        "timezone": (timezone or settings.default_timezone) if scheduled else None,
        "platforms": platforms,
    }, sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
