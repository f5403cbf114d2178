"""
Publisher module.

Publishes completed pipeline jobs to distribution accounts, guarded by a
per-job lock and an idempotency key.
"""

from modules.publisher.client import DistributionClient
from modules.publisher.publisher import Publisher, get_publisher

__all__ = ["DistributionClient", "Publisher", "get_publisher"]
