"""
Generation Provider module.

Replicate client used for provider-delegated (asynchronous) steps.
"""

from modules.generation_provider.client import (
    GenerationProviderClient,
    ProviderEvent,
    ProviderStatus,
    get_provider,
)
from modules.generation_provider.config import build_model_input

__all__ = ["GenerationProviderClient", "ProviderEvent", "ProviderStatus", "get_provider", "build_model_input"]
