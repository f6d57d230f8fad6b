"""LLM -- provider contract, OpenAI-compatible client and model failover.

Public API: Provider, OpenAICompatibleClient, FailoverProvider, CooldownTable.
"""

from parley.llm.client import OpenAICompatibleClient
from parley.llm.failover import CooldownTable, FailoverProvider
from parley.llm.provider import (
    AllModelsFailedError,
    Provider,
    ProviderError,
    is_retryable_error,
)

__all__ = [
    "AllModelsFailedError",
    "CooldownTable",
    "FailoverProvider",
    "OpenAICompatibleClient",
    "Provider",
    "ProviderError",
    "is_retryable_error",
]
