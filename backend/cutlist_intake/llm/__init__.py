"""
LLM Provider Package

Provider-agnostic access to the extraction backends:
  - OpenAI           (GPT-4o)
  - Azure OpenAI     (same models, different endpoint)
  - AWS Bedrock      (Claude vision models, the default primary)

plus the resilience primitives every call goes through:
  - TokenBucketRateLimiter  per-provider admission control
  - with_retry              exponential backoff with jitter

Public API::

    from cutlist_intake.llm import build_default_chain, with_retry, RetryPolicy

    chain = build_default_chain()
    for handle in chain.ordered(preferred="openai"):
        ...
"""

from cutlist_intake.llm.providers import (
    ChatModelProvider,
    ExtractionPayload,
    ExtractionProvider,
    ProviderChain,
    ProviderHandle,
    ProviderResponse,
    TokenUsage,
)
from cutlist_intake.llm.rate_limiter import RateLimiterRegistry, TokenBucketRateLimiter, get_rate_limiters
from cutlist_intake.llm.retry import RetryOutcome, RetryPolicy, with_retry
from cutlist_intake.llm.router import ModelRouter, Provider, build_default_chain

__all__ = [
    "ChatModelProvider",
    "ExtractionPayload",
    "ExtractionProvider",
    "ModelRouter",
    "Provider",
    "ProviderChain",
    "ProviderHandle",
    "ProviderResponse",
    "RateLimiterRegistry",
    "RetryOutcome",
    "RetryPolicy",
    "TokenBucketRateLimiter",
    "TokenUsage",
    "build_default_chain",
    "get_rate_limiters",
    "with_retry",
]
