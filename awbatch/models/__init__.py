"""LLM provider backends for screenshot batch analysis."""

import time
from typing import Callable, Optional

import requests

from awbatch.config import ConfigError, ProviderCfg, resolve_api_key
from awbatch.metrics import MetricsCollector
from .client import (
    BaseProvider,
    Decision,
    GeminiProvider,
    HttpOutcome,
    LLMRequest,
    OpenAIProvider,
    classify_outcome,
    retry_after_ms,
)
from .errors import LLMError, ResponseParseError, StreamIdleTimeout
from .responses import Observation, parse_analysis_response, to_observations
from .stream import consume_with_idle_timeout

_PROVIDERS = {"openai": OpenAIProvider, "gemini": GeminiProvider}


def get_provider(
    cfg: ProviderCfg,
    metrics: MetricsCollector,
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> BaseProvider:
    """Instantiate the provider described by ``cfg``.

    Raises:
        ConfigError: unknown provider kind or no API key.
    """
    cls = _PROVIDERS.get(cfg.kind)
    if cls is None:
        raise ConfigError(f"Unknown provider kind {cfg.kind!r}")
    return cls(cfg, resolve_api_key(cfg), metrics, session=session, sleep=sleep)


__all__ = [
    "BaseProvider",
    "OpenAIProvider",
    "GeminiProvider",
    "LLMRequest",
    "HttpOutcome",
    "Decision",
    "classify_outcome",
    "retry_after_ms",
    "LLMError",
    "StreamIdleTimeout",
    "ResponseParseError",
    "Observation",
    "parse_analysis_response",
    "to_observations",
    "consume_with_idle_timeout",
    "get_provider",
]
