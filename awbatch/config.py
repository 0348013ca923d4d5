"""Worker configuration.

Priority (high to low):
  1. CLI flags (applied by the caller through :func:`apply_overrides`)
  2. Environment variables: ``AWB_MODEL`` and ``AWB_<SETTING>`` for any key
     under ``settings``; the API key comes from the env var named by
     ``provider.api_key_env``
  3. The YAML/JSON config file
  4. Defaults below

Example::

    provider:
      kind: openai
      api_base_url: https://api.openai.com/v1
      model: gpt-4o-mini
      max_screenshots_per_request: 15
    adaptive_chunking:
      enabled: true
    settings:
      capture_interval_ms: "5000"
      batching_mode: event
    context_rules:
      - app_pattern: notepad
        activity_type: productivity
"""

import os
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from awbatch.utils.helpers import load_yaml_or_json

LOG = logging.getLogger("aw-batch-worker")

PROVIDER_KINDS = ("openai", "gemini")
BATCHING_MODES = ("time", "event")
ENV_PREFIX = "AWB_"

_DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
}
_DEFAULT_KEY_ENVS = {"openai": "OPENAI_API_KEY", "gemini": "GEMINI_API_KEY"}


class ConfigError(ValueError):
    """Raised when the configuration is invalid or incomplete."""


@dataclass
class ProviderCfg:
    """LLM endpoint description (config: provider:)."""

    kind: str = "openai"
    name: str = ""
    api_base_url: str = ""
    api_key: Optional[str] = None
    api_key_env: str = ""
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    max_screenshots_per_request: int = 15
    chunk_delay_ms: int = 1000
    stream_idle_timeout_ms: int = 30_000
    timeout_ms: int = 60_000
    streaming: bool = False
    max_attempts: int = 3

    @property
    def label(self) -> str:
        return f"{self.name or self.kind}:{self.model}"


@dataclass
class AdaptiveChunkingCfg:
    enabled: bool = False
    min_size: int = 2
    max_size: int = 15
    slow_secs_per_shot: float = 8.0
    fast_secs_per_shot: float = 2.0
    hysteresis_count: int = 3
    cooldown_requests: int = 5


@dataclass
class BatchingCfg:
    target_duration_s: float = 900.0
    min_batch_duration_s: float = 10.0
    max_batch_duration_s: float = 900.0
    lookback_days: float = 7.0
    fetch_limit: int = 500
    window_switch_limit: int = 1000


@dataclass
class WorkerConfig:
    provider: ProviderCfg = field(default_factory=ProviderCfg)
    adaptive_chunking: AdaptiveChunkingCfg = field(default_factory=AdaptiveChunkingCfg)
    batching: BatchingCfg = field(default_factory=BatchingCfg)
    settings: Dict[str, str] = field(default_factory=dict)
    context_rules: List[Dict[str, Any]] = field(default_factory=list)
    cli_settings: Dict[str, str] = field(default_factory=dict)

    def get_setting(self, key: str) -> Optional[str]:
        """Setting value: CLI, then ``AWB_<KEY>``, then the file; None if unset."""
        if key in self.cli_settings:
            return self.cli_settings[key]
        env = os.environ.get(ENV_PREFIX + key.upper())
        if env is not None:
            return env
        value = self.settings.get(key)
        return None if value is None else str(value)


def _build(cls, raw: Any, section: str):
    """Instantiate dataclass ``cls`` from a mapping, coercing simple types."""
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"'{section}' must be a mapping, got {type(raw).__name__}")

    known = {f.name: f for f in fields(cls)}
    kwargs = {}
    for key, value in raw.items():
        f = known.get(key)
        if f is None:
            LOG.warning("Unknown config key %s.%s ignored", section, key)
            continue
        default = f.default
        try:
            if isinstance(default, bool):
                if isinstance(value, str):
                    value = value.strip().lower() in ("1", "true", "yes", "on")
                else:
                    value = bool(value)
            elif isinstance(default, int):
                value = int(value)
            elif isinstance(default, float):
                value = float(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {section}.{key}: {value!r}") from e
        kwargs[key] = value
    return cls(**kwargs)


def _validate(cfg: WorkerConfig) -> None:
    p = cfg.provider
    if p.kind not in PROVIDER_KINDS:
        raise ConfigError(f"provider.kind must be one of {PROVIDER_KINDS}, got {p.kind!r}")
    if p.max_screenshots_per_request < 1:
        raise ConfigError("provider.max_screenshots_per_request must be >= 1")
    if p.max_attempts < 1:
        raise ConfigError("provider.max_attempts must be >= 1")
    if p.timeout_ms <= 0 or p.stream_idle_timeout_ms <= 0:
        raise ConfigError("provider timeouts must be positive")
    if p.chunk_delay_ms < 0:
        raise ConfigError("provider.chunk_delay_ms must be >= 0")

    a = cfg.adaptive_chunking
    if not 1 <= a.min_size <= a.max_size:
        raise ConfigError("adaptive_chunking requires 1 <= min_size <= max_size")
    if a.fast_secs_per_shot > a.slow_secs_per_shot:
        raise ConfigError("adaptive_chunking.fast_secs_per_shot must not exceed slow_secs_per_shot")
    if a.hysteresis_count < 1:
        raise ConfigError("adaptive_chunking.hysteresis_count must be >= 1")

    b = cfg.batching
    if b.fetch_limit < 1:
        raise ConfigError("batching.fetch_limit must be >= 1")


def load_config(path: Optional[str] = None) -> WorkerConfig:
    """Load and validate the worker config from a YAML/JSON file (optional)."""
    try:
        raw = load_yaml_or_json(path)
    except (OSError, ValueError) as e:
        raise ConfigError(str(e)) from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")

    settings = raw.get("settings") or {}
    if not isinstance(settings, dict):
        raise ConfigError("'settings' must be a mapping")
    rules = raw.get("context_rules") or []
    if not isinstance(rules, list):
        raise ConfigError("'context_rules' must be a list")

    cfg = WorkerConfig(
        provider=_build(ProviderCfg, raw.get("provider"), "provider"),
        adaptive_chunking=_build(
            AdaptiveChunkingCfg, raw.get("adaptive_chunking"), "adaptive_chunking"
        ),
        batching=_build(BatchingCfg, raw.get("batching"), "batching"),
        settings={str(k): str(v) for k, v in settings.items()},
        context_rules=list(rules),
    )

    p = cfg.provider
    p.kind = p.kind.lower()
    env_model = os.environ.get(ENV_PREFIX + "MODEL")
    if env_model:
        p.model = env_model
    if not p.api_base_url:
        p.api_base_url = _DEFAULT_BASE_URLS.get(p.kind, "")
    if not p.api_key_env:
        p.api_key_env = _DEFAULT_KEY_ENVS.get(p.kind, "")
    if not p.name:
        p.name = p.kind

    _validate(cfg)
    return cfg


def apply_overrides(cfg: WorkerConfig, **overrides: Any) -> WorkerConfig:
    """Apply CLI flags; ``None`` means the flag was not given."""
    if overrides.get("batching") is not None:
        cfg.cli_settings["batching_mode"] = overrides["batching"]
    if overrides.get("adaptive") is not None:
        cfg.adaptive_chunking.enabled = bool(overrides["adaptive"])
    if overrides.get("stream") is not None:
        cfg.provider.streaming = bool(overrides["stream"])
    if overrides.get("model"):
        cfg.provider.model = overrides["model"]
    return cfg


def resolve_api_key(p: ProviderCfg) -> str:
    """API key from the config or its environment variable.

    Raises:
        ConfigError: if no key is available.
    """
    key = p.api_key or (os.environ.get(p.api_key_env) if p.api_key_env else None)
    if not key:
        raise ConfigError(
            f"No API key for provider {p.name!r}: set provider.api_key or ${p.api_key_env}"
        )
    return key
