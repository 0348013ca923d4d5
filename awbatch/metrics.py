"""Sliding-window ledger of LLM request outcomes."""

import math
import time
import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

LOG = logging.getLogger("aw-batch-worker")

HISTORY_SIZE = 100
TOKENS_PER_SECOND_WINDOW = 10


class ErrorCategory(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    SERVER_ERROR = "server_error"
    NETWORK = "network"
    UNKNOWN = "unknown"


# Checked in order, first hit wins.
_CATEGORY_NEEDLES = (
    (ErrorCategory.TIMEOUT, ("abort", "timeout")),
    (ErrorCategory.RATE_LIMIT, ("rate", "429", "too many")),
    (ErrorCategory.AUTH, ("auth", "401", "403", "api key")),
    (ErrorCategory.SERVER_ERROR, ("500", "502", "503", "504")),
    (ErrorCategory.NETWORK, ("network", "fetch", "econnrefused")),
)


def categorize_error(error: Any) -> ErrorCategory:
    """Map an exception or message to an ErrorCategory by substring match."""
    msg = str(error).lower()
    for category, needles in _CATEGORY_NEEDLES:
        if any(n in msg for n in needles):
            return category
    return ErrorCategory.UNKNOWN


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile of an ascending sequence; 0 when empty."""
    if len(sorted_values) == 0:
        return 0
    idx = math.ceil((p / 100) * len(sorted_values)) - 1
    return sorted_values[max(0, idx)]


@dataclass(frozen=True)
class RequestMetric:
    timestamp: float
    duration_ms: float
    provider: str
    model: str
    success: bool
    error_category: Optional[ErrorCategory] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    chunk_index: Optional[int] = None
    chunk_total: Optional[int] = None


@dataclass
class MetricsSummary:
    total_requests: int
    successful_requests: int
    failed_requests: int
    errors_by_category: Dict[str, int]
    average_duration_ms: int
    p50_duration_ms: float
    p95_duration_ms: float
    p99_duration_ms: float
    total_prompt_tokens: int
    total_completion_tokens: int
    tokens_per_second: float
    last_updated: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _zero_counts() -> Dict[ErrorCategory, int]:
    return {c: 0 for c in ErrorCategory}


class MetricsCollector:
    """Bounded history of request metrics plus running counters.

    One instance is shared by the providers that record into it and the
    chunk controller that reads it. All access goes through a lock so that a
    background job and a foreground caller can share it safely.
    """

    def __init__(self, capacity: int = HISTORY_SIZE):
        self.capacity = capacity
        self._lock = threading.Lock()
        self._history = deque(maxlen=capacity)
        self._error_counts = _zero_counts()
        self._prompt_tokens = 0
        self._completion_tokens = 0

    def record_request(self, metric: RequestMetric) -> None:
        with self._lock:
            self._history.append(metric)
            if not metric.success and metric.error_category is not None:
                self._error_counts[ErrorCategory(metric.error_category)] += 1
            if metric.prompt_tokens:
                self._prompt_tokens += metric.prompt_tokens
            if metric.completion_tokens:
                self._completion_tokens += metric.completion_tokens

        chunk = None
        if metric.chunk_index is not None:
            chunk = f"{metric.chunk_index + 1}/{metric.chunk_total}"
        tokens = None
        if metric.prompt_tokens and metric.completion_tokens:
            tokens = f"{metric.prompt_tokens}/{metric.completion_tokens}"
        LOG.debug(
            "llm request provider=%s model=%s duration_ms=%d success=%s "
            "category=%s tokens=%s chunk=%s",
            metric.provider,
            metric.model,
            metric.duration_ms,
            metric.success,
            getattr(metric.error_category, "value", metric.error_category),
            tokens,
            chunk,
        )

    categorize_error = staticmethod(categorize_error)

    def recent(self, n: Optional[int] = None) -> List[RequestMetric]:
        """Copy of the history, oldest first; the last ``n`` entries if given."""
        with self._lock:
            items = list(self._history)
        if n is None:
            return items
        return items[-n:] if n > 0 else []

    def average_tokens_per_second(self) -> float:
        with self._lock:
            items = list(self._history)
        return self._tokens_per_second(items)

    @staticmethod
    def _tokens_per_second(items: List[RequestMetric]) -> float:
        rates = [
            m.completion_tokens / m.duration_ms * 1000
            for m in items
            if m.success and m.completion_tokens and m.duration_ms > 0
        ][-TOKENS_PER_SECOND_WINDOW:]
        if not rates:
            return 0.0
        return float(np.mean(rates))

    def get_summary(self) -> MetricsSummary:
        with self._lock:
            items = list(self._history)
            counts = {c.value: n for c, n in self._error_counts.items()}
            prompt_tokens = self._prompt_tokens
            completion_tokens = self._completion_tokens

        successful = sum(1 for m in items if m.success)
        durations = np.sort(np.array([m.duration_ms for m in items], dtype=float))
        avg = float(np.mean(durations)) if durations.size else 0.0
        ordered = durations.tolist()

        return MetricsSummary(
            total_requests=len(items),
            successful_requests=successful,
            failed_requests=len(items) - successful,
            errors_by_category=counts,
            average_duration_ms=int(round(avg)),
            p50_duration_ms=percentile(ordered, 50),
            p95_duration_ms=percentile(ordered, 95),
            p99_duration_ms=percentile(ordered, 99),
            total_prompt_tokens=prompt_tokens,
            total_completion_tokens=completion_tokens,
            tokens_per_second=round(self._tokens_per_second(items), 2),
        )

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self._error_counts = _zero_counts()
            self._prompt_tokens = 0
            self._completion_tokens = 0
