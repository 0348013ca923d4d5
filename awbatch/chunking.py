"""Feedback controller for the number of screenshots sent per LLM request."""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from awbatch.config import AdaptiveChunkingCfg
from awbatch.metrics import ErrorCategory, MetricsCollector

LOG = logging.getLogger("aw-batch-worker")

DEFAULT_CHUNK_SIZE = 15
TIMEOUT_WINDOW = 5
TIMEOUTS_TO_SHRINK = 2
SPEED_WINDOW = 10


class AdjustmentReason(str, Enum):
    INITIAL = "initial"
    SLOW_PERFORMANCE = "slow_performance"
    FAST_PERFORMANCE = "fast_performance"
    TIMEOUT_SHRINK = "timeout_shrink"


@dataclass
class ChunkControllerState:
    adjusted_size: int = DEFAULT_CHUNK_SIZE
    adjustment_reason: AdjustmentReason = AdjustmentReason.INITIAL
    consecutive_slow_count: int = 0
    consecutive_fast_count: int = 0
    cooldown_remaining: int = 0


class ChunkController:
    """Adjusts the chunk size from recent request latency.

    Evaluated once per batch. Priority order:

    1. an active cooldown is consumed and nothing else happens;
    2. two timeouts among the last five requests shrink the size by 2 at once;
    3. otherwise average seconds per screenshot over the last ten successful
       chunked requests feeds slow/fast counters, and a counter reaching
       ``hysteresis_count`` shrinks by 2 or grows by 1.
    """

    def __init__(self, metrics: MetricsCollector, initial_size: int = DEFAULT_CHUNK_SIZE):
        self.metrics = metrics
        self.initial_size = initial_size
        self._state = ChunkControllerState(adjusted_size=initial_size)

    @property
    def state(self) -> ChunkControllerState:
        return replace(self._state)

    @property
    def adjusted_size(self) -> int:
        return self._state.adjusted_size

    def reset(self) -> None:
        self._state = ChunkControllerState(adjusted_size=self.initial_size)

    def average_secs_per_shot(self) -> float:
        """Mean request seconds divided by the current size; 0 without data."""
        recent = [
            m
            for m in self.metrics.recent()
            if m.success and m.chunk_total is not None
        ][-SPEED_WINDOW:]
        if not recent:
            return 0.0
        total_secs = sum(m.duration_ms / 1000 for m in recent)
        return total_secs / len(recent) / self._state.adjusted_size

    def _apply(self, size: int, reason: AdjustmentReason, cfg: AdaptiveChunkingCfg):
        old = self._state.adjusted_size
        self._state.adjusted_size = size
        self._state.adjustment_reason = reason
        self._state.cooldown_remaining = cfg.cooldown_requests
        LOG.info("Chunk size adjusted %d -> %d (%s)", old, size, reason.value)

    def evaluate(self, cfg: AdaptiveChunkingCfg) -> None:
        if not cfg.enabled:
            return
        st = self._state

        if st.cooldown_remaining > 0:
            st.cooldown_remaining -= 1
            return

        timeouts = sum(
            1
            for m in self.metrics.recent(TIMEOUT_WINDOW)
            if not m.success and m.error_category == ErrorCategory.TIMEOUT
        )
        if timeouts >= TIMEOUTS_TO_SHRINK:
            self._apply(
                max(cfg.min_size, st.adjusted_size - 2),
                AdjustmentReason.TIMEOUT_SHRINK,
                cfg,
            )
            st.consecutive_slow_count = 0
            st.consecutive_fast_count = 0
            return

        secs_per_shot = self.average_secs_per_shot()
        if secs_per_shot == 0:
            return

        if secs_per_shot > cfg.slow_secs_per_shot:
            st.consecutive_slow_count += 1
            st.consecutive_fast_count = 0
        elif secs_per_shot < cfg.fast_secs_per_shot:
            st.consecutive_fast_count += 1
            st.consecutive_slow_count = 0
        else:
            st.consecutive_slow_count = 0
            st.consecutive_fast_count = 0

        if st.consecutive_slow_count >= cfg.hysteresis_count:
            size = max(cfg.min_size, st.adjusted_size - 2)
            if size != st.adjusted_size:
                self._apply(size, AdjustmentReason.SLOW_PERFORMANCE, cfg)
            st.consecutive_slow_count = 0
        elif st.consecutive_fast_count >= cfg.hysteresis_count:
            size = min(cfg.max_size, st.adjusted_size + 1)
            if size != st.adjusted_size:
                self._apply(size, AdjustmentReason.FAST_PERFORMANCE, cfg)
            st.consecutive_fast_count = 0

    def chunk_size(self, cfg: AdaptiveChunkingCfg, static_size: Optional[int]) -> int:
        """Evaluate and return the size to use for the next batch."""
        if not cfg.enabled:
            return max(1, static_size or DEFAULT_CHUNK_SIZE)
        self.evaluate(cfg)
        return max(1, self._state.adjusted_size)
