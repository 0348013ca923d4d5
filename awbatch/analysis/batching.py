"""Segmentation of the screenshot stream into activity batches.

Two strategies are available:

* time-based: close a batch on an idle gap or when it grows past the target
  duration;
* event-based: additionally close a batch whenever the window-switch timeline
  says the user moved to a different activity context.

Both leave a short, still-growing trailing bucket unflushed so that the next
run can extend it with newly captured screenshots.
"""

import math
import time
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

from .context import ActivityContext, classify, is_context_change

LOG = logging.getLogger("aw-batch-worker")

DEFAULT_TARGET_DURATION = 15 * 60
DEFAULT_MIN_BATCH_DURATION = 10
MAX_EVENT_BATCH_DURATION = 15 * 60
MIN_MAX_GAP = 120


@dataclass(frozen=True)
class Screenshot:
    id: str
    captured_at: float
    file_path: str
    file_size: int = 0
    app_name: Optional[str] = None
    window_title: Optional[str] = None


@dataclass(frozen=True)
class WindowSwitch:
    timestamp: float
    to_app: str
    to_title: str = ""


@dataclass
class Batch:
    screenshots: List[Screenshot]
    start: float
    end: float
    context: Optional[ActivityContext] = None

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class BatchingConfig:
    target_duration: float = DEFAULT_TARGET_DURATION
    max_gap: float = MIN_MAX_GAP
    min_batch_duration: float = DEFAULT_MIN_BATCH_DURATION
    max_batch_duration: float = MAX_EVENT_BATCH_DURATION


def batching_config_for(
    capture_interval_ms: Any,
    target_duration: float = DEFAULT_TARGET_DURATION,
    min_batch_duration: float = DEFAULT_MIN_BATCH_DURATION,
    max_batch_duration: float = MAX_EVENT_BATCH_DURATION,
) -> BatchingConfig:
    """Derive the batching config for a capture interval.

    The idle gap has to stay well above the capture interval, otherwise slow
    capture rates would put every screenshot in its own batch.

    Args:
        capture_interval_ms: Capture interval setting; strings are accepted,
            anything unparsable counts as 1000ms.

    Returns:
        BatchingConfig with ``max_gap = max(120, ceil(interval_s * 3))``.
    """
    try:
        interval_ms = int(str(capture_interval_ms).strip())
    except (TypeError, ValueError):
        interval_ms = 1000
    interval_ms = max(1000, interval_ms)
    interval_s = max(1, math.ceil(interval_ms / 1000))
    return BatchingConfig(
        target_duration=target_duration,
        max_gap=max(MIN_MAX_GAP, math.ceil(interval_s * 3)),
        min_batch_duration=min_batch_duration,
        max_batch_duration=max_batch_duration,
    )


def _ordered(screenshots: Sequence[Screenshot]) -> List[Screenshot]:
    valid = []
    for s in screenshots:
        try:
            ts = float(s.captured_at)
        except (TypeError, ValueError):
            continue
        if math.isfinite(ts):
            valid.append(s)
    # sorted() is stable, so duplicate timestamps keep their input order
    return sorted(valid, key=lambda s: float(s.captured_at))


def _close(bucket: List[Screenshot], context=None) -> Batch:
    return Batch(
        screenshots=list(bucket),
        start=bucket[0].captured_at,
        end=bucket[-1].captured_at,
        context=context,
    )


def _should_flush_trailing(
    bucket: List[Screenshot], cfg: BatchingConfig, now: float
) -> bool:
    span = bucket[-1].captured_at - bucket[0].captured_at
    since_last = now - bucket[-1].captured_at
    if span >= cfg.min_batch_duration or since_last > cfg.max_gap:
        return True
    LOG.debug(
        "Pending bucket of %d shots (%.0fs) waiting for more data", len(bucket), span
    )
    return False


def create_time_batches(
    screenshots: Sequence[Screenshot],
    cfg: BatchingConfig,
    now: Optional[float] = None,
) -> List[Batch]:
    """Group screenshots into batches split on idle gaps and target duration."""
    ordered = _ordered(screenshots)
    if not ordered:
        return []
    now = time.time() if now is None else now

    batches: List[Batch] = []
    bucket: List[Screenshot] = []
    for shot in ordered:
        if not bucket:
            bucket.append(shot)
            continue
        gap = shot.captured_at - bucket[-1].captured_at
        span = shot.captured_at - bucket[0].captured_at
        if gap > cfg.max_gap or span > cfg.target_duration:
            batches.append(_close(bucket))
            bucket = [shot]
        else:
            bucket.append(shot)

    if bucket and _should_flush_trailing(bucket, cfg, now):
        batches.append(_close(bucket))
    return batches


def build_context_timeline(
    switches: Sequence[WindowSwitch],
) -> List[Tuple[float, ActivityContext]]:
    """Classify window switches into a time-ordered context timeline."""
    timeline = []
    for sw in sorted(switches, key=lambda s: s.timestamp):
        if sw.to_app:
            timeline.append((sw.timestamp, classify(sw.to_app, sw.to_title or "")))
    return timeline


def create_event_batches(
    screenshots: Sequence[Screenshot],
    switches: Sequence[WindowSwitch],
    cfg: BatchingConfig,
    now: Optional[float] = None,
) -> List[Batch]:
    """Group screenshots into batches that follow activity context changes.

    A screenshot takes the context of the latest window switch at or before
    it. Screenshots captured before the first switch have no context, and a
    missing context never opens a new batch on its own.

    Falls back to :func:`create_time_batches` when no usable switch exists.
    """
    ordered = _ordered(screenshots)
    if not ordered:
        return []
    now = time.time() if now is None else now

    timeline = build_context_timeline(switches)
    if not timeline:
        LOG.info("No window switches for range, falling back to time-based batching")
        return create_time_batches(ordered, cfg, now=now)

    batches: List[Batch] = []
    bucket: List[Screenshot] = []
    current: Optional[ActivityContext] = None
    idx = 0

    for shot in ordered:
        ts = shot.captured_at
        while idx < len(timeline) - 1 and timeline[idx + 1][0] <= ts:
            idx += 1
        ctx = timeline[idx][1] if timeline[idx][0] <= ts else None

        if not bucket:
            bucket.append(shot)
            current = ctx
            continue

        span = ts - bucket[0].captured_at
        gap = ts - bucket[-1].captured_at
        changed = ctx is not None and is_context_change(current, ctx)
        if changed or span > cfg.max_batch_duration or gap > cfg.max_gap:
            batches.append(_close(bucket, current))
            bucket = [shot]
            current = ctx
        else:
            bucket.append(shot)

    if bucket and _should_flush_trailing(bucket, cfg, now):
        batches.append(_close(bucket, current))
    return batches


def split_into_chunks(items: Sequence, size: int) -> List[list]:
    """Split ``items`` into ordered sub-lists of at most ``size`` elements."""
    if size < 1:
        raise ValueError(f"chunk size must be >= 1, got {size}")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]
