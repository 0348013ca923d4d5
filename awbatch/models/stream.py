"""Server-sent-event parsing and idle-timeout-guarded stream consumption."""

import json
import time
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

from .errors import StreamIdleTimeout

LOG = logging.getLogger("aw-batch-worker")

DEFAULT_IDLE_TIMEOUT_S = 30.0

_END = object()


def iter_sse_data(lines: Iterable[Any]) -> Iterator[Dict[str, Any]]:
    """Yield decoded JSON payloads of ``data:`` lines.

    ``[DONE]`` markers, other SSE fields and malformed JSON are skipped.
    """
    for raw in lines:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        line = (raw or "").strip()
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if not data or data == "[DONE]":
            continue
        try:
            obj = json.loads(data)
        except ValueError:
            LOG.debug("Skipping malformed stream line: %.80s", data)
            continue
        if isinstance(obj, dict):
            yield obj


def dig(obj: Any, *path: Any) -> Any:
    """Follow dict keys / list indices, returning None on any miss."""
    for key in path:
        try:
            obj = obj[key]
        except (KeyError, IndexError, TypeError):
            return None
    return obj


def consume_with_idle_timeout(
    fragments: Iterator[str],
    idle_timeout_s: float = DEFAULT_IDLE_TIMEOUT_S,
    on_timeout: Optional[Callable[[], None]] = None,
) -> str:
    """Concatenate ``fragments``, failing if any single wait exceeds the idle window.

    Each ``next()`` runs on a dedicated reader thread and the caller waits on
    it with a timeout, so a stalled stream is detected even when the server
    never ends it.

    Args:
        fragments: Iterator of text fragments.
        idle_timeout_s: Longest allowed wait for one fragment.
        on_timeout: Called after a timeout to release the underlying
            connection so the reader thread can finish.

    Raises:
        StreamIdleTimeout: when no fragment arrives in time.
    """
    parts = []
    max_idle = 0.0
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stream-reader")
    try:
        while True:
            waited_from = time.monotonic()
            future = executor.submit(next, fragments, _END)
            try:
                item = future.result(timeout=idle_timeout_s)
            except FutureTimeout:
                future.cancel()
                if on_timeout is not None:
                    on_timeout()
                raise StreamIdleTimeout(
                    f"Stream idle timeout: no token received in {int(idle_timeout_s * 1000)}ms"
                ) from None
            max_idle = max(max_idle, time.monotonic() - waited_from)
            if item is _END:
                break
            parts.append(item)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    if max_idle > 0:
        LOG.debug("Stream max idle duration: %dms", max_idle * 1000)
    return "".join(parts)
