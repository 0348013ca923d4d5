"""ActivityWatch I/O: window-switch events for event-based batching."""

import requests
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from awbatch.utils.helpers import to_unix, unix_to_dt
from .batching import WindowSwitch

LOG = logging.getLogger("aw-batch-worker")


def _iso(dt: datetime) -> str:
    """Convert datetime to ISO format for ActivityWatch."""
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def fetch_aw_events(
    buckets: List[str],
    start: datetime,
    end: datetime,
    host: str,
    limit: Optional[int] = None,
    session=None,
) -> Dict[str, List[Dict]]:
    """Fetch events from multiple AW buckets with error handling."""
    http = session or requests
    out = {}
    for bucket_id in buckets:
        url = f"{host}/api/0/buckets/{bucket_id}/events"
        params = {"start": _iso(start), "end": _iso(end)}
        if limit:
            params["limit"] = limit
        try:
            r = http.get(url, params=params, timeout=15)
            r.raise_for_status()
            out[bucket_id] = r.json()
        except (requests.RequestException, ValueError) as e:
            LOG.warning(f"Error fetching events from bucket {bucket_id}: {e}")
            out[bucket_id] = []
    return out


def switches_from_samples(samples: Iterable[Tuple[float, str, str]]) -> List[WindowSwitch]:
    """Collapse time-ordered (ts, app, title) samples into window switches.

    A switch is emitted for the first sample and whenever app or title
    differs from the previous sample.
    """
    out = []
    prev = None
    for ts, app, title in sorted(samples, key=lambda s: s[0]):
        key = (app or "", title or "")
        if key == prev:
            continue
        prev = key
        if key[0]:
            out.append(WindowSwitch(timestamp=ts, to_app=key[0], to_title=key[1]))
    return out


def window_switches_from_events(events: List[Dict]) -> List[WindowSwitch]:
    """Window switches from aw-watcher-window events (``data.app``/``data.title``)."""
    samples = []
    for ev in events:
        ts = to_unix(ev.get("timestamp"))
        if ts is None:
            continue
        d = ev.get("data") or {}
        samples.append((ts, str(d.get("app") or ""), str(d.get("title") or "")))
    return switches_from_samples(samples)


class AWWindowSource:
    """Reads window switches from an ActivityWatch aw-watcher-window bucket."""

    def __init__(self, host: str, bucket_id: str, session=None):
        self.host = host.rstrip("/")
        self.bucket_id = bucket_id
        self.session = session

    def get_switches(self, start_ts: float, end_ts: float, limit: int) -> List[WindowSwitch]:
        raw = fetch_aw_events(
            [self.bucket_id],
            unix_to_dt(start_ts),
            unix_to_dt(end_ts),
            host=self.host,
            limit=limit,
            session=self.session,
        )
        switches = window_switches_from_events(raw.get(self.bucket_id, []))
        return switches[:limit]
