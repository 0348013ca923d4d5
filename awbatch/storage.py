"""Spool-directory storage for the analysis pipeline.

The screenshot watcher drops one JSON record per capture into the spool
directory::

    {"path": "/.../2025-10-10T22-34-15.007+00-00.png",
     "ts": "2025-10-10T22:34:15.007+00:00",
     "sha256": "...", "app": "Code", "title": "main.py - proj - Visual Studio Code"}

Progress (batched screenshots, batch statuses, observations) is kept in a
JSON state file next to the records.
"""

import os
import glob
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from awbatch.analysis.batching import Screenshot, WindowSwitch
from awbatch.analysis.io import switches_from_samples
from awbatch.config import WorkerConfig
from awbatch.utils.helpers import read_json, to_unix, unix_to_dt
from awbatch.utils.state import State

LOG = logging.getLogger("aw-batch-worker")

STATE_FILE = ".batch_state.json"
BATCH_STATUSES = ("pending", "processing", "analyzed", "failed")
INTERRUPTED_ERROR = "Interrupted before analysis completed"


class SpoolRepository:
    def __init__(
        self,
        spool_dir: str,
        config: WorkerConfig,
        state_path: Optional[str] = None,
        window_source=None,
        sink=None,
    ):
        self.spool_dir = spool_dir
        self.config = config
        self.state = State(state_path or os.path.join(spool_dir, STATE_FILE))
        self.window_source = window_source
        self.sink = sink

    def _records(self) -> List[Tuple[str, Dict[str, Any]]]:
        files = sorted(glob.glob(os.path.join(self.spool_dir, "*.json")), key=os.path.getmtime)
        out = []
        for fp in files:
            if os.path.basename(fp).startswith("."):
                continue
            try:
                rec = read_json(fp)
            except (OSError, ValueError) as e:
                LOG.debug("Skip unreadable %s: %r", fp, e)
                continue
            if isinstance(rec, dict):
                out.append((fp, rec))
        return out

    @staticmethod
    def _record_ts(fp: str, rec: Dict[str, Any]) -> float:
        ts = to_unix(rec.get("ts"))
        return os.path.getmtime(fp) if ts is None else ts

    def fetch_unprocessed_screenshots(self, since_ts: float, limit: int) -> List[Screenshot]:
        """Screenshots not yet in a batch, oldest first, at most ``limit``."""
        shots = []
        dirty = False
        for fp, rec in self._records():
            if self.state.seen(rec):
                continue
            path = rec.get("path")
            if not path or not os.path.exists(path):
                # mark to avoid busy-looping dead entries
                self.state.mark(rec, save=False)
                dirty = True
                continue
            ts = self._record_ts(fp, rec)
            if ts < since_ts:
                continue
            shots.append(
                Screenshot(
                    id=self.state.key(rec),
                    captured_at=ts,
                    file_path=path,
                    file_size=os.path.getsize(path),
                    app_name=rec.get("app"),
                    window_title=rec.get("title"),
                )
            )
        if dirty:
            self.state.save()
        shots.sort(key=lambda s: s.captured_at)
        return shots[:limit]

    def get_window_switch_events(self, start_ts: float, end_ts: float, limit: int) -> List[WindowSwitch]:
        if self.window_source is not None:
            return self.window_source.get_switches(start_ts, end_ts, limit)

        samples = []
        for fp, rec in self._records():
            ts = self._record_ts(fp, rec)
            if start_ts <= ts <= end_ts:
                samples.append((ts, str(rec.get("app") or ""), str(rec.get("title") or "")))
        return switches_from_samples(samples)[:limit]

    def get_setting(self, key: str) -> Optional[str]:
        return self.config.get_setting(key)

    def save_batch_with_screenshots(self, start: float, end: float, screenshot_ids: List[str]) -> int:
        return self.state.add_batch(start, end, screenshot_ids)

    def update_batch_status(self, batch_id: int, status: str, error: Optional[str] = None) -> None:
        if status not in BATCH_STATUSES:
            raise ValueError(f"Unknown batch status {status!r}")
        self.state.set_batch_status(batch_id, status, error)

    def fail_interrupted_batches(self) -> List[int]:
        """Mark batches left pending/processing by a previous run as failed.

        Their screenshots are already consumed, so without this they would
        stay in flight forever.
        """
        stale = [int(k) for k, v in self.batches().items() if v.get("status") in ("pending", "processing")]
        for batch_id in stale:
            LOG.warning("Batch #%d was interrupted, marking it failed", batch_id)
            self.state.set_batch_status(batch_id, "failed", INTERRUPTED_ERROR)
        return stale

    def save_observation(
        self,
        batch_id: int,
        start: float,
        end: float,
        text: str,
        model_label: Optional[str] = None,
        context_type: Optional[str] = None,
        entities_json: Optional[str] = None,
    ) -> None:
        obs = {
            "batch_id": batch_id,
            "start": start,
            "end": end,
            "text": text,
            "model": model_label,
            "context_type": context_type,
            "entities": entities_json,
        }
        self.state.add_observation(obs)

        if self.sink is None:
            return
        try:
            self.sink.push(unix_to_dt(start), timedelta(seconds=max(0.0, end - start)), obs)
        except Exception as e:
            LOG.error("Failed to push AW event: %r", e)

    def batches(self, status: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        items = self.state.data["batches"].items()
        return {k: v for k, v in items if status is None or v.get("status") == status}

    def observations(self, batch_id: Optional[int] = None) -> List[Dict[str, Any]]:
        obs = self.state.data["observations"]
        return [o for o in obs if batch_id is None or o.get("batch_id") == batch_id]
