"""Persistent worker state: processed screenshots, batches and observations."""

import os
import uuid
import json
import logging
from typing import Any, Dict, List, Optional
from .helpers import ensure_dir, read_json

LOG = logging.getLogger("aw-batch-worker")


def write_json_atomic(path: str, obj: Any) -> None:
    """Write JSON atomically to avoid corruption."""
    tmp = f"{path}.tmp.{uuid.uuid4().hex}"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, separators=(",", ":"))
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def _empty() -> Dict[str, Any]:
    return {
        "seen": {},  # screenshot key -> ts, dead or already batched records
        "batches": {},  # batch id -> {start, end, screenshot_ids, status, error}
        "observations": [],
        "next_batch_id": 1,
    }


class State:
    """Tracks screenshots, batches and observations across runs."""

    def __init__(self, path: str):
        self.path = path
        self.data = _empty()
        if os.path.exists(path):
            try:
                loaded = read_json(path)
            except (OSError, ValueError) as e:
                LOG.warning("Ignoring unreadable state file %s: %r", path, e)
            else:
                self.data.update(loaded)

    def key(self, rec: Dict[str, Any]) -> str:
        """Unique key of one capture: its image path plus capture time.

        Not the content hash: identical frames captured at different times
        are separate screenshots.
        """
        key = "path:" + rec.get("path", "")
        ts = rec.get("ts")
        return key if ts is None else f"{key}@{ts}"

    def seen(self, rec: Dict[str, Any]) -> bool:
        return self.key(rec) in self.data["seen"]

    def mark(self, rec: Dict[str, Any], save: bool = True):
        """Mark record as consumed."""
        self.data["seen"][self.key(rec)] = rec.get("ts")
        if save:
            self.save()

    def add_batch(self, start: float, end: float, screenshot_ids: List[str]) -> int:
        batch_id = int(self.data["next_batch_id"])
        self.data["next_batch_id"] = batch_id + 1
        self.data["batches"][str(batch_id)] = {
            "start": start,
            "end": end,
            "screenshot_ids": list(screenshot_ids),
            "status": "pending",
            "error": None,
        }
        for sid in screenshot_ids:
            self.data["seen"][sid] = start
        self.save()
        return batch_id

    def batch(self, batch_id: int) -> Optional[Dict[str, Any]]:
        return self.data["batches"].get(str(batch_id))

    def set_batch_status(self, batch_id: int, status: str, error: Optional[str] = None):
        b = self.batch(batch_id)
        if b is None:
            raise KeyError(f"Unknown batch {batch_id}")
        b["status"] = status
        b["error"] = error
        self.save()

    def add_observation(self, obs: Dict[str, Any]):
        self.data["observations"].append(obs)
        self.save()

    def save(self):
        ensure_dir(os.path.dirname(self.path) or ".")
        write_json_atomic(self.path, self.data)
