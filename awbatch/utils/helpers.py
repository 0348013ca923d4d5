"""Utility functions for aw-batch-worker."""

import os
import json
import yaml
import hashlib
from typing import Any, Dict, Optional
from datetime import datetime, timezone


def iso_to_dt(s: str) -> datetime:
    """Tolerant ISO8601 parser; supports trailing 'Z' and hyphen-separated time."""
    s = s.strip().replace("Z", "+00:00")

    # Watcher filenames carry times like "2025-10-10T22-34-15.007+00-00"
    if "T" in s:
        date_part, time_part = s.split("T", 1)
        if "+" in time_part:
            time_only, tz_part = time_part.rsplit("+", 1)
            time_only = time_only.replace("-", ":", 2)
            tz_part = tz_part.replace("-", ":", 1)
            s = f"{date_part}T{time_only}+{tz_part}"
        elif "-" in time_part.split(".")[0]:
            time_only = time_part.replace("-", ":", 2)
            s = f"{date_part}T{time_only}"

    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_unix(value: Any) -> Optional[float]:
    """Convert an ISO string, datetime or number to unix seconds.

    Returns None when the value cannot be interpreted as a point in time.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    try:
        return iso_to_dt(str(value)).timestamp()
    except ValueError:
        return None


def unix_to_dt(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def load_yaml_or_json(path: Optional[str]) -> Dict[str, Any]:
    """Load YAML or JSON file."""
    if not path:
        return {}
    with open(path, "r", encoding="utf-8") as f:
        txt = f.read()
    try:
        if path.endswith(".json"):
            return json.loads(txt)
        return yaml.safe_load(txt) or {}
    except (ValueError, yaml.YAMLError) as e:
        raise ValueError(f"Failed to parse config file {path}: {e}") from e


def sha1(s: str) -> str:
    """Calculate SHA1 hash of string."""
    return hashlib.sha1(s.encode("utf-8")).hexdigest()


def read_json(path: str) -> Dict[str, Any]:
    """Read JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def ensure_dir(d: str) -> str:
    """Ensure directory exists."""
    os.makedirs(d, exist_ok=True)
    return d
