"""Utility modules for aw-batch-worker."""

from .helpers import (
    iso_to_dt,
    to_unix,
    unix_to_dt,
    load_yaml_or_json,
    sha1,
    read_json,
    ensure_dir,
)
from .state import State, write_json_atomic

__all__ = [
    "iso_to_dt",
    "to_unix",
    "unix_to_dt",
    "load_yaml_or_json",
    "sha1",
    "read_json",
    "ensure_dir",
    "State",
    "write_json_atomic",
]
