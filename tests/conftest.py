"""Pytest configuration helpers."""

import sys
from pathlib import Path

import pytest


def _ensure_repo_on_path() -> None:
    """Allow tests to import repo modules without installing the package."""
    repo_root = Path(__file__).resolve().parents[1]
    path_str = str(repo_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


_ensure_repo_on_path()

from awbatch.analysis import context  # noqa: E402


@pytest.fixture(autouse=True)
def _default_context_rules():
    """Custom context rules are module state; restore the defaults per test."""
    context.set_context_rules([])
    yield
    context.set_context_rules([])
