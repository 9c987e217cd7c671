"""Shared fixtures for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest


@pytest.fixture
def root(tmp_path: Path) -> Path:
    """Return a symlink-free temporary directory.

    Paths rendered into the wrapper and grant must be canonical, and some
    platforms place ``tmp_path`` behind a symlink.
    """
    return tmp_path.resolve()


@pytest.fixture
def make_stub(root: Path) -> Callable[..., Path]:
    """Return a factory creating executable ``/bin/sh`` stubs under ``<root>/bin``."""
    bin_dir = root / "bin"

    def _make(name: str, body: str = "exit 0\n") -> Path:
        bin_dir.mkdir(parents=True, exist_ok=True)
        path = bin_dir / name
        path.write_text(f"#!/bin/sh\n{body}", encoding="utf-8")
        os.chmod(path, 0o755)
        return path

    return _make
