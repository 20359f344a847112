"""Shared pytest fixtures."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator

import pytest


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep user configuration and home-directory output out of the tests."""

    for name in list(os.environ):
        if name.startswith("PROMPTRELAY_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PROMPTRELAY_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("PROMPTRELAY_TELEMETRY_DIR", str(tmp_path / "telemetry"))


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in [handler for handler in root.handlers if handler not in handlers]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)
