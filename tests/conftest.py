"""Pytest configuration for Overseer tests."""

from __future__ import annotations

import logging
import os
import stat
import sys
import textwrap
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
PROJECT_ROOT_STR = str(PROJECT_ROOT)

if PROJECT_ROOT_STR not in sys.path:
    sys.path.insert(0, PROJECT_ROOT_STR)

import overseer.logging as logging_module  # noqa: E402
from overseer.providers.registry import binary_cache  # noqa: E402


@pytest.fixture(autouse=True)
def _detach_overseer_handlers():
    yield
    base = logging.getLogger("overseer")
    for handler in list(base.handlers):
        base.removeHandler(handler)
        handler.close()
    base.setLevel(logging.NOTSET)
    logging_module._CONFIGURED = False
    logging_module._FILE_HANDLER = None


@pytest.fixture(autouse=True)
def _fresh_binary_cache():
    binary_cache.reset()
    yield
    binary_cache.reset()


@pytest.fixture(autouse=True)
def _clear_overseer_env(monkeypatch):
    for name in (
        "OVERSEER_PROVIDER",
        "OVERSEER_CONFIG",
        "OVERSEER_HARD_TIMEOUT",
        "OVERSEER_STALL_TIMEOUT",
        "OVERSEER_LOG_FILE",
        "OVERSEER_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def bin_dir(tmp_path, monkeypatch):
    """Directory placed first on PATH for stub agent CLIs."""

    directory = tmp_path / "bin"
    directory.mkdir()
    monkeypatch.setenv("PATH", f"{directory}{os.pathsep}{os.environ.get('PATH', '')}")
    return directory


@pytest.fixture
def stub_cli(bin_dir):
    """Write an executable Python script named ``name`` into ``bin_dir``."""

    def _write(name: str, body: str) -> Path:
        script = bin_dir / name
        script.write_text(
            f"#!{sys.executable}\n" + textwrap.dedent(body).lstrip("\n"),
            encoding="utf-8",
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _write
