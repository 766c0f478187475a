"""CLI test fixtures."""

from __future__ import annotations

import os

import pytest

from clusterdeck.cli import utils


@pytest.fixture(autouse=True)
def _quiet_cli(monkeypatch):
    """Keep structlog off CliRunner's temporary streams and stop Rich wrapping paths."""
    monkeypatch.setattr(utils, "configure_logging", lambda **_: None)
    monkeypatch.setattr(utils.console, "width", 400)
    monkeypatch.setattr(utils.err_console, "width", 400)
    for name in list(os.environ):
        if name.startswith("CLUSTERDECK_"):
            monkeypatch.delenv(name)
