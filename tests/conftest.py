"""Shared fixtures and fakes for the backup-to-server tests."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

import backup_to_server as bts  # noqa: E402


class FakeShell:
    """Stands in for HostShell; answers the sleep-lock protocol and records scripts."""

    def __init__(self, token="lock-42", confirm_lock=True, release_works=True):
        self.token = token
        self.confirm_lock = confirm_lock
        self.release_works = release_works
        self.lock_state = "inactive"
        self.failures = {}
        self.scripts = []

    def run(self, script):
        self.scripts.append(script)
        for marker, result in self.failures.items():
            if marker in script:
                return result
        if script.startswith("sleep-lock enable"):
            if self.confirm_lock:
                self.lock_state = "active"
            return f"{self.token}\n", 0
        if script.startswith("sleep-lock release"):
            if self.release_works:
                self.lock_state = "inactive"
            return "", 0
        if script.startswith("sleep-lock check"):
            return f"{self.lock_state}\n", 0
        if "KEPT" in script:
            return "DELETED 2024-12-01\nKEPT 5\n", 0
        return "", 0

    @property
    def releases(self):
        return [s for s in self.scripts if s.startswith("sleep-lock release")]


class FakeNotifier:
    def __init__(self):
        self.calls = []

    def notify(self, title, body, urgency="normal"):
        self.calls.append((title, body, urgency))

    @property
    def titles(self):
        return [title for title, _, _ in self.calls]

    @property
    def failures(self):
        return [call for call in self.calls if call[0] == "Error during backup:"]


class FakeProber:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    def ensure_reachable(self):
        self.calls += 1
        if self.error is not None:
            raise self.error


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    logger = logging.getLogger(bts.PROG_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def all_binaries(monkeypatch):
    monkeypatch.setattr(bts, "which", lambda name: f"/usr/bin/{name}")


@pytest.fixture
def source_dir(tmp_path):
    source = tmp_path / "src"
    source.mkdir()
    (source / "notes.txt").write_text("hello", encoding="utf-8")
    return source


@pytest.fixture
def make_config(source_dir):
    def factory(**overrides):
        values = dict(
            source_path=source_dir,
            destination=bts.Destination("joe", "server", "backup/joe"),
            snapshot_name_fn=lambda: "2025-01-15",
            multiplex=False,
        )
        values.update(overrides)
        return bts.Config(**values)

    return factory


@pytest.fixture
def settings(source_dir, tmp_path):
    def factory(**overrides):
        values = dict(bts.DEFAULTS)
        values.update(SOURCE=str(source_dir), DEST=str(tmp_path / "dst"), DRY_RUN=False)
        values.update(overrides)
        return values

    return factory
