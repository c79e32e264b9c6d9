"""
Pytest configuration and shared fixtures for WakeLab tests.

This module provides fakes for everything that touches the host
(subprocesses, the package manager, tmux, network probes) and a factory
for RunContext values rooted in a temporary directory.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from wakelab.config import RunContext, ServiceEndpoint
from wakelab.environment.probe import OWW_SERVICE, PIPER_SERVICE, ServiceReport, ServiceStatus
from wakelab.errors import SessionExistsError
from wakelab.schemas import RunRequest
from wakelab.training.supervisor import SessionHandle

FIXED_NOW = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


class FakeRunner:
    """Records commands and answers them with scripted exit codes.

    Rules are (tokens, codes) pairs: the first rule whose tokens all appear
    in the command decides the exit code. A list of codes is consumed one
    per call, the last one repeating.
    """

    def __init__(self, rules: Optional[list[tuple[tuple[str, ...], Any]]] = None, default: int = 0):
        self.rules = [(tokens, list(codes) if isinstance(codes, list) else [codes])
                      for tokens, codes in (rules or [])]
        self.default = default
        self.calls: list[list[str]] = []

    def __call__(self, cmd, cwd=None, capture=False, env=None):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        for tokens, codes in self.rules:
            if all(token in cmd for token in tokens):
                code = codes.pop(0) if len(codes) > 1 else codes[0]
                return code, "", ""
        return self.default, "", ""

    def matching(self, *tokens: str) -> list[list[str]]:
        return [cmd for cmd in self.calls if all(t in cmd for t in tokens)]


class FakeBackend:
    """In-memory package backend."""

    def __init__(self, installed=(), available=None, install_ok: bool = True):
        self.installed = set(installed)
        self.available = available
        self.install_ok = install_ok
        self.refreshes = 0
        self.installs: list[list[str]] = []

    def is_installed(self, package: str) -> bool:
        return package in self.installed

    def is_available(self, package: str) -> bool:
        return self.available is None or package in self.available

    def refresh_index(self) -> None:
        self.refreshes += 1

    def install(self, packages: list[str]) -> bool:
        self.installs.append(list(packages))
        if self.install_ok:
            self.installed.update(packages)
        return self.install_ok


class FakeSessions:
    """Session manager that keeps sessions in a set."""

    def __init__(self, existing=()):
        self.sessions = set(existing)
        self.launched: list[SessionHandle] = []

    def exists(self, name: str) -> bool:
        return name in self.sessions

    def launch(self, name: str, command: str) -> SessionHandle:
        if name in self.sessions:
            raise SessionExistsError(name)
        self.sessions.add(name)
        handle = SessionHandle(name=name, command=command)
        self.launched.append(handle)
        return handle


def make_report(piper: bool = False, oww: bool = False) -> ServiceReport:
    """Build a probe report without touching the network."""
    return ServiceReport(
        services={
            PIPER_SERVICE: ServiceStatus(
                PIPER_SERVICE, ServiceEndpoint("127.0.0.1", 10200), remote=piper, local=False
            ),
            OWW_SERVICE: ServiceStatus(
                OWW_SERVICE, ServiceEndpoint("127.0.0.1", 10400), remote=False, local=oww
            ),
        }
    )


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fake_sessions() -> FakeSessions:
    return FakeSessions()


@pytest.fixture
def make_context(tmp_path: Path) -> Callable[..., RunContext]:
    """Factory for RunContext values rooted in tmp_path.

    Returns:
        A callable accepting RunRequest field overrides.
    """

    def _make(now: datetime = FIXED_NOW, environ=None, **overrides) -> RunContext:
        values = {
            "base_dir": str(tmp_path / "lab"),
            "wake_phrase": "Hey Jarvis",
            "train_profile": "tiny",
            "train_threads": 2,
            "min_free_disk_gb": 0,
        }
        values.update(overrides)
        return RunRequest(**values).to_context(now=now, environ=environ or {})

    return _make


@pytest.fixture
def context(make_context) -> RunContext:
    return make_context()


@pytest.fixture(autouse=True)
def restore_wakelab_logger():
    """Undo handler changes made by setup_logging calls."""
    logger = logging.getLogger("wakelab")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate
