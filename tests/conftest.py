"""Pytest configuration and fixtures for singleschedule tests.

Every test gets its own state directory through SINGLESCHEDULE_HOME so
nothing touches the user's real task store or daemon PID file.
"""

from typing import Dict, List, Optional, Set

import pytest

from singleschedule.errors import SpawnFailedError
from singleschedule.settings import clear_settings_cache
from singleschedule.store import TaskStore


@pytest.fixture(autouse=True)
def isolate_home(tmp_path_factory, monkeypatch):
    """Point the settings at a fresh temporary home for each test."""
    home = tmp_path_factory.mktemp("singleschedule_home")
    monkeypatch.setenv("SINGLESCHEDULE_HOME", str(home))
    for var in (
        "SINGLESCHEDULE_TICK_INTERVAL",
        "SINGLESCHEDULE_STOP_TIMEOUT",
        "SINGLESCHEDULE_LOCK_TIMEOUT",
        "SINGLESCHEDULE_USE_UTC",
        "SINGLESCHEDULE_LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)
    clear_settings_cache()
    yield home
    clear_settings_cache()


@pytest.fixture
def store(isolate_home):
    return TaskStore()


class FakeLauncher:
    """Stands in for ProcessLauncher: records launches, never spawns."""

    def __init__(self):
        self.launches: List[List[str]] = []
        self.calls: List[tuple] = []
        self.alive: Set[int] = set()
        self.exit_codes: Dict[int, int] = {}
        self.fail: Set[str] = set()
        self.on_launch = None
        self._next_pid = 1000

    def launch(self, argv, log_path=None) -> int:
        self.calls.append(("launch", argv[0]))
        if argv[0] in self.fail:
            raise SpawnFailedError(f"command not found: {argv[0]}")
        if self.on_launch is not None:
            self.on_launch(argv)
        self._next_pid += 1
        self.launches.append(list(argv))
        self.alive.add(self._next_pid)
        return self._next_pid

    def is_alive(self, pid: int) -> bool:
        self.calls.append(("is_alive", pid))
        return pid in self.alive

    def pop_exit_code(self, pid: int) -> Optional[int]:
        return self.exit_codes.pop(pid, None)

    def reap(self):
        return {}

    def clear_exit_codes(self) -> None:
        self.exit_codes.clear()


@pytest.fixture
def fake_launcher():
    return FakeLauncher()
