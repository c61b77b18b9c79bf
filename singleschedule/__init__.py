"""singleschedule - a single-node cron-style task scheduler.

Components:
    - cron: six-field expression parser and matcher
    - store: task definitions and the locked JSON task store
    - launcher: detached process launching and liveness probes
    - daemon: the tick loop and daemon process management
    - activation: selective task start/stop and daemon actions
"""

import importlib.metadata

try:
    __version__ = importlib.metadata.version("singleschedule")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0-dev"

from singleschedule.activation import DaemonAction, set_active, set_all_active
from singleschedule.daemon import is_daemon_running, run_daemon_loop
from singleschedule.store import Task, TaskStore, add_task, list_tasks, remove_task

__all__ = [
    "DaemonAction",
    "Task",
    "TaskStore",
    "add_task",
    "remove_task",
    "list_tasks",
    "set_active",
    "set_all_active",
    "is_daemon_running",
    "run_daemon_loop",
]
