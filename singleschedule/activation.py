"""Selective start/stop of tasks.

Flipping a task's ``active`` flag never restarts the daemon: the running
daemon reloads the store every tick. What the caller still has to do is
returned as a ``DaemonAction``, derived only from whether any task is
active afterwards and whether the daemon is currently running.
"""

import logging
from enum import Enum
from typing import Iterable, List, Optional

from singleschedule.daemon import is_daemon_running, start_daemon_background, stop_daemon
from singleschedule.errors import DaemonError, TaskNotFoundError
from singleschedule.store import Task, TaskStore, get_store

logger = logging.getLogger(__name__)


class DaemonAction(str, Enum):
    """What the caller must do to the daemon after an activation change."""

    START_DAEMON = "start_daemon"
    STOP_DAEMON = "stop_daemon"
    NO_ACTION = "no_action"


def decide_daemon_action(any_active: bool, daemon_running: bool) -> DaemonAction:
    if any_active and not daemon_running:
        return DaemonAction.START_DAEMON
    if not any_active and daemon_running:
        return DaemonAction.STOP_DAEMON
    return DaemonAction.NO_ACTION


def _apply_active(
    store: TaskStore, slugs: Optional[Iterable[str]], active: bool
) -> List[Task]:
    wanted = None if slugs is None else set(slugs)

    def _flip(tasks: List[Task]) -> List[Task]:
        if wanted is not None:
            missing = wanted - {t.slug for t in tasks}
            if missing:
                raise TaskNotFoundError(missing)
        for task in tasks:
            if wanted is None or task.slug in wanted:
                task.active = active
        return tasks

    return store.update(_flip)


def set_active(
    slugs: Iterable[str],
    active: bool,
    store: Optional[TaskStore] = None,
    daemon_running: Optional[bool] = None,
) -> DaemonAction:
    """Set ``active`` on the named tasks, all or nothing.

    Raises TaskNotFoundError naming every unknown slug; in that case no
    task is modified. ``daemon_running`` overrides the live daemon probe.
    """
    if isinstance(slugs, str):
        raise TypeError(f"slugs must be a collection of slugs, not a string: {slugs!r}")
    slugs = list(slugs)
    tasks = _apply_active(store or get_store(), slugs, active)
    state = "active" if active else "inactive"
    logger.info(f"Marked {len(set(slugs))} task(s) {state}: {', '.join(sorted(set(slugs)))}")
    return _resulting_action(tasks, daemon_running)


def set_all_active(
    active: bool,
    store: Optional[TaskStore] = None,
    daemon_running: Optional[bool] = None,
) -> DaemonAction:
    """Set ``active`` on every stored task."""
    tasks = _apply_active(store or get_store(), None, active)
    logger.info(f"Marked all {len(tasks)} task(s) {'active' if active else 'inactive'}")
    return _resulting_action(tasks, daemon_running)


def _resulting_action(tasks: List[Task], daemon_running: Optional[bool]) -> DaemonAction:
    if daemon_running is None:
        daemon_running = is_daemon_running()
    return decide_daemon_action(any(t.active for t in tasks), daemon_running)


def apply_daemon_action(action: DaemonAction) -> None:
    """Carry out ``action``, raising DaemonError if the daemon does not follow."""
    if action is DaemonAction.START_DAEMON:
        if not start_daemon_background():
            raise DaemonError("Daemon did not come up in time")
    if action is DaemonAction.STOP_DAEMON:
        if not stop_daemon() and is_daemon_running():
            raise DaemonError("Daemon did not stop in time")
