"""Scheduler daemon for singleschedule.

Runs as a background process. Every tick it reloads the task store, clears
PIDs of children that have exited, fires each active task whose cron
expression matches the tick's instant, and writes the bookkeeping back.

The daemon advertises itself through two files in the state directory:
``daemon.pid`` holds its PID and ``daemon.lock`` is exclusively locked for
the lifetime of the process. A PID file whose process is gone, or whose
lock is free, is stale and reads as "not running".
"""

import atexit
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from singleschedule import cron
from singleschedule.errors import (
    DaemonAlreadyRunningError,
    DaemonError,
    SpawnFailedError,
    StoreCorruptError,
    StoreIOError,
)
from singleschedule.launcher import ProcessLauncher
from singleschedule.platform import (
    detached_popen_kwargs,
    is_process_running,
    terminate_process,
    try_lock,
    unlock,
)
from singleschedule.settings import Settings, get_settings
from singleschedule.store import Task, TaskStore, now

logger = logging.getLogger(__name__)

# Wake a little after the boundary so the clock has certainly rolled over.
_BOUNDARY_SLACK = 0.005

# Status probes and daemon startup poll a busy lock at this interval.
_LOCK_POLL_INTERVAL = 0.02
# A held lock without a live PID in the PID file is rechecked for this long.
_PROBE_GRACE = 0.5


class Scheduler:
    """The daemon's tick loop.

    ``tick`` is safe to call directly (tests drive it with fixed instants);
    ``run`` repeats it on wall-clock boundaries until ``request_stop``.
    """

    def __init__(
        self,
        store: Optional[TaskStore] = None,
        launcher: Optional[ProcessLauncher] = None,
        clock: Callable[[], datetime] = now,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or TaskStore()
        self.launcher = launcher or ProcessLauncher()
        self.clock = clock
        self.tick_interval = self.settings.tick_interval
        self.failures: Counter = Counter()
        self._last_tick: Optional[datetime] = None
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def reconcile_startup(self) -> int:
        """Clear every stored PID. Returns how many were cleared.

        A PID recorded by a previous daemon cannot be trusted to still
        belong to that launch.
        """
        cleared: List[str] = []

        def _clear(tasks: List[Task]) -> List[Task]:
            for task in tasks:
                if task.pid is not None:
                    cleared.append(task.slug)
                    task.pid = None
            return tasks

        self.store.update(_clear)
        for slug in cleared:
            logger.info(f"Cleared stale PID of task '{slug}' from a previous daemon")
        return len(cleared)

    def run(self) -> None:
        """Tick until stopped. StoreCorruptError stops the loop and propagates."""
        logger.info(f"Starting scheduler (PID: {os.getpid()})")
        logger.info(f"Tick interval: {self.tick_interval}s")

        try:
            self.reconcile_startup()
        except StoreIOError as e:
            logger.error(f"Could not reconcile stored PIDs: {e}")

        while not self._stop.is_set():
            try:
                self.tick()
            except StoreCorruptError:
                logger.critical("Task store is corrupt, stopping scheduler")
                raise
            except Exception:
                logger.exception("Unexpected error during tick")
            self._stop.wait(self._seconds_to_next_tick())

        self.launcher.reap()
        logger.info("Scheduler stopped")

    def _seconds_to_next_tick(self) -> float:
        interval = self.tick_interval
        return interval - (time.time() % interval) + _BOUNDARY_SLACK

    # ------------------------------------------------------------------
    # One tick
    # ------------------------------------------------------------------

    def tick(self, instant: Optional[datetime] = None) -> List[str]:
        """Evaluate every task against one instant. Returns the fired slugs.

        An instant at or before the previous tick's is ignored, so waking
        twice within the same second never fires a task twice.
        """
        instant = (instant or self.clock()).replace(microsecond=0)
        if self._last_tick is not None and instant <= self._last_tick:
            logger.debug(f"Tick {instant.isoformat()} already evaluated, skipping")
            return []

        try:
            tasks = self.store.load()
        except StoreIOError as e:
            logger.error(f"Failed to load tasks, skipping tick: {e}")
            return []
        self._last_tick = instant

        self.launcher.reap()
        changes: Dict[str, Tuple[datetime, Dict[str, Any]]] = {}
        fired: List[str] = []

        for task in tasks:
            change = self._evaluate(task, instant)
            if change:
                changes[task.slug] = (task.created_at, change)
                if "last_run" in change:
                    fired.append(task.slug)

        self.launcher.clear_exit_codes()
        if changes:
            self._persist(changes)
        return fired

    def _evaluate(self, task: Task, instant: datetime) -> Dict[str, Any]:
        change: Dict[str, Any] = {}

        if task.pid is not None and not self.launcher.is_alive(task.pid):
            logger.info(f"Task '{task.slug}' process {task.pid} is no longer running")
            exit_code = self.launcher.pop_exit_code(task.pid)
            if exit_code is not None:
                change["last_exit_code"] = exit_code
            change["pid"] = None

        if not task.active:
            return change
        if task.last_run is not None and task.last_run >= instant:
            return change
        if not cron.parse(task.cron_expression).matches(instant):
            return change

        try:
            pid = self.launcher.launch(
                task.argv, self.settings.task_log_file(task.slug)
            )
        except SpawnFailedError as e:
            self.failures[task.slug] += 1
            logger.error(
                f"Task '{task.slug}' failed to launch "
                f"({self.failures[task.slug]} failures): {e.reason}"
            )
            return change

        logger.info(f"Fired task '{task.slug}' (PID {pid})")
        change.update(pid=pid, last_run=instant, last_exit_code=None)
        return change

    def _persist(self, changes: Dict[str, Tuple[datetime, Dict[str, Any]]]) -> None:
        def _apply(tasks: List[Task]) -> List[Task]:
            for task in tasks:
                entry = changes.get(task.slug)
                # Skip tasks removed and re-added since this tick loaded them.
                if entry is None or entry[0] != task.created_at:
                    continue
                for key, value in entry[1].items():
                    setattr(task, key, value)
            return tasks

        try:
            self.store.update(_apply)
        except StoreIOError as e:
            logger.error(f"Failed to save tick results: {e}")


# =============================================================================
# Daemon process management
# =============================================================================


def _daemon_lock_file(settings: Settings):
    return settings.home / "daemon.lock"


def _read_pid_file(settings: Settings) -> Optional[int]:
    try:
        with open(settings.pid_file, "r") as f:
            return int(f.read().strip())
    except (ValueError, OSError):
        return None


def _probe_daemon(settings: Settings) -> Tuple[bool, Optional[int]]:
    """Return ``(running, pid)`` as told by the daemon lock.

    The PID file is only ever removed while this probe holds the lock, so
    a daemon that takes the lock and writes its PID file cannot lose it.
    A held lock means a daemon is running even if its PID file is missing
    or not yet written. Other probes hold the lock only for an instant, so
    a held lock is polled until the recorded PID is alive or the grace
    period runs out.
    """
    if not settings.home.exists():
        return False, None
    try:
        fd = os.open(str(_daemon_lock_file(settings)), os.O_RDWR | os.O_CREAT, 0o600)
    except OSError as e:
        logger.debug(f"Cannot open daemon lock: {e}")
        pid = _read_pid_file(settings)
        return pid is not None and is_process_running(pid), pid

    try:
        deadline = time.monotonic() + _PROBE_GRACE
        while True:
            if try_lock(fd):
                try:
                    if settings.pid_file.exists():
                        logger.debug("Removing stale daemon PID file")
                        remove_pid_file(settings)
                finally:
                    unlock(fd)
                return False, None

            pid = _read_pid_file(settings)
            if pid is not None and is_process_running(pid):
                return True, pid
            if time.monotonic() >= deadline:
                return True, pid
            time.sleep(_LOCK_POLL_INTERVAL)
    finally:
        os.close(fd)


def write_pid_file(settings: Optional[Settings] = None) -> None:
    """Write the current PID to the PID file."""
    settings = settings or get_settings()
    settings.home.mkdir(parents=True, exist_ok=True, mode=0o700)
    with open(settings.pid_file, "w") as f:
        f.write(str(os.getpid()))


def remove_pid_file(settings: Optional[Settings] = None) -> None:
    """Remove the PID file."""
    settings = settings or get_settings()
    try:
        if settings.pid_file.exists():
            os.remove(settings.pid_file)
    except OSError as e:
        logger.debug(f"Could not remove PID file: {e}")


def get_daemon_pid(settings: Optional[Settings] = None) -> Optional[int]:
    """Get the PID of the running daemon, or None if not running.

    A PID file left behind by a dead daemon is removed. A running daemon
    whose PID file is missing also yields None; use ``is_daemon_running``
    to ask whether a daemon holds the lock.
    """
    running, pid = _probe_daemon(settings or get_settings())
    return pid if running else None


def is_daemon_running(settings: Optional[Settings] = None) -> bool:
    return _probe_daemon(settings or get_settings())[0]


class _DaemonHandle:
    """Holds the daemon lock and PID file for the life of the process."""

    def __init__(self, settings: Settings, acquire_timeout: float = 1.0):
        self.settings = settings
        self.acquire_timeout = acquire_timeout
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        try:
            self.settings.ensure_directories()
            fd = os.open(
                str(_daemon_lock_file(self.settings)), os.O_RDWR | os.O_CREAT, 0o600
            )
        except OSError as e:
            raise DaemonError(f"Cannot open daemon lock: {e}") from e

        # Status probes take the lock briefly; wait them out.
        deadline = time.monotonic() + self.acquire_timeout
        while not try_lock(fd):
            if time.monotonic() >= deadline:
                os.close(fd)
                raise DaemonAlreadyRunningError(_read_pid_file(self.settings))
            time.sleep(_LOCK_POLL_INTERVAL)
        self._fd = fd
        write_pid_file(self.settings)

    def release(self) -> None:
        if self._fd is None:
            return
        remove_pid_file(self.settings)
        try:
            unlock(self._fd)
        finally:
            os.close(self._fd)
            self._fd = None


def run_daemon_loop(scheduler: Optional[Scheduler] = None) -> None:
    """Run the scheduler in this process until SIGTERM/SIGINT.

    Raises DaemonAlreadyRunningError if another daemon holds the lock.
    """
    scheduler = scheduler or Scheduler()
    handle = _DaemonHandle(scheduler.settings)
    handle.acquire()
    atexit.register(handle.release)

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        scheduler.request_stop()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        scheduler.run()
    finally:
        handle.release()


def start_daemon_background(settings: Optional[Settings] = None) -> bool:
    """Start the scheduler daemon as a detached background process.

    The daemon runs from the state directory, so relative paths in task
    commands do not depend on where the CLI was invoked.

    Returns:
        True if the daemon is running when this returns.
    """
    settings = settings or get_settings()
    if is_daemon_running(settings):
        return True

    settings.ensure_directories()
    cmd = [sys.executable, "-m", "singleschedule", "daemon"]
    try:
        subprocess.Popen(
            cmd,
            cwd=str(settings.home),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            **detached_popen_kwargs(),
        )
    except OSError as e:
        raise DaemonError(f"Failed to start daemon: {e}") from e

    deadline = time.monotonic() + settings.stop_timeout
    while time.monotonic() < deadline:
        if get_daemon_pid(settings):
            return True
        time.sleep(0.1)
    return False


def stop_daemon(settings: Optional[Settings] = None) -> bool:
    """Ask the running daemon to shut down. Returns True once it has exited.

    Children already launched by the daemon keep running.
    """
    settings = settings or get_settings()
    running, pid = _probe_daemon(settings)
    if not running:
        return False
    if pid is None:
        raise DaemonError("Daemon holds its lock but its PID is unknown")

    if not terminate_process(pid):
        raise DaemonError(f"Failed to signal daemon (PID {pid})")

    deadline = time.monotonic() + settings.stop_timeout
    while time.monotonic() < deadline:
        if not is_daemon_running(settings):
            return True
        time.sleep(0.1)
    return False


def restart_daemon(settings: Optional[Settings] = None) -> bool:
    settings = settings or get_settings()
    if is_daemon_running(settings) and not stop_daemon(settings):
        raise DaemonError("Daemon did not stop in time")
    return start_daemon_background(settings)
