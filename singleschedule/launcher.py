"""Process launcher for scheduled tasks.

Starts a task's argv as a detached child (own session on Unix, detached
process group on Windows) with stdout and stderr appended to the task's
log file. ``launch`` returns as soon as the process exists; completion is
picked up later by ``reap`` / ``is_alive`` on the daemon's next tick.
"""

import logging
import os
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from singleschedule.errors import SpawnFailedError
from singleschedule.platform import detached_popen_kwargs, is_process_running

logger = logging.getLogger(__name__)


class ProcessLauncher:
    """Spawns detached children and tracks the ones it started."""

    def __init__(self) -> None:
        self._children: Dict[int, subprocess.Popen] = {}
        self._exit_codes: Dict[int, int] = {}

    def launch(
        self,
        argv: Sequence[str],
        log_path: Optional[Union[str, Path]] = None,
    ) -> int:
        """Start ``argv`` without waiting for it. Returns the child PID.

        Raises:
            SpawnFailedError: the command is missing, not executable, or
                the OS refused to create the process.
        """
        cmd: List[str] = list(argv)
        if not cmd:
            raise SpawnFailedError("empty command")

        log_f = self._open_log(log_path, cmd)
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_f if log_f is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                shell=False,
                env=os.environ.copy(),
                **detached_popen_kwargs(),
            )
        except FileNotFoundError:
            raise SpawnFailedError(f"command not found: {cmd[0]}") from None
        except PermissionError:
            raise SpawnFailedError(f"permission denied: {cmd[0]}") from None
        except OSError as e:
            raise SpawnFailedError(f"{cmd[0]}: {e}") from e
        finally:
            # The child holds its own copy of the descriptor.
            if log_f is not None:
                log_f.close()

        self._children[process.pid] = process
        self._exit_codes.pop(process.pid, None)
        return process.pid

    def _open_log(self, log_path, cmd):
        if log_path is None:
            return None
        try:
            path = Path(log_path)
            path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            log_f = open(path, "a", encoding="utf-8")
            log_f.write(f"\n{'=' * 60}\n")
            log_f.write(f"Started: {datetime.now().isoformat(timespec='seconds')}\n")
            log_f.write(f"Command: {' '.join(cmd)}\n")
            log_f.write(f"{'=' * 60}\n")
            log_f.flush()
            return log_f
        except OSError as e:
            logger.warning(f"Cannot open task log {log_path}, discarding output: {e}")
            return None

    def reap(self) -> Dict[int, int]:
        """Collect finished children. Returns {pid: exit code} for this call."""
        finished: Dict[int, int] = {}
        for pid, process in list(self._children.items()):
            code = process.poll()
            if code is not None:
                del self._children[pid]
                self._exit_codes[pid] = code
                finished[pid] = code
                logger.debug(f"Child {pid} exited with code {code}")
        return finished

    def is_alive(self, pid: int) -> bool:
        """Best-effort liveness probe.

        Children started by this launcher are polled directly so an exited
        (zombie) child reads as dead; any other PID goes to the OS probe.
        """
        if pid in self._exit_codes:
            return False
        process = self._children.get(pid)
        if process is not None:
            code = process.poll()
            if code is None:
                return True
            del self._children[pid]
            self._exit_codes[pid] = code
            return False
        return is_process_running(pid)

    def pop_exit_code(self, pid: int) -> Optional[int]:
        """Exit code of a reaped child, once. None if unknown."""
        return self._exit_codes.pop(pid, None)

    def clear_exit_codes(self) -> None:
        self._exit_codes.clear()

    @property
    def running(self) -> List[int]:
        return list(self._children)


def is_alive(pid: int) -> bool:
    """OS-level liveness probe for a PID this process did not start."""
    return is_process_running(pid)
