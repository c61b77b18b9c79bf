"""Unix/macOS platform support."""

import errno
import fcntl
import os
import signal


def is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except (ProcessLookupError, PermissionError):
        return False


def terminate_process(pid: int) -> bool:
    """Send SIGTERM to a process by PID."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, signal.SIGTERM)
        return True
    except (ProcessLookupError, PermissionError):
        return False


def try_lock(fd: int) -> bool:
    """Take an exclusive advisory lock without blocking. False if held elsewhere."""
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        return True
    except OSError as e:
        if e.errno in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
            return False
        raise


def unlock(fd: int) -> None:
    fcntl.flock(fd, fcntl.LOCK_UN)


def detached_popen_kwargs() -> dict:
    """Popen options that put the child in its own session."""
    return {"start_new_session": True, "close_fds": True}
