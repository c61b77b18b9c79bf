"""Task definitions and the durable, cross-process task store.

The store is a single JSON file holding a list of task records in
insertion order. The daemon and every CLI invocation are separate
processes sharing that file, so every read-modify-write goes through
``TaskStore.update`` which holds an exclusive advisory lock on a sibling
``.lock`` file for the duration of load, mutate and save.

Saves are atomic: the new content is written to a temporary file in the
same directory and moved over the old one, so readers that skip the lock
(``load``) never observe a half-written file.
"""

import copy
import json
import logging
import os
import re
import tempfile
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Union

from singleschedule import cron
from singleschedule.errors import (
    CronParseError,
    DuplicateSlugError,
    InvalidTaskError,
    StoreCorruptError,
    StoreIOError,
    TaskNotFoundError,
)
from singleschedule.platform import try_lock, unlock
from singleschedule.settings import get_settings

logger = logging.getLogger(__name__)

SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

_LOCK_POLL_INTERVAL = 0.05


def now() -> datetime:
    """Current wall-clock time as an aware datetime, truncated to the second."""
    if get_settings().use_utc:
        current = datetime.now(timezone.utc)
    else:
        current = datetime.now().astimezone()
    return current.replace(microsecond=0)


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str], name: str) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{name} must be an ISO timestamp string")
    return datetime.fromisoformat(value)


@dataclass
class Task:
    """A named, persisted unit of scheduled work."""

    slug: str
    cron_expression: str
    command: str
    args: List[str] = field(default_factory=list)
    active: bool = True
    pid: Optional[int] = None
    created_at: datetime = field(default_factory=now)
    last_run: Optional[datetime] = None
    last_exit_code: Optional[int] = None

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]

    @property
    def command_line(self) -> str:
        return " ".join(self.argv)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = _format_ts(self.created_at)
        data["last_run"] = _format_ts(self.last_run)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        """Build a task from a stored record.

        Raises StoreCorruptError for records that could never have been
        written by ``TaskStore`` (missing fields, wrong types, bad cron).
        """
        if not isinstance(data, dict):
            raise StoreCorruptError(f"Task record is not an object: {data!r}")
        try:
            known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
            for key in ("slug", "cron_expression", "command"):
                if not isinstance(known.get(key), str):
                    raise ValueError(f"field '{key}' missing or not a string")
            args = known.get("args", [])
            if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
                raise ValueError("field 'args' must be a list of strings")
            pid = known.get("pid")
            if pid is not None and (isinstance(pid, bool) or not isinstance(pid, int)):
                raise ValueError("field 'pid' must be an integer or null")
            known["active"] = bool(known.get("active", True))
            known["created_at"] = _parse_ts(known.get("created_at"), "created_at") or now()
            known["last_run"] = _parse_ts(known.get("last_run"), "last_run")
            cron.parse(known["cron_expression"])
            return cls(**known)
        except (TypeError, ValueError, CronParseError) as e:
            slug = data.get("slug", "?")
            raise StoreCorruptError(f"Invalid task record '{slug}': {e}") from e


def _check_unique(tasks: Sequence[Task]) -> None:
    seen = set()
    for task in tasks:
        if task.slug in seen:
            raise DuplicateSlugError(task.slug)
        seen.add(task.slug)


class TaskStore:
    """JSON-file task store guarded by an advisory cross-process lock."""

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        lock_path: Optional[Union[str, Path]] = None,
        lock_timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.path = Path(path) if path is not None else settings.tasks_file
        if lock_path is not None:
            self.lock_path = Path(lock_path)
        elif path is None:
            self.lock_path = settings.lock_file
        else:
            self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = (
            lock_timeout if lock_timeout is not None else settings.lock_timeout
        )

    # ------------------------------------------------------------------
    # Raw persistence
    # ------------------------------------------------------------------

    def load(self) -> List[Task]:
        """Read every task. A missing file is an empty store."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                content = f.read()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StoreIOError(f"Failed to read {self.path}: {e}") from e

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StoreCorruptError(f"{self.path} is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise StoreCorruptError(f"{self.path} does not contain a task list")

        tasks = [Task.from_dict(record) for record in data]
        try:
            _check_unique(tasks)
        except DuplicateSlugError as e:
            raise StoreCorruptError(f"{self.path} holds duplicate slug '{e.slug}'") from e
        return tasks

    def save(self, tasks: Sequence[Task]) -> None:
        """Atomically replace the store content with ``tasks``."""
        _check_unique(tasks)
        payload = json.dumps([t.to_dict() for t in tasks], indent=2) + "\n"
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise StoreIOError(f"Failed to write {self.path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.debug(f"Could not remove temp file {tmp_name}")

    # ------------------------------------------------------------------
    # Locked read-modify-write
    # ------------------------------------------------------------------

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the exclusive store lock for the body of the with-block."""
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise StoreIOError(f"Failed to open lock file {self.lock_path}: {e}") from e

        try:
            deadline = (
                time.monotonic() + self.lock_timeout
                if self.lock_timeout is not None
                else None
            )
            while not try_lock(fd):
                if deadline is not None and time.monotonic() >= deadline:
                    raise StoreIOError(
                        f"Timed out after {self.lock_timeout}s waiting for {self.lock_path}"
                    )
                time.sleep(_LOCK_POLL_INTERVAL)
            try:
                yield
            finally:
                unlock(fd)
        finally:
            os.close(fd)

    def update(self, fn: Callable[[List[Task]], List[Task]]) -> List[Task]:
        """Load, transform and save under one exclusive critical section.

        ``fn`` receives a private copy of the current tasks and returns the
        new list. If it raises, nothing is written. Returns the saved list.
        """
        with self.locked():
            current = self.load()
            updated = fn(copy.deepcopy(current))
            self.save(updated)
            return updated

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def add(self, task: Task) -> Task:
        """Persist a new task. Validation happens before the lock is taken."""
        validate_task(task)

        def _add(tasks: List[Task]) -> List[Task]:
            if any(t.slug == task.slug for t in tasks):
                raise DuplicateSlugError(task.slug)
            tasks.append(task)
            return tasks

        self.update(_add)
        logger.info(f"Added task '{task.slug}' ({task.cron_expression})")
        return task

    def remove(self, slug: str) -> Task:
        removed: List[Task] = []

        def _remove(tasks: List[Task]) -> List[Task]:
            kept = [t for t in tasks if t.slug != slug]
            if len(kept) == len(tasks):
                raise TaskNotFoundError([slug])
            removed.extend(t for t in tasks if t.slug == slug)
            return kept

        self.update(_remove)
        logger.info(f"Removed task '{slug}'")
        return removed[0]

    def get(self, slug: str) -> Optional[Task]:
        for task in self.load():
            if task.slug == slug:
                return task
        return None

    def list(self) -> List[Task]:
        return self.load()


def validate_task(task: Task) -> None:
    """Reject a task that must never be persisted."""
    if not SLUG_RE.match(task.slug or ""):
        raise InvalidTaskError(
            f"Invalid slug '{task.slug}': use letters, digits, '.', '_' or '-'"
        )
    if not task.command:
        raise InvalidTaskError(f"Task '{task.slug}' has an empty command")
    task.cron_expression = cron.validate(task.cron_expression)


# =============================================================================
# Module-level convenience API
# =============================================================================


def get_store() -> TaskStore:
    """A store bound to the configured tasks file."""
    return TaskStore()


def add_task(
    slug: str,
    cron_expression: str,
    command: Sequence[str],
    active: bool = True,
    store: Optional[TaskStore] = None,
) -> Task:
    """Create and persist a task. ``command`` is the argv to run."""
    argv = list(command)
    if not argv or not argv[0]:
        raise InvalidTaskError(f"Task '{slug}' has an empty command")
    task = Task(
        slug=slug,
        cron_expression=cron_expression,
        command=argv[0],
        args=argv[1:],
        active=active,
    )
    return (store or get_store()).add(task)


def remove_task(slug: str, store: Optional[TaskStore] = None) -> Task:
    return (store or get_store()).remove(slug)


def list_tasks(store: Optional[TaskStore] = None) -> List[Task]:
    """All tasks in insertion order."""
    return (store or get_store()).list()


def get_task(slug: str, store: Optional[TaskStore] = None) -> Optional[Task]:
    return (store or get_store()).get(slug)
