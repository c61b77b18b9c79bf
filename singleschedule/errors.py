"""Exception hierarchy shared by the store, the cron evaluator and the launcher."""

from typing import Iterable, Optional


class SingleScheduleError(Exception):
    """Base class for every error surfaced to operators."""


# =============================================================================
# Cron expressions
# =============================================================================

FIELD_NAMES = ("second", "minute", "hour", "day-of-month", "month", "day-of-week")


class CronParseError(SingleScheduleError):
    """A cron expression could not be compiled.

    ``field_index`` is 1-based so messages line up with what operators type.
    """

    def __init__(self, message: str, field_index: Optional[int] = None):
        self.field_index = field_index
        self.field_name = (
            FIELD_NAMES[field_index - 1] if field_index is not None else None
        )
        if field_index is not None:
            message = (
                f"Invalid cron expression at field {field_index} "
                f"({self.field_name}): {message}"
            )
        else:
            message = f"Invalid cron expression: {message}"
        super().__init__(message)


class CronSyntaxError(CronParseError):
    """Malformed field syntax or wrong number of fields."""


class CronRangeError(CronParseError):
    """A literal falls outside the range allowed for its field."""


# =============================================================================
# Task store
# =============================================================================


class StoreError(SingleScheduleError):
    """Base class for task store failures."""


class StoreIOError(StoreError):
    """Reading, writing or locking the store file failed."""


class StoreCorruptError(StoreError):
    """The store file exists but does not hold a valid task list."""


class InvalidTaskError(StoreError):
    """A task definition was rejected before reaching the store."""


class DuplicateSlugError(StoreError):
    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Task with slug '{slug}' already exists")


class TaskNotFoundError(StoreError):
    def __init__(self, slugs: Iterable[str]):
        self.slugs = sorted(slugs)
        quoted = ", ".join(f"'{s}'" for s in self.slugs)
        noun = "slug" if len(self.slugs) == 1 else "slugs"
        super().__init__(f"Task with {noun} {quoted} not found")


# =============================================================================
# Process launching
# =============================================================================


class LaunchError(SingleScheduleError):
    """Base class for failures starting a task's command."""


class SpawnFailedError(LaunchError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to spawn command: {reason}")


# =============================================================================
# Daemon
# =============================================================================


class DaemonError(SingleScheduleError):
    """The scheduler daemon could not be started or stopped."""


class DaemonAlreadyRunningError(DaemonError):
    def __init__(self, pid: Optional[int] = None):
        self.pid = pid
        suffix = f" with PID {pid}" if pid else ""
        super().__init__(f"Daemon is already running{suffix}")
