"""Platform abstraction for process and file-lock primitives.

Provides a unified interface across Windows, Linux, and macOS.
"""

import sys

if sys.platform == "win32":
    from singleschedule.platform_win import (
        detached_popen_kwargs,
        is_process_running,
        terminate_process,
        try_lock,
        unlock,
    )
else:
    from singleschedule.platform_unix import (
        detached_popen_kwargs,
        is_process_running,
        terminate_process,
        try_lock,
        unlock,
    )

__all__ = [
    "detached_popen_kwargs",
    "is_process_running",
    "terminate_process",
    "try_lock",
    "unlock",
]
