"""Entry point for ``python -m singleschedule``.

``python -m singleschedule daemon`` is how the daemon is spawned in the background.
"""

import sys

from singleschedule.cli import main

if __name__ == "__main__":
    sys.exit(main())
