# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto

"""Process liveness checks used to age out stale registrations."""

import os
from collections.abc import Callable

LivenessCheck = Callable[[int], bool]


def is_process_alive(pid: int) -> bool:
    """Return True if ``pid`` refers to a running process.

    Uses the signal-0 check: no signal is delivered, only existence and
    permission are checked. A process owned by another user still counts
    as alive.
    """
    if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True
