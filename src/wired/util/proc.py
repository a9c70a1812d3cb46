from __future__ import annotations

import os
import signal


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    except OSError:
        return False
    return True


def best_effort_killpg(pid: int, sig: signal.Signals) -> None:
    """Signal the process group led by `pid`, falling back to the pid alone."""
    if pid <= 0:
        return
    try:
        os.killpg(pid, sig)
    except OSError:
        try:
            os.kill(pid, sig)
        except OSError:
            pass
