from __future__ import annotations

import os
from pathlib import Path


def wired_home() -> Path:
    env = os.environ.get("WIRED_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".wired").resolve()
