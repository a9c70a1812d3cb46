"""
Entry point for running the overwatcher as a module.

Usage:
    python -m wired.ports.overwatch

Started by the supervisor with WIRED_INSTANCE, WIRED_DAEMON_SOCK and
WIRED_LOG_PATH in the environment.
"""
from __future__ import annotations

import sys

from ...kernel.config import load_config
from ...kernel.errors import ConfigurationError
from ...util.obslog import setup_root_json_logging


def main() -> int:
    try:
        config = load_config()
        config.require("instance")
    except ConfigurationError as e:
        print(f"wired overwatch: {e.message}", file=sys.stderr)
        return 1

    # stderr only: the supervisor already writes WIRED_LOG_PATH, which this process reads.
    setup_root_json_logging(component="overwatch", level=config.log_level)

    from .agent import start_agent

    start_agent(config)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
