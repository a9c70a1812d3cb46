from __future__ import annotations

import logging
import threading
import time
from typing import Optional

import uvicorn
from fastapi import FastAPI

logger = logging.getLogger("wired.web")


class HttpServer:
    """uvicorn on a background thread, stopped via `should_exit`."""

    def __init__(self, app: FastAPI, *, host: str = "127.0.0.1", port: int = 8841) -> None:
        self.host = host
        self.port = int(port)
        config = uvicorn.Config(app, host=host, port=self.port, log_level="warning", access_log=False)
        self._server = uvicorn.Server(config)
        self._thread: Optional[threading.Thread] = None

    def start(self, *, ready_timeout_s: float = 5.0) -> bool:
        self._thread = threading.Thread(target=self._run, name="wired-http", daemon=True)
        self._thread.start()
        deadline = time.monotonic() + ready_timeout_s
        while time.monotonic() < deadline:
            if self._server.started:
                logger.info("http listening on %s:%d", self.host, self.port)
                return True
            if not self._thread.is_alive():
                break
            time.sleep(0.05)
        logger.warning("http endpoint did not start on %s:%d", self.host, self.port)
        return False

    def _run(self) -> None:
        try:
            self._server.run()
        except SystemExit:
            # uvicorn exits when the port cannot be bound
            logger.error("http server exited (port %d in use?)", self.port)
        except Exception:
            logger.exception("http server crashed")

    def stop(self, timeout_s: float = 2.0) -> None:
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
