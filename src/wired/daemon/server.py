"""Instance supervisor daemon.

One daemon per instance slot. It owns the slot record, the instance channels,
the LLM and overwatcher children, a unix control socket and the loopback HTTP
endpoint. Control requests are single JSON lines (DaemonRequest in,
DaemonResponse out).
"""
from __future__ import annotations

import json
import logging
import os
import resource
import signal
import socket
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .. import __version__
from ..contracts.v1 import DaemonError, DaemonRequest, DaemonResponse
from ..kernel.channels import normalize_kind
from ..kernel.config import WiredConfig
from ..kernel.errors import InjectionRejected, TransportError, WiredError
from ..kernel.prompts import KICKOFF_PROMPT, llm_argv, overwatch_argv
from ..kernel.registry import InstanceRegistry
from ..kernel.relay import RelayGateway
from ..ports.im.adapters.base import ChatAdapter
from ..runners.process import ChildProcess, ChildSpec, ProcessSupervisor, Scheduler, ThreadScheduler
from ..util.obslog import attach_log_file
from ..util.time import format_uptime, seconds_until_boundary

logger = logging.getLogger("wired.daemon")

LLM_CHILD = "llm"
OVERWATCH_CHILD = "overwatch"


def _is_socket_alive(sock_path: Path) -> bool:
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(0.2)
            s.connect(str(sock_path))
            s.sendall(b'{"op":"ping"}\n')
            _ = s.recv(1024)
            return True
    except OSError:
        return False


def _remove_stale_socket(sock_path: Path) -> None:
    try:
        if sock_path.exists() and not _is_socket_alive(sock_path):
            sock_path.unlink()
    except OSError:
        pass


def _recv_json_line(conn: socket.socket) -> Dict[str, Any]:
    buf = b""
    while b"\n" not in buf:
        chunk = conn.recv(65536)
        if not chunk:
            break
        buf += chunk
        if len(buf) > 2_000_000:
            break
    line = buf.split(b"\n", 1)[0]
    try:
        doc = json.loads(line.decode("utf-8", errors="replace"))
    except ValueError:
        return {}
    return doc if isinstance(doc, dict) else {}


def _send_json(conn: socket.socket, obj: Dict[str, Any]) -> None:
    conn.sendall((json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8"))


def _error(code: str, message: str, *, details: Optional[Dict[str, Any]] = None) -> DaemonResponse:
    return DaemonResponse(ok=False, error=DaemonError(code=code, message=message, details=(details or {})))


def call_daemon(req: Dict[str, Any], *, sock_path: Path, timeout_s: float = 10.0) -> Dict[str, Any]:
    """Send one request to the daemon listening on `sock_path`."""
    try:
        request = DaemonRequest.model_validate(req)
    except ValueError as e:
        return _error("invalid_request", "invalid request", details={"error": str(e)}).model_dump()
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(timeout_s)
            s.connect(str(sock_path))
            s.sendall((json.dumps(request.model_dump(), ensure_ascii=False) + "\n").encode("utf-8"))
            obj = _recv_json_line(s)
        return DaemonResponse.model_validate(obj).model_dump()
    except (OSError, ValueError):
        return _error("daemon_unavailable", "daemon unavailable", details={"sock": str(sock_path)}).model_dump()


def _max_rss_mb() -> int:
    # ru_maxrss is KiB on Linux
    return int(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss // 1024)


class WiredDaemon:
    def __init__(
        self,
        config: WiredConfig,
        adapter: ChatAdapter,
        *,
        registry: Optional[InstanceRegistry] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.config = config
        self.adapter = adapter
        self.registry = registry or InstanceRegistry(config.instance_dir)
        self.scheduler: Scheduler = scheduler or ThreadScheduler()
        self.supervisor = ProcessSupervisor(self.scheduler, on_spawn=self._on_child_spawn)
        self.relay = RelayGateway(adapter, allowed_user_id=config.allowed_user_id)

        self.slot: Optional[int] = None
        self.channels: Dict[str, str] = {}
        self.stop_event = threading.Event()
        self.stop_reason = ""
        self._started = time.monotonic()
        self._lock = threading.Lock()
        self._shutdown_started = False
        self._control_thread: Optional[threading.Thread] = None
        self._http: Any = None

    # ---- instance binding ----

    def bind_instance(self, slot: int, channels: Dict[str, str]) -> None:
        self.slot = int(slot)
        self.channels = dict(channels)
        self.config = self.config.for_instance(
            slot,
            primary_channel_id=channels.get("primary", ""),
            overwatch_channel_id=channels.get("overwatch", ""),
        )
        if self.config.primary_channel_id:
            self.relay.bind("primary", self.config.primary_channel_id, name=f"{slot}-tars")
        if self.config.overwatch_channel_id:
            self.relay.bind("overwatch", self.config.overwatch_channel_id, name=f"{slot}-romilly")

    @property
    def sock_path(self) -> Path:
        return Path(self.config.daemon_sock)

    # ---- operations ----

    def status(self) -> Dict[str, Any]:
        pids = self.supervisor.pids()
        uptime_s = time.monotonic() - self._started
        return {
            "instance": self.slot,
            "host": self.registry.host,
            "pid": os.getpid(),
            "child_pids": {"llm": pids.get(LLM_CHILD), "overwatch": pids.get(OVERWATCH_CHILD)},
            "children": self.supervisor.snapshot(),
            "channels": dict(self.channels),
            "uptime": format_uptime(uptime_s),
            "uptime_s": int(uptime_s),
            "relay": self.relay.status(),
        }

    def inject(self, source: str, content: str) -> bool:
        return self.supervisor.inject_input(LLM_CHILD, source, content)

    def handle_request(self, req: DaemonRequest) -> Tuple[DaemonResponse, bool]:
        op = str(req.op or "").strip()
        args = req.args or {}

        if op == "ping":
            return DaemonResponse.success(pid=os.getpid(), version=__version__, instance=self.slot), False

        if op == "status":
            return DaemonResponse.success(**self.status()), False

        if op == "inject":
            content = str(args.get("content") or "")
            if not content.strip():
                return _error("missing_content", "missing content"), False
            source = str(args.get("source") or "external")
            if not self.inject(source, content):
                err = InjectionRejected("LLM child is not accepting input", details={"source": source})
                return _error(err.code, err.message, details=err.details), False
            return DaemonResponse.success(success=True, source=source, instance=self.slot), False

        if op == "post":
            text = str(args.get("text") or "")
            if not text.strip():
                return _error("missing_text", "missing text"), False
            try:
                kind = normalize_kind(args.get("channel_type"), default="overwatch")
                receipt = self.relay.send(kind, text)
            except WiredError as e:
                return _error(e.code, e.message, details=e.details), False
            return DaemonResponse.success(**receipt.model_dump()), False

        if op == "shutdown":
            self.stop_reason = self.stop_reason or "shutdown request"
            return DaemonResponse.success(message="shutting down"), True

        return _error("unknown_op", f"unknown op: {op}"), False

    # ---- control socket ----

    def serve_control(self, sock_path: Path) -> None:
        _remove_stale_socket(sock_path)
        if sock_path.exists():
            sock_path.unlink()
        sock_path.parent.mkdir(parents=True, exist_ok=True)

        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.bind(str(sock_path))
            s.listen(50)
            s.settimeout(1.0)
            logger.info("control socket at %s", sock_path)

            while not self.stop_event.is_set():
                try:
                    conn, _ = s.accept()
                except socket.timeout:
                    continue
                except OSError:
                    if self.stop_event.is_set():
                        break
                    continue
                try:
                    conn.settimeout(5.0)
                    raw = _recv_json_line(conn)
                    try:
                        req = DaemonRequest.model_validate(raw)
                    except ValueError as e:
                        resp, should_exit = _error("invalid_request", "invalid request", details={"error": str(e)}), False
                    else:
                        resp, should_exit = self.handle_request(req)
                        logger.debug("op %s -> ok=%s", req.op, resp.ok, extra={"op": req.op})
                    try:
                        _send_json(conn, resp.model_dump())
                    except OSError:
                        # client went away before the reply
                        pass
                    if should_exit:
                        self.stop_event.set()
                except OSError as e:
                    logger.warning("control connection failed: %s", e)
                finally:
                    try:
                        conn.close()
                    except OSError:
                        pass

        try:
            sock_path.unlink()
        except OSError:
            pass

    # ---- startup ----

    def _child_specs(self) -> Tuple[ChildSpec, ChildSpec]:
        cfg = self.config
        llm = ChildSpec(
            name=LLM_CHILD,
            argv_factory=lambda: llm_argv(self.config),
            env_factory=lambda: self.config.child_env(),
            cwd=cfg.workdir,
            output="stream-json",
            stdin=True,
            restart_delay_s=cfg.restart_delay_s,
        )
        overwatch = ChildSpec(
            name=OVERWATCH_CHILD,
            argv_factory=lambda: overwatch_argv(self.config),
            env_factory=lambda: self.config.child_env(WIRED_LLM_PID=str(self.supervisor.pids().get(LLM_CHILD) or "")),
            cwd=cfg.workdir,
            output="text",
            stdin=False,
            restart_delay_s=cfg.restart_delay_s,
        )
        return llm, overwatch

    def _on_child_spawn(self, handle: ChildProcess) -> None:
        if self.slot is not None:
            pids = self.supervisor.pids()
            self.registry.update_slot(
                self.slot,
                child_pids={"llm": pids.get(LLM_CHILD), "overwatch": pids.get(OVERWATCH_CHILD)},
            )
        if handle.name == LLM_CHILD:
            self.scheduler.call_later(self.config.kick_delay_s, self._kick_off)

    def _kick_off(self) -> None:
        if not self.inject("", KICKOFF_PROMPT):
            logger.warning("kick-off prompt dropped", extra={"child": LLM_CHILD})

    def _post_primary(self, text: str) -> bool:
        try:
            self.relay.send("primary", text)
            return True
        except WiredError as e:
            logger.warning("post to primary failed: %s", e.message)
            return False

    def _banner(self, title: str, lines: Dict[str, Any], *, suffix: str = "") -> str:
        body = "\n".join(f"{k}: {v}" for k, v in lines.items())
        return f"**WIRED #{self.slot} {title}**{suffix}\n```\n{body}\n```"

    def _status_tick(self) -> None:
        if self.stop_event.is_set():
            return
        st = self.status()
        now = datetime.now(timezone.utc).strftime("%H:%M")
        self._post_primary(
            self._banner(
                "STATUS",
                {
                    "Host": st["host"],
                    "Uptime": st["uptime"],
                    "LLM PID": st["child_pids"]["llm"] or "N/A",
                    "ROMILLY PID": st["child_pids"]["overwatch"] or "N/A",
                    "Max RSS": f"{_max_rss_mb()}MB",
                },
                suffix=f" ({now} UTC)",
            )
        )
        self.scheduler.call_later(self.config.status_interval_s, self._status_tick)

    def start(self) -> int:
        """Connect, claim a slot, set up channels and launch the children."""
        cfg = self.config
        cfg.require("discord_token", "guild_id")
        if not self.adapter.connect():
            raise TransportError("could not connect to the chat platform")

        slot = self.registry.acquire_slot()
        try:
            channels = self.adapter.ensure_instance_channels(cfg.guild_id, slot)
        except WiredError:
            self.registry.release_slot(slot)
            raise
        self.bind_instance(slot, channels)
        self.registry.update_slot(slot, channels=channels)
        if self.config.log_path is not None:
            attach_log_file(self.config.log_path, component="daemon", level=self.config.log_level)
        logger.info("instance %d bound to %s", slot, channels, extra={"instance": slot})

        self._post_primary(
            self._banner(
                "ONLINE",
                {
                    "Host": self.registry.host,
                    "Instance": slot,
                    "PID": os.getpid(),
                    "TARS": f"#{slot}-tars",
                    "ROMILLY": f"#{slot}-romilly",
                },
            )
            + "\nSend messages here to talk to TARS."
        )

        if self.config.relay_chat_to_stdin:
            self.adapter.set_inbound_handler(self._relay_to_stdin)

        self._control_thread = threading.Thread(
            target=self.serve_control, args=(self.sock_path,), name="wired-control", daemon=True
        )
        self._control_thread.start()

        if self.config.http_enabled:
            from ..ports.web.app import create_app
            from ..ports.web.server import HttpServer

            self._http = HttpServer(create_app(self), host=self.config.http_host, port=self.config.http_port())
            self._http.start()

        now = datetime.now()
        self.scheduler.call_later(seconds_until_boundary(now, period_minutes=10), self._status_tick)

        llm, overwatch = self._child_specs()
        self.supervisor.register(llm)
        self.supervisor.register(overwatch)
        self.supervisor.spawn(LLM_CHILD)
        self.scheduler.call_later(self.config.overwatch_start_delay_s, lambda: self.supervisor.spawn(OVERWATCH_CHILD))
        logger.info("instance %d online", slot, extra={"instance": slot})
        return slot

    def _relay_to_stdin(self, event: Dict[str, Any]) -> None:
        if event.get("is_bot"):
            return
        if str(event.get("chat_id") or "") != self.config.primary_channel_id:
            return
        sender_id = str(event.get("from_user_id") or "")
        if self.config.allowed_user_id and sender_id != self.config.allowed_user_id:
            return
        user = str(event.get("from_user") or "user")
        text = str(event.get("text") or "")
        if not self.inject(f"{user} via Discord", text):
            return
        message_id = str(event.get("message_id") or "")
        if message_id:
            # Called on the chat client's loop; react from another thread.
            threading.Thread(
                target=self.adapter.add_reaction,
                args=(self.config.primary_channel_id, message_id, "✅"),
                daemon=True,
            ).start()

    # ---- shutdown ----

    def shutdown(self, reason: str = "") -> None:
        """Clean up once. Bounded by `exit_timeout_s`; the slot is released either way."""
        with self._lock:
            if self._shutdown_started:
                return
            self._shutdown_started = True
        self.stop_event.set()
        reason = reason or self.stop_reason or "shutdown"
        logger.info("shutting down (%s)", reason, extra={"instance": self.slot})

        worker = threading.Thread(target=self._cleanup, args=(reason,), name="wired-cleanup", daemon=True)
        worker.start()
        worker.join(timeout=self.config.exit_timeout_s)
        if worker.is_alive():
            logger.warning("cleanup exceeded %.0fs, exiting anyway", self.config.exit_timeout_s)
            self.supervisor.stop_all(0.0)
            if self.slot is not None:
                self.registry.release_slot(self.slot)

    def _cleanup(self, reason: str) -> None:
        self.scheduler.cancel_all()
        # Children first: every network step below may stall past exit_timeout_s.
        self.supervisor.stop_all(self.config.kill_grace_s)
        if self.slot is not None:
            self.registry.release_slot(self.slot)

        if self.slot is not None and self.adapter.connected:
            self._post_primary(f"**WIRED #{self.slot} SHUTDOWN** - {reason}")

        if self.config.delete_channels_on_exit and self.channels and self.adapter.connected:
            ids = [self.channels[k] for k in ("primary", "overwatch", "category") if self.channels.get(k)]
            try:
                self.adapter.delete_channels(ids)
            except WiredError as e:
                logger.warning("channel cleanup failed: %s", e.message)

        self.relay.close()
        self.adapter.disconnect()
        if self._http is not None:
            self._http.stop()
        if self._control_thread is not None:
            self._control_thread.join(timeout=1.5)

    def run(self) -> int:
        """Run in the foreground until SIGTERM/SIGINT or `op: shutdown`."""

        def _signal_handler(signum: int, frame: Any) -> None:
            self.stop_reason = self.stop_reason or signal.Signals(signum).name
            self.stop_event.set()

        signal.signal(signal.SIGTERM, _signal_handler)
        signal.signal(signal.SIGINT, _signal_handler)

        try:
            self.start()
        except WiredError as e:
            logger.error("startup failed: %s", e.message, extra={"instance": self.slot})
            self.shutdown("startup failure")
            return 1

        while not self.stop_event.wait(1.0):
            pass
        self.shutdown(self.stop_reason)
        return 0


def instance_sock_path(config: WiredConfig, slot: Optional[int] = None) -> Optional[Path]:
    """Control socket of instance `slot`, or of the only live instance."""
    if slot:
        return config.instance_dir / f"wired-{int(slot)}.sock"
    if config.daemon_sock:
        return Path(config.daemon_sock)
    if config.instance:
        return config.instance_dir / f"wired-{int(config.instance)}.sock"
    records = InstanceRegistry(config.instance_dir).list_records()
    if len(records) == 1:
        return config.instance_dir / f"wired-{records[0].slot}.sock"
    return None
