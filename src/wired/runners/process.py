r"""Supervised child processes with unconditional restart.

Each registered child walks a small state machine:

    starting -> running -> exited -> restarting -> starting -> ...
                                  \-> stopped (once stop_all began)

Restarts are scheduled through a Scheduler so tests can drive them without
real timers (ManualScheduler).
"""
from __future__ import annotations

import json
import logging
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, Protocol, Tuple

from ..util.proc import best_effort_killpg
from ..util.time import utc_now_iso

logger = logging.getLogger("wired.runners.process")

ChildState = Literal["starting", "running", "exited", "restarting", "stopped"]
OutputMode = Literal["stream-json", "text"]

_STDERR_NOISE = ("DeprecationWarning", "ExperimentalWarning")
_LOG_TRUNCATE = 500


class Scheduler(Protocol):
    def call_later(self, delay_s: float, fn: Callable[[], None]) -> Any: ...

    def cancel_all(self) -> None: ...


class ThreadScheduler:
    """Runs callbacks on daemon timer threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: List[threading.Timer] = []
        self._closed = False

    def call_later(self, delay_s: float, fn: Callable[[], None]) -> Optional[threading.Timer]:
        def run() -> None:
            with self._lock:
                if t in self._timers:
                    self._timers.remove(t)
            try:
                fn()
            except Exception:
                logger.exception("scheduled callback failed")

        with self._lock:
            if self._closed:
                return None
            t = threading.Timer(max(0.0, float(delay_s)), run)
            t.daemon = True
            self._timers.append(t)
        t.start()
        return t

    def cancel_all(self) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers)
            self._timers.clear()
        for t in timers:
            t.cancel()


class ManualScheduler:
    """Collects callbacks; `run_pending` fires them synchronously."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.pending: List[Tuple[float, Callable[[], None]]] = []

    def call_later(self, delay_s: float, fn: Callable[[], None]) -> int:
        with self._lock:
            self.pending.append((float(delay_s), fn))
            return len(self.pending)

    def run_pending(self) -> int:
        with self._lock:
            due = list(self.pending)
            self.pending.clear()
        for _, fn in due:
            fn()
        return len(due)

    def cancel_all(self) -> None:
        with self._lock:
            self.pending.clear()


@dataclass
class ChildSpec:
    name: str
    argv_factory: Callable[[], List[str]]
    env_factory: Optional[Callable[[], Dict[str, str]]] = None
    cwd: Optional[Path] = None
    output: OutputMode = "text"
    stdin: bool = False
    restart_delay_s: float = 5.0


@dataclass
class ChildProcess:
    name: str
    pid: Optional[int] = None
    state: ChildState = "starting"
    restart_count: int = 0
    last_exit_code: Optional[int] = None
    spawn_count: int = 0
    started_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "pid": self.pid,
            "state": self.state,
            "restart_count": self.restart_count,
            "last_exit_code": self.last_exit_code,
            "spawn_count": self.spawn_count,
            "started_at": self.started_at,
        }


def assistant_text(payload: Dict[str, Any]) -> str:
    """Joined text parts of a stream-json `assistant` record ("" otherwise)."""
    if payload.get("type") != "assistant":
        return ""
    message = payload.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return ""
    parts = [str(c.get("text") or "") for c in content if isinstance(c, dict) and c.get("type") == "text"]
    return "\n".join(p for p in parts if p)


class ProcessSupervisor:
    def __init__(
        self,
        scheduler: Optional[Scheduler] = None,
        *,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        on_spawn: Optional[Callable[[ChildProcess], None]] = None,
        on_output: Optional[Callable[[str, Dict[str, Any]], None]] = None,
    ) -> None:
        self.scheduler: Scheduler = scheduler or ThreadScheduler()
        self._popen = popen
        self._on_spawn = on_spawn
        self._on_output = on_output
        self._lock = threading.Lock()
        self._specs: Dict[str, ChildSpec] = {}
        self._handles: Dict[str, ChildProcess] = {}
        self._procs: Dict[str, subprocess.Popen] = {}
        self._stdin_locks: Dict[str, threading.Lock] = {}
        self._stopping = False

    def register(self, spec: ChildSpec) -> ChildProcess:
        with self._lock:
            self._specs[spec.name] = spec
            handle = self._handles.get(spec.name)
            if handle is None:
                handle = ChildProcess(name=spec.name)
                self._handles[spec.name] = handle
            self._stdin_locks.setdefault(spec.name, threading.Lock())
        return handle

    def handle(self, name: str) -> Optional[ChildProcess]:
        with self._lock:
            return self._handles.get(name)

    @property
    def stopping(self) -> bool:
        with self._lock:
            return self._stopping

    def spawn(self, name: str) -> ChildProcess:
        with self._lock:
            spec = self._specs.get(name)
            if spec is None:
                raise KeyError(f"unknown child: {name}")
            handle = self._handles[name]
            if self._stopping:
                handle.state = "stopped"
                return handle
            existing = self._procs.get(name)
            if existing is not None and existing.poll() is None:
                return handle
            handle.state = "starting"

        argv = spec.argv_factory()
        env = spec.env_factory() if spec.env_factory is not None else None
        try:
            proc = self._popen(
                argv,
                stdin=subprocess.PIPE if spec.stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(spec.cwd) if spec.cwd else None,
                env=env,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            logger.error("failed to start %s: %s", name, e, extra={"child": name})
            with self._lock:
                handle.spawn_count += 1
                handle.pid = None
                handle.last_exit_code = None
            self._schedule_restart(name, None)
            return handle

        with self._lock:
            late = self._stopping
            if late:
                handle.state = "stopped"
            else:
                self._procs[name] = proc
        if late:
            # stop_all ran while Popen was in flight and never saw this process.
            logger.info("stopping %s started during shutdown", name, extra={"child": name})
            best_effort_killpg(proc.pid, signal.SIGKILL)
            try:
                proc.wait(timeout=5.0)
            except subprocess.TimeoutExpired:
                logger.warning("%s did not exit after SIGKILL", name, extra={"child": name})
            for stream in (proc.stdin, proc.stdout, proc.stderr):
                if stream is not None:
                    try:
                        stream.close()
                    except (OSError, ValueError):
                        pass
            return handle

        with self._lock:
            handle.pid = int(proc.pid)
            handle.state = "running"
            handle.spawn_count += 1
            handle.started_at = utc_now_iso()
        logger.info("started %s (pid %d)", name, proc.pid, extra={"child": name, "pid": proc.pid})

        threading.Thread(target=self._read_stdout, args=(name, spec, proc), name=f"wired-{name}-out", daemon=True).start()
        threading.Thread(target=self._read_stderr, args=(name, proc), name=f"wired-{name}-err", daemon=True).start()

        if self._on_spawn is not None:
            try:
                self._on_spawn(handle)
            except Exception:
                logger.exception("on_spawn hook failed", extra={"child": name})
        return handle

    def _read_stdout(self, name: str, spec: ChildSpec, proc: subprocess.Popen) -> None:
        stream = proc.stdout
        if stream is not None:
            try:
                for line in stream:
                    line = line.rstrip("\r\n")
                    if line.strip():
                        self._dispatch_line(name, spec, line)
            except (OSError, ValueError):
                pass
        code = proc.wait()
        self._on_exit(name, proc, code)

    def _dispatch_line(self, name: str, spec: ChildSpec, line: str) -> None:
        payload: Optional[Dict[str, Any]] = None
        if spec.output == "stream-json":
            try:
                doc = json.loads(line)
            except ValueError:
                doc = None
            if isinstance(doc, dict):
                payload = doc

        if payload is None:
            logger.info("%s", line, extra={"child": name})
            return

        text = assistant_text(payload)
        if text:
            logger.info("%s", text[:_LOG_TRUNCATE], extra={"child": name})
        if self._on_output is not None:
            try:
                self._on_output(name, payload)
            except Exception:
                logger.exception("on_output hook failed", extra={"child": name})

    def _read_stderr(self, name: str, proc: subprocess.Popen) -> None:
        stream = proc.stderr
        if stream is None:
            return
        try:
            for line in stream:
                text = line.strip()
                if text and not any(n in text for n in _STDERR_NOISE):
                    logger.warning("%s", text, extra={"child": name})
        except (OSError, ValueError):
            pass

    def _on_exit(self, name: str, proc: subprocess.Popen, code: Optional[int]) -> None:
        with self._lock:
            if self._procs.get(name) is not proc:
                return
            self._procs.pop(name, None)
            handle = self._handles[name]
            handle.last_exit_code = code
            handle.state = "exited"
        self._schedule_restart(name, code)

    def _schedule_restart(self, name: str, code: Optional[int]) -> None:
        with self._lock:
            handle = self._handles[name]
            if self._stopping:
                handle.state = "stopped"
                return
            handle.state = "restarting"
            delay = self._specs[name].restart_delay_s
        logger.warning("%s exited (%s), restarting in %.0fs", name, code, delay, extra={"child": name})
        self.scheduler.call_later(delay, lambda: self._restart(name))

    def _restart(self, name: str) -> None:
        with self._lock:
            if self._stopping:
                self._handles[name].state = "stopped"
                return
            self._handles[name].restart_count += 1
        self.spawn(name)

    def inject_input(self, name: str, source: str, text: str) -> bool:
        """Write one stream-json user turn to the child's stdin.

        Returns False when the child is absent, exited, or its pipe broke; the
        message is dropped in that case.
        """
        with self._lock:
            proc = self._procs.get(name)
            stdin_lock = self._stdin_locks.get(name)
        if proc is None or stdin_lock is None or proc.stdin is None or proc.poll() is not None:
            return False

        tag = str(source or "").strip().upper()
        content = f"[{tag}]: {text}" if tag else str(text)
        line = json.dumps({"type": "user", "message": {"role": "user", "content": content}}, ensure_ascii=False)
        with stdin_lock:
            try:
                proc.stdin.write(line + "\n")
                proc.stdin.flush()
            except (OSError, ValueError):
                logger.warning("stdin closed, input dropped", extra={"child": name, "source": source})
                return False
        logger.info("injected from %s: %s", source or "-", content[:50], extra={"child": name, "source": source})
        return True

    def pids(self) -> Dict[str, Optional[int]]:
        with self._lock:
            return {n: (int(p.pid) if p.poll() is None else None) for n, p in self._procs.items()}

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {n: h.to_dict() for n, h in self._handles.items()}

    def stop_all(self, grace_s: float = 3.0) -> None:
        """SIGTERM every child's process group, SIGKILL whatever outlives `grace_s`."""
        with self._lock:
            self._stopping = True
            procs = list(self._procs.items())
            for h in self._handles.values():
                h.state = "stopped"
        self.scheduler.cancel_all()

        for name, proc in procs:
            if proc.poll() is None:
                logger.info("stopping %s", name, extra={"child": name})
                best_effort_killpg(proc.pid, signal.SIGTERM)

        deadline = time.monotonic() + max(0.0, float(grace_s))
        while time.monotonic() < deadline:
            if all(p.poll() is not None for _, p in procs):
                break
            time.sleep(0.05)

        for name, proc in procs:
            if proc.poll() is None:
                logger.warning("%s ignored SIGTERM, killing", name, extra={"child": name})
                best_effort_killpg(proc.pid, signal.SIGKILL)
            if proc.stdin is not None:
                try:
                    proc.stdin.close()
                except (OSError, ValueError):
                    pass
