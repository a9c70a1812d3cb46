import dataclasses
import logging
import os
import tempfile
import unittest
from pathlib import Path
from typing import Dict, List


class FakeAdapter:
    platform = "fake"

    def __init__(self) -> None:
        self.sent: List[tuple] = []
        self.deleted: List[str] = []
        self.handler = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> bool:
        self._connected = True
        return True

    def disconnect(self) -> None:
        self._connected = False

    def set_inbound_handler(self, handler) -> None:
        self.handler = handler

    def user_tag(self) -> str:
        return ""

    def send_message(self, chat_id: str, text: str) -> None:
        self.sent.append((chat_id, text))

    def get_chat_title(self, chat_id: str) -> str:
        return chat_id

    def ensure_instance_channels(self, guild_id: str, slot: int) -> Dict[str, str]:
        return {"category": "10", "primary": "100", "overwatch": "200"}

    def delete_channels(self, channel_ids: List[str]) -> None:
        self.deleted.extend(channel_ids)

    def add_reaction(self, chat_id: str, message_id: str, emoji: str) -> bool:
        return True


class TestDaemonRequests(unittest.TestCase):
    def setUp(self) -> None:
        from wired.kernel.config import WiredConfig
        from wired.kernel.registry import InstanceRegistry
        from wired.runners.process import ManualScheduler

        td = tempfile.TemporaryDirectory()
        self.addCleanup(td.cleanup)
        home = Path(td.name)
        self.config = WiredConfig(
            home=home,
            instance_dir=home / "instances",
            workdir=home,
            discord_token="t",
            guild_id="g",
            http_enabled=False,
        )
        self.adapter = FakeAdapter()
        self.registry = InstanceRegistry(self.config.instance_dir, host="box")
        self.scheduler = ManualScheduler()

    def _daemon(self):
        from wired.daemon.server import WiredDaemon

        d = WiredDaemon(self.config, self.adapter, registry=self.registry, scheduler=self.scheduler)
        d.bind_instance(4, {"category": "10", "primary": "100", "overwatch": "200"})
        self.adapter._connected = True
        return d

    def _req(self, d, op: str, **args):
        from wired.contracts.v1 import DaemonRequest

        return d.handle_request(DaemonRequest.model_validate({"op": op, "args": args}))

    def test_ping_and_status(self) -> None:
        d = self._daemon()
        resp, should_exit = self._req(d, "ping")
        self.assertTrue(resp.ok)
        self.assertFalse(should_exit)
        self.assertEqual(resp.result["instance"], 4)
        self.assertEqual(resp.result["pid"], os.getpid())

        resp, _ = self._req(d, "status")
        self.assertEqual(resp.result["instance"], 4)
        self.assertEqual(resp.result["child_pids"], {"llm": None, "overwatch": None})
        self.assertEqual(resp.result["channels"]["primary"], "100")
        self.assertEqual(resp.result["uptime"], "0h 0m")

    def test_bind_instance_derives_paths(self) -> None:
        d = self._daemon()
        self.assertEqual(d.sock_path, self.config.instance_dir / "wired-4.sock")
        self.assertEqual(d.config.log_path, self.config.instance_dir / "wired-4.log")
        self.assertEqual(d.config.http_port(), 8844)

    def test_inject_without_child_is_rejected(self) -> None:
        d = self._daemon()
        resp, _ = self._req(d, "inject", source="external", content="hello")
        self.assertFalse(resp.ok)
        self.assertEqual(resp.error.code, "injection_rejected")

        resp, _ = self._req(d, "inject", content="   ")
        self.assertEqual(resp.error.code, "missing_content")

    def test_post_defaults_to_overwatch_channel(self) -> None:
        d = self._daemon()
        resp, _ = self._req(d, "post", text="report")
        self.assertTrue(resp.ok, resp.error)
        self.assertEqual(resp.result["channel_type"], "overwatch")
        self.assertEqual(self.adapter.sent, [("200", "report")])

        resp, _ = self._req(d, "post", channel_type="tars", text="hello")
        self.assertEqual(resp.result["destination_id"], "100")

        resp, _ = self._req(d, "post", channel_type="lobby", text="x")
        self.assertEqual(resp.error.code, "unknown_channel")

        resp, _ = self._req(d, "post", text="")
        self.assertEqual(resp.error.code, "missing_text")

    def test_shutdown_and_unknown_op(self) -> None:
        d = self._daemon()
        resp, should_exit = self._req(d, "shutdown")
        self.assertTrue(resp.ok)
        self.assertTrue(should_exit)

        resp, should_exit = self._req(d, "warp")
        self.assertEqual(resp.error.code, "unknown_op")
        self.assertFalse(should_exit)

    def test_start_and_shutdown_lifecycle(self) -> None:
        from wired.daemon.server import WiredDaemon

        self.config = dataclasses.replace(self.config, llm_command=["/nonexistent/llm"])
        root = logging.getLogger()
        before = list(root.handlers)
        self.addCleanup(lambda: [root.removeHandler(h) for h in root.handlers if h not in before])
        d = WiredDaemon(self.config, self.adapter, registry=self.registry, scheduler=self.scheduler)
        self.addCleanup(d.stop_event.set)

        slot = d.start()
        self.assertEqual(slot, 1)
        rec = self.registry.load(1)
        assert rec is not None
        self.assertEqual(rec.channels["primary"], "100")
        self.assertTrue(self.adapter.sent[0][1].startswith("**WIRED #1 ONLINE**"))
        # status tick, llm restart, overwatch start
        self.assertEqual(len(self.scheduler.pending), 3)

        d.shutdown("test")
        self.assertIsNone(self.registry.load(1))
        self.assertIn("**WIRED #1 SHUTDOWN** - test", [t for _, t in self.adapter.sent])
        self.assertEqual(self.adapter.deleted, ["100", "200", "10"])
        self.assertFalse(self.adapter.connected)
        self.assertEqual(self.scheduler.pending, [])

    def test_shutdown_stops_children_when_chat_stalls(self) -> None:
        import sys
        import time

        from wired.daemon.server import LLM_CHILD
        from wired.runners.process import ChildSpec
        from wired.util.proc import pid_alive

        class StallingAdapter(FakeAdapter):
            def send_message(self, chat_id: str, text: str) -> None:
                time.sleep(2.0)
                super().send_message(chat_id, text)

        self.adapter = StallingAdapter()
        self.config = dataclasses.replace(self.config, exit_timeout_s=1.0, kill_grace_s=1.0)
        d = self._daemon()
        d.supervisor.register(
            ChildSpec(name=LLM_CHILD, argv_factory=lambda: [sys.executable, "-c", "import time; time.sleep(60)"])
        )
        handle = d.supervisor.spawn(LLM_CHILD)
        pid = handle.pid
        assert pid is not None
        self.addCleanup(d.supervisor.stop_all, 0.0)

        started = time.monotonic()
        d.shutdown("test")
        self.assertLess(time.monotonic() - started, 1.9)

        deadline = time.monotonic() + 2.0
        while pid_alive(pid) and time.monotonic() < deadline:
            time.sleep(0.02)
        self.assertFalse(pid_alive(pid))
        self.assertEqual(handle.state, "stopped")


class TestInstanceSockPath(unittest.TestCase):
    def test_explicit_slot_and_env(self) -> None:
        from wired.daemon.server import instance_sock_path
        from wired.kernel.config import WiredConfig

        with tempfile.TemporaryDirectory() as td:
            home = Path(td)
            cfg = WiredConfig(home=home, instance_dir=home / "instances", workdir=home)
            self.assertEqual(instance_sock_path(cfg, 2), home / "instances" / "wired-2.sock")
            self.assertIsNone(instance_sock_path(cfg))

            cfg = WiredConfig(home=home, instance_dir=home / "instances", workdir=home, instance=5)
            self.assertEqual(instance_sock_path(cfg), home / "instances" / "wired-5.sock")
