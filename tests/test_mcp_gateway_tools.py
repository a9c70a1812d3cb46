import io
import json
import tempfile
import threading
import time
import unittest
from pathlib import Path
from typing import List


class FakeAdapter:
    platform = "fake"

    def __init__(self) -> None:
        self.sent: List[tuple] = []
        self.handler = None

    @property
    def connected(self) -> bool:
        return True

    def set_inbound_handler(self, handler) -> None:
        self.handler = handler

    def user_tag(self) -> str:
        return "wired#0001"

    def send_message(self, chat_id: str, text: str) -> None:
        self.sent.append((chat_id, text))

    def get_chat_title(self, chat_id: str) -> str:
        return f"chan-{chat_id}"


class TestGatewayTools(unittest.TestCase):
    def setUp(self) -> None:
        from wired.kernel.registry import InstanceRegistry
        from wired.kernel.relay import RelayGateway

        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.adapter = FakeAdapter()
        self.gateway = RelayGateway(self.adapter, bindings={"primary": "100", "overwatch": "200"})
        self.gateway.bind("primary", "100", name="3-tars")
        self.registry = InstanceRegistry(Path(self._td.name), host="box")

    def _call(self, name, args=None):
        from wired.ports.mcp.server import handle_tool_call

        return handle_tool_call(self.gateway, self.registry, name, args or {}, instance=3)

    def test_wait_for_message_returns_queued_message(self) -> None:
        self.gateway.route_inbound(
            {"chat_id": "100", "chat_title": "3-tars", "text": "status?", "from_user": "cooper", "from_user_id": "42"}
        )
        out = self._call("wait_for_message", {"channel_type": "tars", "timeout_seconds": 1})
        self.assertEqual(out["content"], "status?")
        self.assertEqual(out["user"], "cooper")
        self.assertEqual(out["channel"], "3-tars")

    def test_wait_for_message_timeout(self) -> None:
        out = self._call("wait_for_message", {"channel_type": "overwatch", "timeout_seconds": 0.05})
        self.assertEqual(out, {"timeout": True, "channel_type": "overwatch"})

    def test_send_reply(self) -> None:
        out = self._call("send_reply", {"message": "on it"})
        self.assertEqual(out["status"], "Sent to #3-tars")
        self.assertEqual(out["chunks"], 1)
        self.assertEqual(self.adapter.sent, [("100", "on it")])

    def test_send_reply_requires_message(self) -> None:
        from wired.kernel.errors import WiredError

        with self.assertRaises(WiredError) as ctx:
            self._call("send_reply", {"message": "  "})
        self.assertEqual(ctx.exception.code, "missing_message")

    def test_get_status(self) -> None:
        out = self._call("get_status")
        self.assertEqual(out["instance"], 3)
        self.assertTrue(out["connected"])
        self.assertEqual(out["queue_depths"], {"primary": 0, "overwatch": 0})

    def test_migrate_instance_writes_marker(self) -> None:
        out = self._call("migrate_instance", {"target_host": "mars", "target_path": "/srv/wired"})
        self.assertEqual(out["status"], "migration_initiated")
        self.assertEqual(out["target"], "mars:/srv/wired")
        doc = json.loads(Path(out["migration_file"]).read_text(encoding="utf-8"))
        self.assertEqual(doc["instance"], 3)

    def test_unknown_tool(self) -> None:
        from wired.kernel.errors import WiredError

        with self.assertRaises(WiredError) as ctx:
            self._call("launch_ranger")
        self.assertEqual(ctx.exception.code, "unknown_tool")


class TestGatewayServer(unittest.TestCase):
    def _server(self, lines):
        from wired.kernel.registry import InstanceRegistry
        from wired.kernel.relay import RelayGateway
        from wired.ports.mcp.main import GatewayServer

        td = tempfile.TemporaryDirectory()
        self.addCleanup(td.cleanup)
        gateway = RelayGateway(FakeAdapter(), bindings={"primary": "100"})
        stdin = io.StringIO("".join(json.dumps(x) + "\n" for x in lines))
        stdout = io.StringIO()
        server = GatewayServer(gateway, InstanceRegistry(Path(td.name)), instance=1, stdin=stdin, stdout=stdout)
        return server, gateway, stdout

    def test_handshake_and_listing(self) -> None:
        server, _, stdout = self._server(
            [
                {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}},
                {"jsonrpc": "2.0", "method": "notifications/initialized"},
                {"jsonrpc": "2.0", "id": 2, "method": "tools/list"},
                {"jsonrpc": "2.0", "id": 3, "method": "bogus/method"},
            ]
        )
        self.assertEqual(server.serve(), 0)
        replies = [json.loads(ln) for ln in stdout.getvalue().splitlines()]
        self.assertEqual([r["id"] for r in replies], [1, 2, 3])
        self.assertEqual(replies[0]["result"]["serverInfo"]["name"], "wired-gateway")
        names = [t["name"] for t in replies[1]["result"]["tools"]]
        self.assertEqual(names, ["wait_for_message", "send_reply", "get_status", "migrate_instance"])
        self.assertEqual(replies[2]["error"]["code"], -32601)

    def test_tool_errors_become_is_error_results(self) -> None:
        server, _, _ = self._server([])
        resp = server.call_tool(7, {"name": "send_reply", "arguments": {"message": "hi", "channel_type": "overwatch"}})
        self.assertEqual(resp["id"], 7)
        self.assertTrue(resp["result"]["isError"])
        payload = json.loads(resp["result"]["content"][0]["text"])
        self.assertEqual(payload["error"]["code"], "channel_unbound")

    def test_blocking_wait_does_not_block_other_calls(self) -> None:
        server, gateway, _ = self._server([])
        results = {}

        t = threading.Thread(
            target=lambda: results.setdefault("wait", server.call_tool(1, {"name": "wait_for_message", "arguments": {}}))
        )
        t.start()
        deadline = time.monotonic() + 2
        while not gateway.queue("primary").waiting and time.monotonic() < deadline:
            time.sleep(0.01)

        status = server.call_tool(2, {"name": "get_status", "arguments": {}})
        self.assertNotIn("isError", status["result"])
        self.assertTrue(json.loads(status["result"]["content"][0]["text"])["waiting"]["primary"])

        gateway.route_inbound({"chat_id": "100", "text": "wake up", "from_user": "cooper"})
        t.join(timeout=2)
        payload = json.loads(results["wait"]["result"]["content"][0]["text"])
        self.assertEqual(payload["content"], "wake up")

    def test_cancelled_wait_frees_the_channel(self) -> None:
        server, gateway, stdout = self._server([])
        queue = gateway.queue("primary")

        server.dispatch(
            {"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {"name": "wait_for_message", "arguments": {}}}
        )
        deadline = time.monotonic() + 2
        while not queue.waiting and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertTrue(queue.waiting)

        server.dispatch({"jsonrpc": "2.0", "method": "notifications/cancelled", "params": {"requestId": 1}})
        server.dispatch(
            {
                "jsonrpc": "2.0",
                "id": 2,
                "method": "tools/call",
                "params": {"name": "wait_for_message", "arguments": {"timeout_seconds": 0.05}},
            }
        )
        server._pool.shutdown(wait=True)

        replies = [json.loads(ln) for ln in stdout.getvalue().splitlines()]
        self.assertEqual([r["id"] for r in replies], [2])
        self.assertNotIn("isError", replies[0]["result"])
        payload = json.loads(replies[0]["result"]["content"][0]["text"])
        self.assertEqual(payload, {"timeout": True, "channel_type": "primary"})
        self.assertFalse(queue.waiting)

    def test_cancel_of_unknown_request_is_ignored(self) -> None:
        server, _, _ = self._server([])
        self.assertFalse(server.cancel_request(99))
        self.assertFalse(server.cancel_request(None))
