import threading
import time
import unittest


def _msg(body: str, kind: str = "primary"):
    from wired.contracts.v1 import ChatMessage

    return ChatMessage(sender="cooper", sender_id="1", body=body, channel_kind=kind)


class TestChannelQueue(unittest.TestCase):
    def test_pending_messages_come_out_in_arrival_order(self) -> None:
        from wired.kernel.channels import ChannelQueue

        q = ChannelQueue("primary")
        self.assertFalse(q.deliver(_msg("one")))
        self.assertFalse(q.deliver(_msg("two")))
        self.assertEqual(len(q), 2)

        self.assertEqual(q.wait(0.1).body, "one")
        self.assertEqual(q.wait(0.1).body, "two")
        self.assertEqual(len(q), 0)

    def test_waiter_is_resolved_directly(self) -> None:
        from wired.kernel.channels import ChannelQueue

        q = ChannelQueue("primary")
        results = []

        t = threading.Thread(target=lambda: results.append(q.wait(5)))
        t.start()
        deadline = time.monotonic() + 2
        while not q.waiting and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertTrue(q.waiting)

        self.assertTrue(q.deliver(_msg("hello")))
        t.join(timeout=2)
        self.assertEqual(results[0].body, "hello")
        # handed over, never queued
        self.assertEqual(len(q), 0)
        self.assertFalse(q.waiting)

    def test_timeout_returns_timeout_result(self) -> None:
        from wired.kernel.channels import ChannelQueue, WaitTimeout

        q = ChannelQueue("overwatch")
        result = q.wait(0.05)
        self.assertIsInstance(result, WaitTimeout)
        self.assertEqual(result.to_wire(), {"timeout": True, "channel_type": "overwatch"})
        self.assertFalse(q.waiting)

        # a message arriving after the timeout is kept for the next wait
        q.deliver(_msg("late", "overwatch"))
        self.assertEqual(q.wait(0.05).body, "late")

    def test_second_concurrent_wait_is_rejected(self) -> None:
        from wired.kernel.channels import ChannelQueue
        from wired.kernel.errors import AlreadyWaiting

        q = ChannelQueue("primary")
        t = threading.Thread(target=lambda: q.wait(5), daemon=True)
        t.start()
        deadline = time.monotonic() + 2
        while not q.waiting and time.monotonic() < deadline:
            time.sleep(0.01)

        with self.assertRaises(AlreadyWaiting):
            q.wait(0.01)

        self.assertTrue(q.cancel_waiter())
        t.join(timeout=2)
        self.assertFalse(t.is_alive())

    def test_requeue_goes_ahead_of_newer_messages(self) -> None:
        from wired.contracts.v1 import ChatMessage
        from wired.kernel.channels import ChannelQueue

        q = ChannelQueue("primary")
        q.deliver(_msg("newer"))
        q.requeue(ChatMessage.from_wire(_msg("older").to_wire()))
        self.assertEqual(q.wait(0.1).body, "older")
        self.assertEqual(q.wait(0.1).body, "newer")


class TestChannelHelpers(unittest.TestCase):
    def test_normalize_kind_accepts_aliases(self) -> None:
        from wired.kernel.channels import normalize_kind
        from wired.kernel.errors import UnknownChannel

        self.assertEqual(normalize_kind("TARS"), "primary")
        self.assertEqual(normalize_kind("romilly"), "overwatch")
        self.assertEqual(normalize_kind(""), "primary")
        self.assertEqual(normalize_kind(None, default="overwatch"), "overwatch")
        with self.assertRaises(UnknownChannel):
            normalize_kind("general")

    def test_chunk_text(self) -> None:
        from wired.kernel.channels import chunk_text

        chunks = chunk_text("x" * 5000)
        self.assertEqual([len(c) for c in chunks], [1900, 1900, 1200])
        self.assertEqual(chunk_text(""), [])
        self.assertEqual(chunk_text("abc", 1900), ["abc"])
