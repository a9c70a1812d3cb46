import json
import sys
import time
import unittest


def _wait_until(pred, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.02)
    return pred()


class TestProcessSupervisor(unittest.TestCase):
    def test_exited_child_is_restarted_after_delay(self) -> None:
        from wired.runners.process import ChildSpec, ManualScheduler, ProcessSupervisor

        sched = ManualScheduler()
        sup = ProcessSupervisor(sched)
        self.addCleanup(sup.stop_all, 0.5)
        sup.register(ChildSpec(name="crashy", argv_factory=lambda: [sys.executable, "-c", "import sys; sys.exit(1)"]))

        handle = sup.spawn("crashy")
        self.assertEqual(handle.spawn_count, 1)
        self.assertTrue(_wait_until(lambda: len(sched.pending) == 1))
        self.assertEqual(sched.pending[0][0], 5.0)
        self.assertEqual(handle.state, "restarting")
        self.assertEqual(handle.last_exit_code, 1)

        self.assertEqual(sched.run_pending(), 1)
        self.assertEqual(handle.restart_count, 1)
        self.assertEqual(handle.spawn_count, 2)

    def test_spawn_failure_schedules_restart(self) -> None:
        from wired.runners.process import ChildSpec, ManualScheduler, ProcessSupervisor

        sched = ManualScheduler()
        sup = ProcessSupervisor(sched)
        sup.register(ChildSpec(name="ghost", argv_factory=lambda: ["/nonexistent/wired-binary"], restart_delay_s=1.0))
        handle = sup.spawn("ghost")
        self.assertEqual(handle.state, "restarting")
        self.assertIsNone(handle.pid)
        self.assertEqual(len(sched.pending), 1)

        sup.stop_all(0.1)
        self.assertEqual(sched.pending, [])
        self.assertEqual(handle.state, "stopped")

    def test_inject_writes_stream_json_user_turn(self) -> None:
        from wired.runners.process import ChildSpec, ManualScheduler, ProcessSupervisor

        code = "import sys\nfor line in sys.stdin:\n    print(line.strip(), flush=True)\n"
        outputs = []
        sched = ManualScheduler()
        sup = ProcessSupervisor(sched, on_output=lambda name, payload: outputs.append(payload))
        self.addCleanup(sup.stop_all, 0.5)
        sup.register(
            ChildSpec(
                name="llm",
                argv_factory=lambda: [sys.executable, "-c", code],
                output="stream-json",
                stdin=True,
            )
        )
        sup.spawn("llm")

        self.assertTrue(sup.inject_input("llm", "romilly", "course correct"))
        self.assertTrue(sup.inject_input("llm", "", "Start now."))
        self.assertTrue(_wait_until(lambda: len(outputs) == 2))

        self.assertEqual(outputs[0]["type"], "user")
        self.assertEqual(outputs[0]["message"], {"role": "user", "content": "[ROMILLY]: course correct"})
        self.assertEqual(outputs[1]["message"]["content"], "Start now.")
        self.assertIsNotNone(sup.pids().get("llm"))

    def test_inject_into_missing_child_is_dropped(self) -> None:
        from wired.runners.process import ManualScheduler, ProcessSupervisor

        sup = ProcessSupervisor(ManualScheduler())
        self.assertFalse(sup.inject_input("llm", "external", "hello"))

    def test_stop_all_terminates_and_does_not_restart(self) -> None:
        from wired.runners.process import ChildSpec, ManualScheduler, ProcessSupervisor

        sched = ManualScheduler()
        sup = ProcessSupervisor(sched)
        sup.register(ChildSpec(name="sleeper", argv_factory=lambda: [sys.executable, "-c", "import time; time.sleep(60)"]))
        handle = sup.spawn("sleeper")
        self.assertEqual(handle.state, "running")

        sup.stop_all(2.0)
        self.assertTrue(sup.stopping)
        self.assertIsNone(sup.pids().get("sleeper"))
        self.assertTrue(_wait_until(lambda: sup.snapshot()["sleeper"]["state"] == "stopped"))
        self.assertEqual(sched.pending, [])

    def test_child_started_during_stop_all_is_killed(self) -> None:
        import subprocess

        from wired.runners.process import ChildSpec, ManualScheduler, ProcessSupervisor

        started = []

        def popen(*args, **kwargs):
            # stop_all lands while this child is still being created
            sup.stop_all(0.1)
            proc = subprocess.Popen(*args, **kwargs)
            started.append(proc)
            return proc

        sched = ManualScheduler()
        sup = ProcessSupervisor(sched, popen=popen)
        sup.register(ChildSpec(name="late", argv_factory=lambda: [sys.executable, "-c", "import time; time.sleep(60)"]))

        handle = sup.spawn("late")
        self.assertEqual(handle.state, "stopped")
        self.assertIsNone(handle.pid)
        self.assertEqual(sup.pids(), {})
        self.assertEqual(len(started), 1)
        self.assertTrue(_wait_until(lambda: started[0].poll() is not None, timeout=5.0))
        self.assertEqual(sched.pending, [])


class TestAssistantText(unittest.TestCase):
    def test_extracts_text_parts(self) -> None:
        from wired.runners.process import assistant_text

        payload = json.loads(
            '{"type":"assistant","message":{"content":[{"type":"text","text":"hello"},'
            '{"type":"tool_use","name":"send_reply"},{"type":"text","text":"world"}]}}'
        )
        self.assertEqual(assistant_text(payload), "hello\nworld")
        self.assertEqual(assistant_text({"type": "result"}), "")
