import threading
import unittest

from flagkit.execution import ExecutionContext
from flagkit.notification import NotificationCenter, NotificationType


class TestNotificationCenter(unittest.TestCase):
    def test_ids_are_unique_and_increasing(self):
        nc = NotificationCenter()
        ids = [
            nc.add_handler(NotificationType.DECISION, print),
            nc.add_handler(NotificationType.TRACK, print),
            nc.add_handler("decision", print),
        ]
        self.assertEqual(ids, [1, 2, 3])
        self.assertEqual(nc.handler_count(NotificationType.DECISION), 2)
        self.assertEqual(nc.handler_count(NotificationType.TRACK), 1)

    def test_handlers_run_in_registration_order(self):
        nc = NotificationCenter()
        calls = []
        nc.add_handler(NotificationType.TRACK, lambda p: calls.append(("first", p)))
        nc.add_handler(NotificationType.TRACK, lambda p: calls.append(("second", p)))
        nc.add_handler(NotificationType.DECISION, lambda p: calls.append(("other", p)))
        nc.send(NotificationType.TRACK, {"event_key": "purchase"})
        self.assertEqual(calls, [("first", {"event_key": "purchase"}), ("second", {"event_key": "purchase"})])

    def test_failing_handler_does_not_stop_others(self):
        nc = NotificationCenter()
        calls = []

        def boom(payload):
            raise RuntimeError("boom")

        nc.add_handler(NotificationType.LOG_EVENT, boom)
        nc.add_handler(NotificationType.LOG_EVENT, calls.append)
        with self.assertLogs("flagkit.notification", level="ERROR") as logs:
            nc.send(NotificationType.LOG_EVENT, 1)
        self.assertEqual(calls, [1])
        self.assertIn("Error in log_event notification handler", logs.output[0])

    def test_remove(self):
        nc = NotificationCenter()
        calls = []
        id = nc.add_handler(NotificationType.DECISION, calls.append)
        nc.remove_handler(id, NotificationType.DECISION)
        nc.send(NotificationType.DECISION, 1)
        self.assertEqual(calls, [])

    def test_remove_unknown_is_a_noop(self):
        nc = NotificationCenter()
        calls = []
        removed = nc.add_handler(NotificationType.DECISION, calls.append)
        nc.remove_handler(removed, NotificationType.DECISION)
        other = nc.add_handler(NotificationType.TRACK, calls.append)
        cases = [
            (removed, NotificationType.DECISION),
            (42, NotificationType.DECISION),
            (other, NotificationType.DECISION),
        ]
        for handler_id, kind in cases:
            with self.subTest(f"{handler_id}, {kind}"):
                nc.remove_handler(handler_id, kind)
                self.assertEqual(nc.handler_count(NotificationType.TRACK), 1)
                self.assertEqual(nc.handler_count(NotificationType.DECISION), 0)
        nc.send(NotificationType.TRACK, "still registered")
        self.assertEqual(calls, ["still registered"])

    def test_clear(self):
        nc = NotificationCenter()
        for kind in NotificationType:
            nc.add_handler(kind, print)
        nc.clear(NotificationType.TRACK)
        self.assertEqual(nc.handler_count(NotificationType.TRACK), 0)
        self.assertEqual(nc.handler_count(NotificationType.DECISION), 1)
        nc.clear()
        self.assertEqual(sum(nc.handler_count(k) for k in NotificationType), 0)

    def test_invalid_arguments(self):
        nc = NotificationCenter()
        with self.assertRaisesRegex(TypeError, "handler must be callable"):
            nc.add_handler(NotificationType.TRACK, "not a function")
        with self.assertRaises(ValueError):
            nc.add_handler("unknown", print)

    def test_handler_may_modify_registry(self):
        nc = NotificationCenter()
        calls = []
        ids = []

        def once(payload):
            calls.append(payload)
            nc.remove_handler(ids[0], NotificationType.TRACK)

        ids.append(nc.add_handler(NotificationType.TRACK, once))
        nc.send(NotificationType.TRACK, "a")
        nc.send(NotificationType.TRACK, "b")
        self.assertEqual(calls, ["a"])


class TestExecutionContext(unittest.TestCase):
    def test_cancel_wakes_sleepers(self):
        ctx = ExecutionContext()
        woke = threading.Event()

        def worker():
            while not ctx.sleep(60):
                pass
            woke.set()

        ctx.go(worker, name="sleeper")
        self.assertFalse(ctx.cancelled)
        ctx.cancel()
        self.assertTrue(ctx.wait(5))
        self.assertTrue(woke.is_set())
        self.assertTrue(ctx.cancelled)
        self.assertTrue(ctx.sleep(60))

    def test_crashing_worker_is_logged(self):
        ctx = ExecutionContext()

        def crash():
            raise RuntimeError("boom")

        with self.assertLogs("flagkit.execution", level="ERROR") as logs:
            ctx.go(crash, name="crasher")
            self.assertTrue(ctx.wait(5))
        self.assertIn("Background worker crasher crashed", logs.output[0])

    def test_wait_timeout(self):
        ctx = ExecutionContext()
        release = threading.Event()
        ctx.go(lambda: release.wait(5), name="blocked")
        self.assertFalse(ctx.wait(0.05))
        release.set()
        self.assertTrue(ctx.wait(5))

    def test_on_cancel(self):
        ctx = ExecutionContext()
        calls = []

        def boom():
            raise RuntimeError("boom")

        ctx.on_cancel(lambda: calls.append("first"))
        ctx.on_cancel(boom)
        ctx.on_cancel(lambda: calls.append("second"))
        self.assertEqual(calls, [])
        with self.assertLogs("flagkit.execution", level="ERROR") as logs:
            ctx.cancel()
        self.assertEqual(calls, ["first", "second"])
        self.assertIn("Error in cancel callback", logs.output[0])

        # Callbacks run once; late registrations run right away.
        ctx.cancel()
        ctx.on_cancel(lambda: calls.append("late"))
        self.assertEqual(calls, ["first", "second", "late"])


if __name__ == "__main__":
    unittest.main()
