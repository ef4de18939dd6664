import threading
import time
import unittest
from unittest import mock

from flagkit.entities import UserContext
from flagkit.errors import TransportError
from flagkit.event_processor import BatchEventProcessor, ForwardingEventProcessor, HTTPEventDispatcher
from flagkit.events import LogEvent, create_conversion_event, create_impression_event
from flagkit.notification import NotificationCenter, NotificationType

from tests.helpers import RecordingDispatcher, fake_response, load_config

CONFIG = load_config()
NEXT_REVISION_CONFIG = load_config(revision="43")


def impression(config=CONFIG, user_id="u1"):
    exp = config.get_experiment_by_key("exp_ab")
    return create_impression_event(config, exp, exp.get_variation_by_key("A"), UserContext(user_id), "", "exp_ab", "experiment", True)


def conversion(config=CONFIG, user_id="u1"):
    return create_conversion_event(config, config.get_event_by_key("purchase"), UserContext(user_id), {"revenue": 1})


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def batch_sizes(dispatcher):
    return [len(e.params["visitors"]) for e in dispatcher.log_events]


class TestBatchEventProcessor(unittest.TestCase):
    def test_flush_interval(self):
        dispatcher = RecordingDispatcher()
        p = BatchEventProcessor(dispatcher, batch_size=10, flush_interval=0.1, start=False)
        self.addCleanup(p.close)
        for i in range(4):
            self.assertTrue(p.process(impression(user_id=f"u{i}")))
            self.assertTrue(p.process(conversion(user_id=f"u{i}")))
        p.start()
        self.assertTrue(wait_for(lambda: len(dispatcher.log_events) == 1))
        time.sleep(0.2)
        self.assertEqual(batch_sizes(dispatcher), [8])
        self.assertEqual(dispatcher.log_events[0].params["revision"], "42")

    def test_revision_change_starts_a_new_batch(self):
        dispatcher = RecordingDispatcher()
        p = BatchEventProcessor(dispatcher, batch_size=10, flush_interval=0.1, start=False)
        self.addCleanup(p.close)
        p.process(impression())
        p.process(conversion())
        for _ in range(3):
            p.process(impression(NEXT_REVISION_CONFIG))
            p.process(conversion(NEXT_REVISION_CONFIG))
        p.start()
        self.assertTrue(wait_for(lambda: len(dispatcher.log_events) == 2))
        self.assertEqual(batch_sizes(dispatcher), [2, 6])
        self.assertEqual([e.params["revision"] for e in dispatcher.log_events], ["42", "43"])

    def test_full_batches_are_dispatched(self):
        dispatcher = RecordingDispatcher()
        p = BatchEventProcessor(dispatcher, batch_size=3, flush_interval=60)
        for _ in range(7):
            p.process(impression())
        self.assertTrue(wait_for(lambda: len(dispatcher.log_events) == 2))
        self.assertEqual(batch_sizes(dispatcher), [3, 3])
        p.close(5)
        self.assertEqual(batch_sizes(dispatcher), [3, 3, 1])

    def test_flush(self):
        dispatcher = RecordingDispatcher()
        p = BatchEventProcessor(dispatcher, batch_size=10, flush_interval=60)
        self.addCleanup(p.close)
        p.process(impression())
        p.process(conversion())
        p.flush()
        self.assertTrue(wait_for(lambda: len(dispatcher.log_events) == 1))
        self.assertEqual(batch_sizes(dispatcher), [2])

    def test_queue_overflow_drops_events(self):
        dispatcher = RecordingDispatcher()
        p = BatchEventProcessor(dispatcher, batch_size=1, queue_size=2, flush_interval=60, start=False)
        self.assertTrue(p.process(impression()))
        self.assertTrue(p.process(impression()))
        with self.assertLogs("flagkit.event_processor", level="WARNING"):
            self.assertFalse(p.process(impression()))
        p.start()
        p.close(5)
        self.assertEqual(batch_sizes(dispatcher), [1, 1])

    def test_close(self):
        dispatcher = RecordingDispatcher()
        p = BatchEventProcessor(dispatcher, flush_interval=60)
        p.process(impression())
        p.close(5)
        self.assertEqual(batch_sizes(dispatcher), [1])
        p.close(5)
        with self.assertLogs("flagkit.event_processor", level="WARNING"):
            self.assertFalse(p.process(impression()))
        p.flush()
        self.assertEqual(batch_sizes(dispatcher), [1])

    def test_close_before_start(self):
        dispatcher = RecordingDispatcher()
        p = BatchEventProcessor(dispatcher, start=False)
        p.close()
        p.start()
        self.assertEqual(p._ctx._threads, [])

    def test_log_event_notification(self):
        nc = NotificationCenter()
        sent = []
        nc.add_handler(NotificationType.LOG_EVENT, sent.append)
        dispatcher = RecordingDispatcher()
        p = BatchEventProcessor(dispatcher, notification_center=nc, endpoint="https://events.example.com")
        p.process(impression())
        p.close(5)
        self.assertEqual(len(sent), 1)
        self.assertIs(sent[0], dispatcher.log_events[0])
        self.assertEqual(sent[0].endpoint, "https://events.example.com")

    def test_dispatch_failures(self):
        raising = mock.Mock()
        raising.dispatch_event.side_effect = TransportError("down")
        cases = [
            (RecordingDispatcher(result=False), "Dispatcher rejected batch of 1 events"),
            (raising, "Error dispatching batch of 1 events"),
        ]
        for dispatcher, msg in cases:
            with self.subTest(msg):
                nc = NotificationCenter()
                sent = []
                nc.add_handler(NotificationType.LOG_EVENT, sent.append)
                p = BatchEventProcessor(dispatcher, notification_center=nc)
                with self.assertLogs("flagkit.event_processor", level="ERROR") as logs:
                    p.process(impression())
                    p.close(5)
                self.assertIn(msg, logs.output[0])
                self.assertEqual(sent, [])

    def test_invalid_arguments(self):
        cases = [
            ({"batch_size": 0}, "batch_size must be positive"),
            ({"batch_size": 10, "queue_size": 5}, "queue_size must be at least batch_size"),
            ({"flush_interval": 0}, "flush_interval must be positive"),
        ]
        for kwargs, msg in cases:
            with self.subTest(msg):
                with self.assertRaisesRegex(ValueError, msg):
                    BatchEventProcessor(RecordingDispatcher(), start=False, **kwargs)

    def test_concurrent_producers(self):
        dispatcher = RecordingDispatcher()
        p = BatchEventProcessor(dispatcher, batch_size=10, flush_interval=60)

        def produce():
            for _ in range(25):
                p.process(impression())

        threads = [threading.Thread(target=produce) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        p.close(5)
        self.assertEqual(sum(batch_sizes(dispatcher)), 100)
        self.assertTrue(all(size <= 10 for size in batch_sizes(dispatcher)))

    def test_flush_does_not_block_on_a_full_queue(self):
        dispatcher = RecordingDispatcher()
        p = BatchEventProcessor(dispatcher, batch_size=1, queue_size=1, flush_interval=60, start=False)
        self.assertTrue(p.process(impression()))
        start = time.monotonic()
        with self.assertLogs("flagkit.event_processor", level="WARNING") as logs:
            p.flush()
        self.assertLess(time.monotonic() - start, 1)
        self.assertIn("Event queue is full, skipping flush", logs.output[0])
        p.start()
        p.close(5)
        self.assertEqual(batch_sizes(dispatcher), [1])

    def test_close_with_dead_worker(self):
        dispatcher = RecordingDispatcher()
        with mock.patch.object(BatchEventProcessor, "_run", side_effect=RuntimeError("boom")):
            with self.assertLogs("flagkit.execution", level="ERROR"):
                p = BatchEventProcessor(dispatcher, batch_size=1, queue_size=1, flush_interval=60)
                p._thread.join(5)
        self.assertTrue(p.process(impression()))
        start = time.monotonic()
        with self.assertLogs("flagkit.event_processor", level="ERROR") as logs:
            p.close(5)
        self.assertLess(time.monotonic() - start, 1)
        self.assertIn("worker is not running, dropping 1 queued events", logs.output[0])
        self.assertEqual(dispatcher.log_events, [])

    def test_events_accepted_during_close_are_dispatched(self):
        dispatcher = RecordingDispatcher()
        p = BatchEventProcessor(dispatcher, batch_size=10, flush_interval=60)
        accepted = []
        go = threading.Event()

        def produce():
            go.wait()
            for _ in range(200):
                accepted.append(p.process(impression()))

        threads = [threading.Thread(target=produce) for _ in range(4)]
        for t in threads:
            t.start()
        with mock.patch("flagkit.event_processor.logger"):
            go.set()
            p.close(5)
            for t in threads:
                t.join()
        self.assertEqual(sum(batch_sizes(dispatcher)), accepted.count(True))
        self.assertFalse(p.process(impression()))


class TestForwardingEventProcessor(unittest.TestCase):
    def test_dispatches_synchronously(self):
        dispatcher = RecordingDispatcher()
        nc = NotificationCenter()
        sent = []
        nc.add_handler(NotificationType.LOG_EVENT, sent.append)
        p = ForwardingEventProcessor(dispatcher, notification_center=nc)
        self.assertTrue(p.process(conversion()))
        self.assertEqual(batch_sizes(dispatcher), [1])
        self.assertEqual(len(sent), 1)


class TestHTTPEventDispatcher(unittest.TestCase):
    def test_dispatch(self):
        requester = mock.Mock()
        requester.post.return_value = fake_response(204)
        log_event = LogEvent("https://events.example.com", {"visitors": []})
        self.assertTrue(HTTPEventDispatcher(requester).dispatch_event(log_event))
        requester.post.assert_called_once_with(
            "https://events.example.com", {"visitors": []}, {"Content-Type": "application/json"}
        )

    def test_non_2xx(self):
        requester = mock.Mock()
        requester.post.return_value = fake_response(302)
        with self.assertRaisesRegex(TransportError, "status 302") as cm:
            HTTPEventDispatcher(requester).dispatch_event(LogEvent("https://events.example.com", {}))
        self.assertEqual(cm.exception.status_code, 302)


if __name__ == "__main__":
    unittest.main()
