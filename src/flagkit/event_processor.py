"""
Event processors queue user events and hand batches of them to a dispatcher.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from abc import abstractmethod

from .config_manager import Requester
from .errors import TransportError
from .events import DEFAULT_EVENT_ENDPOINT, LogEvent, UserEvent, build_log_event
from .execution import ExecutionContext
from .metrics import events_dispatched, events_dropped
from .notification import NotificationCenter, NotificationType

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_QUEUE_SIZE = 1000
DEFAULT_FLUSH_INTERVAL = 30


class EventDispatcher:
    """
    Sends a serialized batch to the ingest endpoint. Returns True on success;
    may also raise on failure.
    """

    @abstractmethod
    def dispatch_event(self, log_event: LogEvent) -> bool: ...


class HTTPEventDispatcher(EventDispatcher):
    def __init__(self, requester: Requester | None = None):
        self.requester = requester or Requester()

    def dispatch_event(self, log_event: LogEvent) -> bool:
        resp = self.requester.post(log_event.endpoint, log_event.params, log_event.headers)
        if not 200 <= resp.status_code < 300:
            raise TransportError(f"event dispatch returned status {resp.status_code}", resp.status_code)
        return True


class EventProcessor:
    @abstractmethod
    def process(self, user_event: UserEvent) -> bool: ...

    def flush(self):
        pass

    def close(self):
        pass


def _dispatch(dispatcher: EventDispatcher, log_event: LogEvent, notification_center: NotificationCenter | None, size: int):
    try:
        ok = dispatcher.dispatch_event(log_event)
    except Exception:
        logger.exception("Error dispatching batch of %d events", size)
        events_dispatched.labels(outcome="failure").inc()
        return
    if not ok:
        logger.error("Dispatcher rejected batch of %d events", size)
        events_dispatched.labels(outcome="failure").inc()
        return
    events_dispatched.labels(outcome="success").inc()
    logger.info("Dispatched batch of %d events to %s", size, log_event.endpoint)
    if notification_center is not None:
        notification_center.send(NotificationType.LOG_EVENT, log_event)


class ForwardingEventProcessor(EventProcessor):
    """
    Dispatches every event synchronously, on the caller's thread.
    """

    def __init__(
        self,
        dispatcher: EventDispatcher | None = None,
        notification_center: NotificationCenter | None = None,
        endpoint: str = DEFAULT_EVENT_ENDPOINT,
    ):
        self.dispatcher = dispatcher or HTTPEventDispatcher()
        self.notification_center = notification_center
        self.endpoint = endpoint

    def process(self, user_event: UserEvent) -> bool:
        _dispatch(self.dispatcher, build_log_event([user_event], self.endpoint), self.notification_center, 1)
        return True


_FLUSH = object()
_SHUTDOWN = object()


class BatchEventProcessor(EventProcessor):
    """
    Queues events and dispatches them in batches from a single worker thread.

    A batch holds at most batch_size events, all with the same project and
    revision. It is dispatched when it is full, when an event with a different
    project or revision arrives, when flush_interval seconds have passed since
    its first event, on flush() and on close(). process() never blocks: when
    the queue is full the event is dropped.
    """

    def __init__(
        self,
        dispatcher: EventDispatcher | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        notification_center: NotificationCenter | None = None,
        endpoint: str = DEFAULT_EVENT_ENDPOINT,
        execution_context: ExecutionContext | None = None,
        start: bool = True,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if queue_size < batch_size:
            raise ValueError("queue_size must be at least batch_size")
        if flush_interval <= 0:
            raise ValueError("flush_interval must be positive")
        self.dispatcher = dispatcher or HTTPEventDispatcher()
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.notification_center = notification_center
        self.endpoint = endpoint
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._batch: list[UserEvent] = []
        self._deadline: float | None = None
        self._ctx = execution_context or ExecutionContext()
        self._lifecycle_mu = threading.Lock()
        self._thread: threading.Thread | None = None
        self._closed = False
        if start:
            self.start()

    def start(self) -> BatchEventProcessor:
        with self._lifecycle_mu:
            if self._thread is not None or self._closed:
                return self
            self._thread = self._ctx.go(self._run, name="flagkit-event-processor")
        return self

    def process(self, user_event: UserEvent) -> bool:
        with self._lifecycle_mu:
            if self._closed:
                logger.warning("Event processor is closed, dropping event %s", user_event.uuid)
                events_dropped.inc()
                return False
            try:
                self._queue.put_nowait(user_event)
            except queue.Full:
                logger.warning("Event queue is full, dropping event %s", user_event.uuid)
                events_dropped.inc()
                return False
        return True

    def flush(self):
        with self._lifecycle_mu:
            if self._closed:
                return
            try:
                self._queue.put_nowait(_FLUSH)
            except queue.Full:
                logger.warning("Event queue is full, skipping flush")

    def close(self, timeout: float | None = None):
        """
        Dispatch everything queued so far and stop the worker. close is
        idempotent. Events accepted by process() before close are dispatched;
        later ones are rejected.
        """
        with self._lifecycle_mu:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
        if thread is None:
            return
        while thread.is_alive():
            try:
                self._queue.put(_SHUTDOWN, timeout=0.1)
                break
            except queue.Full:
                continue
        else:
            dropped = self._queue.qsize()
            logger.error("Event processor worker is not running, dropping %d queued events", dropped)
            events_dropped.inc(dropped)
            return
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("Event processor did not stop within %ss", timeout)

    def _run(self):
        while True:
            timeout = None
            if self._deadline is not None:
                timeout = max(0.0, self._deadline - time.monotonic())
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                self._flush_batch()
                continue

            if item is _SHUTDOWN:
                self._flush_batch()
                return
            if item is _FLUSH:
                self._flush_batch()
                continue
            self._add(item)
            if self._deadline is not None and time.monotonic() >= self._deadline:
                self._flush_batch()

    def _add(self, e: UserEvent):
        if self._batch and self._batch[0].context.batch_key() != e.context.batch_key():
            self._flush_batch()
        if not self._batch:
            self._deadline = time.monotonic() + self.flush_interval
        self._batch.append(e)
        if len(self._batch) >= self.batch_size:
            self._flush_batch()

    def _flush_batch(self):
        self._deadline = None
        if not self._batch:
            return
        batch, self._batch = self._batch, []
        _dispatch(self.dispatcher, build_log_event(batch, self.endpoint), self.notification_center, len(batch))
