from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class ExecutionContext:
    """
    A cancellable handle shared by the background workers of one SDK instance.
    Workers started with go() are daemon threads; cancel() asks them to stop
    at their next suspension point and wait() joins them.
    """

    def __init__(self):
        self._cancelled = threading.Event()
        self._threads_mu = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._on_cancel: list[Callable[[], None]] = []

    def go(self, target: Callable[[], None], name: str | None = None) -> threading.Thread:
        def _run():
            try:
                target()
            except Exception:
                logger.exception("Background worker %s crashed", name or target)

        t = threading.Thread(target=_run, name=name, daemon=True)
        with self._threads_mu:
            self._threads.append(t)
        t.start()
        return t

    def on_cancel(self, callback: Callable[[], None]):
        """
        Run callback when the context is cancelled, or right away if it
        already is. Use it to interrupt blocking calls a worker is stuck in.
        """
        with self._threads_mu:
            if not self._cancelled.is_set():
                self._on_cancel.append(callback)
                return
        self._run_callback(callback)

    def cancel(self):
        with self._threads_mu:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            callbacks, self._on_cancel = self._on_cancel, []
        for callback in callbacks:
            self._run_callback(callback)

    @staticmethod
    def _run_callback(callback: Callable[[], None]):
        try:
            callback()
        except Exception:
            logger.exception("Error in cancel callback %s", callback)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def sleep(self, seconds: float) -> bool:
        """
        Sleep for the given number of seconds or until cancelled. Returns True
        if the context was cancelled.
        """
        return self._cancelled.wait(seconds)

    def wait(self, timeout: float | None = None) -> bool:
        """
        Join every thread started by go(). Returns False if any thread was
        still alive when the timeout expired.
        """
        with self._threads_mu:
            threads = list(self._threads)
        current = threading.current_thread()
        for t in threads:
            if t is not current:
                t.join(timeout)
        return not any(t.is_alive() for t in threads if t is not current)
