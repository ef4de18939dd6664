from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from enum import StrEnum
from typing import Any, TypeAlias

logger = logging.getLogger(__name__)

Handler: TypeAlias = Callable[[Any], None]


class NotificationType(StrEnum):
    DECISION = "decision"
    TRACK = "track"
    PROJECT_CONFIG_UPDATE = "project_config_update"
    LOG_EVENT = "log_event"


class NotificationCenter:
    """
    Per SDK instance publish/subscribe registry. Handlers are invoked
    synchronously on the sender's thread, in registration order. A handler that
    raises is logged and does not prevent the remaining handlers from running.
    NotificationCenter is thread-safe.
    """

    def __init__(self):
        self._mu = threading.Lock()
        self._ids = itertools.count(1)
        self._handlers: dict[NotificationType, dict[int, Handler]] = {t: {} for t in NotificationType}

    def add_handler(self, kind: NotificationType, handler: Handler) -> int:
        if not callable(handler):
            raise TypeError(f"handler must be callable, not {type(handler).__name__}")
        kind = NotificationType(kind)
        with self._mu:
            id = next(self._ids)
            self._handlers[kind][id] = handler
        return id

    def remove_handler(self, id: int, kind: NotificationType):
        """
        Remove the handler registered under id. Removing an id that is not
        registered for kind does nothing.
        """
        kind = NotificationType(kind)
        with self._mu:
            removed = self._handlers[kind].pop(id, None)
        if removed is None:
            logger.debug("No %s handler with id %s to remove", kind, id)

    def clear(self, kind: NotificationType | None = None):
        with self._mu:
            if kind is None:
                for handlers in self._handlers.values():
                    handlers.clear()
            else:
                self._handlers[NotificationType(kind)].clear()

    def handler_count(self, kind: NotificationType) -> int:
        with self._mu:
            return len(self._handlers[NotificationType(kind)])

    def send(self, kind: NotificationType, payload: Any):
        kind = NotificationType(kind)
        with self._mu:
            handlers = list(self._handlers[kind].values())
        for h in handlers:
            try:
                h(payload)
            except Exception:
                logger.exception("Error in %s notification handler", kind)
