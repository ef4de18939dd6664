"""
Project config managers. A manager owns the current ProjectConfig and swaps it
as a whole when a new datafile revision is published. Readers only hold the
lock long enough to copy the reference.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from collections.abc import Callable
from typing import Any, TypeAlias

import requests

from .errors import ConfigNotReadyError, InvalidDatafileError, TransportError
from .execution import ExecutionContext
from .metrics import datafile_sync_failures
from .notification import NotificationCenter, NotificationType
from .project_config import DictDatafile, ProjectConfig

logger = logging.getLogger(__name__)

DEFAULT_DATAFILE_URL_TEMPLATE = "https://cdn.optimizely.com/datafiles/%s.json"
DEFAULT_POLLING_INTERVAL = 5 * 60
DEFAULT_BLOCKING_TIMEOUT = 15
DEFAULT_REQUEST_TIMEOUT = 5
DEFAULT_RETRIES = 1
DEFAULT_RETRY_DELAY = 0.5

MODIFIED_SINCE_HEADER = "If-Modified-Since"
LAST_MODIFIED_HEADER = "Last-Modified"


class Requester:
    """
    A thin wrapper around requests.Session that retries transport errors and
    5xx responses with a fixed delay. retries is the total number of attempts
    made for one request. Responses with a status below 400 are returned;
    anything else raises TransportError.

    When bound to an execution context, cancelling it cuts the retry delays
    short and no further attempt is made.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        headers: dict[str, str] | None = None,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        session: requests.Session | None = None,
        execution_context: ExecutionContext | None = None,
    ):
        self.timeout = timeout
        self.retries = max(1, retries)
        self.headers = dict(headers or {})
        self.retry_delay = retry_delay
        self.execution_context = execution_context
        self._session = session or requests.Session()
        # Swapped out in tests.
        self._sleep = time.sleep

    def get(self, url: str, headers: dict[str, str] | None = None) -> requests.Response:
        return self._do("GET", url, headers=headers)

    def post(self, url: str, body: Any, headers: dict[str, str] | None = None) -> requests.Response:
        return self._do("POST", url, headers=headers, json=body)

    def close(self):
        self._session.close()

    def _wait(self, seconds: float):
        if self.execution_context is not None:
            self.execution_context.sleep(seconds)
        else:
            self._sleep(seconds)

    def _do(self, method: str, url: str, headers: dict[str, str] | None = None, **kwargs: Any) -> requests.Response:
        merged = {**self.headers, **(headers or {})}
        last_err: TransportError | None = None
        for attempt in range(self.retries):
            if attempt > 0:
                self._wait(self.retry_delay)
            if self.execution_context is not None and self.execution_context.cancelled:
                raise TransportError(f"{method} {url} cancelled")
            try:
                resp = self._session.request(method, url, headers=merged, timeout=self.timeout, **kwargs)
            except requests.RequestException as e:
                last_err = TransportError(f"{method} {url} failed: {e}")
                logger.warning("Request %s %s failed (attempt %d/%d): %s", method, url, attempt + 1, self.retries, e)
                continue
            if resp.status_code >= 500:
                last_err = TransportError(f"{method} {url} returned status {resp.status_code}", resp.status_code)
                logger.warning("Request %s %s returned %d (attempt %d/%d)", method, url, resp.status_code, attempt + 1, self.retries)
                continue
            if resp.status_code >= 400:
                raise TransportError(f"{method} {url} returned status {resp.status_code}", resp.status_code)
            return resp
        assert last_err is not None
        raise last_err


ConfigUpdateCallback: TypeAlias = Callable[[dict[str, Any]], None]


class ProjectConfigManager:
    """
    Common behaviour of config managers: thread-safe access to the current
    config and PROJECT_CONFIG_UPDATE notifications when it changes.
    """

    def __init__(self, notification_center: NotificationCenter | None = None):
        self.notification_center = notification_center or NotificationCenter()
        self._config_mu = threading.RLock()
        self._config: ProjectConfig | None = None
        self._ready = threading.Event()

    def get_config(self) -> ProjectConfig:
        """
        Return the current config. Raises ConfigNotReadyError if no config has
        been published yet. get_config is thread-safe.
        """
        with self._config_mu:
            config = self._config
        if config is None:
            raise ConfigNotReadyError("project config is not available")
        return config

    def _set_config(self, config: ProjectConfig):
        with self._config_mu:
            previous = self._config
            self._config = config
        self._ready.set()
        logger.info(
            "Published datafile revision %s (previous revision %s)",
            config.revision,
            previous.revision if previous is not None else None,
        )
        self.notification_center.send(
            NotificationType.PROJECT_CONFIG_UPDATE,
            {"type": "ProjectConfigUpdate", "revision": config.revision},
        )

    def on_config_update(self, callback: ConfigUpdateCallback) -> int:
        return self.notification_center.add_handler(NotificationType.PROJECT_CONFIG_UPDATE, callback)

    def remove_on_config_update(self, id: int):
        self.notification_center.remove_handler(id, NotificationType.PROJECT_CONFIG_UPDATE)

    def close(self):
        pass


class StaticConfigManager(ProjectConfigManager):
    """
    Publishes a single config, parsed from the given datafile or fetched once
    from url. Failures are logged; get_config then raises ConfigNotReadyError.
    """

    def __init__(
        self,
        datafile: bytes | str | DictDatafile | None = None,
        url: str | None = None,
        requester: Requester | None = None,
        notification_center: NotificationCenter | None = None,
    ):
        super().__init__(notification_center)
        if datafile is None and url is not None:
            try:
                datafile = (requester or Requester()).get(url).content
            except TransportError as e:
                logger.error("Unable to fetch datafile from %s: %s", url, e)
                return
        if datafile is None:
            logger.error("No datafile or url given to the static config manager")
            return
        try:
            config = ProjectConfig.from_datafile(datafile)
        except InvalidDatafileError as e:
            logger.error("Unable to parse datafile: %s", e)
            return
        self._set_config(config)

    @classmethod
    def from_sdk_key(
        cls,
        sdk_key: str,
        datafile_url_template: str = DEFAULT_DATAFILE_URL_TEMPLATE,
        **kwargs: Any,
    ) -> StaticConfigManager:
        return cls(url=datafile_url_template % sdk_key, **kwargs)


class PollingConfigManager(ProjectConfigManager):
    """
    Keeps the config in sync with the CDN. start() launches a background thread
    that syncs immediately and then every polling_interval seconds. A sync that
    fails keeps the current config.
    """

    def __init__(
        self,
        sdk_key: str,
        datafile_url_template: str = DEFAULT_DATAFILE_URL_TEMPLATE,
        initial_datafile: bytes | str | DictDatafile | None = None,
        polling_interval: float = DEFAULT_POLLING_INTERVAL,
        notification_center: NotificationCenter | None = None,
        requester: Requester | None = None,
        blocking_timeout: float = DEFAULT_BLOCKING_TIMEOUT,
        execution_context: ExecutionContext | None = None,
    ):
        super().__init__(notification_center)
        if polling_interval <= 0:
            raise ValueError("polling_interval must be positive")
        self.sdk_key = sdk_key
        self.datafile_url = datafile_url_template % sdk_key
        self.polling_interval = polling_interval
        self.blocking_timeout = blocking_timeout
        self.requester = requester or Requester()
        self.metrics: dict[str, int] = defaultdict(int)
        self._last_modified: str | None = None
        self._ctx = execution_context or ExecutionContext()
        if self.requester.execution_context is None:
            self.requester.execution_context = self._ctx
            self._ctx.on_cancel(self.requester.close)
        self._thread: threading.Thread | None = None
        self._closed = False
        self._lifecycle_mu = threading.Lock()

        if initial_datafile is not None:
            try:
                self._set_config(ProjectConfig.from_datafile(initial_datafile))
            except InvalidDatafileError as e:
                logger.error("Unable to parse initial datafile: %s", e)

    def _record_failure(self, reason: str, err: Exception):
        self.metrics[reason] += 1
        datafile_sync_failures.labels(sdk_key=self.sdk_key, reason=reason).inc()
        logger.error("Datafile sync from %s failed (%s): %s", self.datafile_url, reason, err)

    def sync_config(self):
        """
        Fetch the datafile once and publish it if its revision changed.
        """
        headers = {MODIFIED_SINCE_HEADER: self._last_modified} if self._last_modified else None
        try:
            resp = self.requester.get(self.datafile_url, headers)
        except TransportError as e:
            if self._ctx.cancelled:
                logger.debug("Datafile sync from %s cancelled", self.datafile_url)
                return
            self._record_failure("transport" if e.status_code is None else "status", e)
            return

        if resp.status_code == 304:
            logger.debug("Datafile at %s not modified", self.datafile_url)
            return

        try:
            config = ProjectConfig.from_datafile(resp.content)
        except InvalidDatafileError as e:
            self._record_failure("invalid_datafile", e)
            return

        last_modified = resp.headers.get(LAST_MODIFIED_HEADER)
        if last_modified:
            self._last_modified = last_modified

        with self._config_mu:
            current = self._config
        if current is not None and current.revision == config.revision:
            logger.debug("No datafile updates. Current revision: %s", current.revision)
            return
        self._set_config(config)

    def _run(self):
        while not self._ctx.cancelled:
            try:
                self.sync_config()
            except Exception:
                logger.exception("Error syncing datafile")
            if self._ctx.sleep(self.polling_interval):
                return

    def start(self) -> PollingConfigManager:
        with self._lifecycle_mu:
            if self._thread is not None or self._closed:
                return self
            self._thread = self._ctx.go(self._run, name=f"flagkit-datafile-{self.sdk_key}")
        return self

    def get_config(self) -> ProjectConfig:
        """
        Return the current config, waiting up to blocking_timeout seconds for
        the first one.
        """
        if not self._ready.wait(self.blocking_timeout):
            logger.warning("Timed out after %ss waiting for the first datafile", self.blocking_timeout)
        return super().get_config()

    def close(self):
        """
        Stop polling. A sync in flight is abandoned at its next retry; close
        waits at most one request timeout for it.
        """
        with self._lifecycle_mu:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
        self._ctx.cancel()
        if thread is not None:
            thread.join(self.requester.timeout + 1)
