"""
Contextual multi-armed bandit decisions.

CMAB experiments have no traffic allocation of their own; their variation is
predicted remotely from a filtered set of user attributes. Predictions are
cached per (user, rule) and re-fetched when the filtered attributes change.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Iterable

import mmh3
import requests

from .entities import CmabDecision, UserContext
from .errors import CmabFetchError, CmabFetchFailedError, NotFoundError
from .metrics import cmab_fetches

if TYPE_CHECKING:
    from .project_config import ProjectConfig

logger = logging.getLogger(__name__)

DEFAULT_CMAB_ENDPOINT = "https://prediction.cmab.optimizely.com/predict/%s"
DEFAULT_CMAB_TIMEOUT = 10.0
DEFAULT_CACHE_SIZE = 100
DEFAULT_CACHE_TIMEOUT = 0

# Option values understood by CmabService.get_decision. They match the string
# values of decision.DecideOption.
IGNORE_CMAB_CACHE = "IGNORE_CMAB_CACHE"
RESET_CMAB_CACHE = "RESET_CMAB_CACHE"
INVALIDATE_USER_CMAB_CACHE = "INVALIDATE_USER_CMAB_CACHE"

# Stands in for "not given" since None disables retries.
_DEFAULT_RETRY_CONFIG: Any = object()


class RetryConfig:
    __slots__ = ("max_retries", "initial_backoff", "max_backoff", "multiplier")
    max_retries: int
    initial_backoff: float
    max_backoff: float
    multiplier: float

    def __init__(self, max_retries: int = 3, initial_backoff: float = 0.1, max_backoff: float = 10.0, multiplier: float = 2.0):
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.multiplier = multiplier

    def backoff(self, attempt: int) -> float:
        """Seconds to sleep after the given zero based failed attempt."""
        return min(self.initial_backoff * self.multiplier**attempt, self.max_backoff)


class CmabClient:
    """
    Fetches predictions from the CMAB prediction endpoint. Failed requests are
    retried with exponential backoff per retry_config, which defaults to a
    fresh RetryConfig(). Pass None for a single attempt.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        retry_config: RetryConfig | None = _DEFAULT_RETRY_CONFIG,
        timeout: float = DEFAULT_CMAB_TIMEOUT,
        endpoint: str = DEFAULT_CMAB_ENDPOINT,
    ):
        self._session = session or requests.Session()
        self._retry_config = RetryConfig() if retry_config is _DEFAULT_RETRY_CONFIG else retry_config
        self._timeout = timeout
        self._endpoint = endpoint
        # Swapped out in tests.
        self._sleep = time.sleep

    def fetch_decision(self, rule_id: str, user_id: str, attributes: dict[str, Any], cmab_uuid: str) -> str:
        """
        Return the predicted variation id. Raises CmabFetchError once every
        attempt has failed.
        """
        url = self._endpoint % rule_id
        body = {
            "instances": [
                {
                    "visitorId": user_id,
                    "experimentId": rule_id,
                    "attributes": [{"id": k, "value": v, "type": "custom_attribute"} for k, v in attributes.items()],
                    "cmabUUID": cmab_uuid,
                }
            ]
        }

        if self._retry_config is None:
            return self._do_fetch(url, body)

        attempts = self._retry_config.max_retries + 1
        last_err: CmabFetchError | None = None
        for attempt in range(attempts):
            try:
                return self._do_fetch(url, body)
            except CmabFetchError as e:
                last_err = e
                logger.warning("CMAB request failed (attempt %d/%d): %s", attempt + 1, attempts, e)
            if attempt < attempts - 1:
                self._sleep(self._retry_config.backoff(attempt))
        raise CmabFetchError(f"failed to fetch CMAB decision after {attempts} attempts: {last_err}") from last_err

    def _do_fetch(self, url: str, body: dict) -> str:
        try:
            resp = self._session.post(url, json=body, headers={"Content-Type": "application/json"}, timeout=self._timeout)
        except requests.RequestException as e:
            cmab_fetches.labels(outcome="error").inc()
            raise CmabFetchError(f"CMAB request failed: {e}") from e

        if not 200 <= resp.status_code < 300:
            cmab_fetches.labels(outcome="error").inc()
            raise CmabFetchError(f"CMAB API returned status code {resp.status_code}", resp.status_code)

        try:
            predictions = resp.json()["predictions"]
            variation_id = predictions[0]["variation_id"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            cmab_fetches.labels(outcome="error").inc()
            raise CmabFetchError(f"invalid CMAB response: {e}") from e
        if not variation_id:
            cmab_fetches.labels(outcome="error").inc()
            raise CmabFetchError("invalid CMAB response: empty variation_id")

        cmab_fetches.labels(outcome="success").inc()
        return variation_id


class LRUCache:
    """
    A thread-safe LRU cache with optional expiry. A timeout of 0 means entries
    never expire. A max_size of 0 disables caching.
    """

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE, timeout: float = DEFAULT_CACHE_TIMEOUT):
        self._max_size = max_size
        self._timeout = timeout
        self._mu = threading.Lock()
        self._items: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._clock = time.monotonic

    def lookup(self, key: str) -> Any:
        with self._mu:
            item = self._items.get(key)
            if item is None:
                return None
            value, saved_at = item
            if self._timeout > 0 and self._clock() - saved_at > self._timeout:
                del self._items[key]
                return None
            self._items.move_to_end(key)
            return value

    def save(self, key: str, value: Any):
        if self._max_size <= 0:
            return
        with self._mu:
            self._items[key] = (value, self._clock())
            self._items.move_to_end(key)
            while len(self._items) > self._max_size:
                self._items.popitem(last=False)

    def remove(self, key: str):
        with self._mu:
            self._items.pop(key, None)

    def reset(self):
        with self._mu:
            self._items.clear()

    def __len__(self) -> int:
        with self._mu:
            return len(self._items)


class _CacheValue:
    __slots__ = ("attributes_hash", "variation_id", "cmab_uuid")
    attributes_hash: str
    variation_id: str
    cmab_uuid: str

    def __init__(self, attributes_hash: str, variation_id: str, cmab_uuid: str):
        self.attributes_hash = attributes_hash
        self.variation_id = variation_id
        self.cmab_uuid = cmab_uuid


def cache_key(user_id: str, rule_id: str) -> str:
    return f"{len(user_id)}:{user_id}:{rule_id}"


def hash_attributes(attributes: dict[str, Any]) -> str:
    canonical = json.dumps(attributes, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return str(mmh3.hash(canonical.encode("utf-8"), 1, signed=False))


class CmabService:
    """
    Cache fronted CMAB decisions. CmabService is thread-safe.
    """

    def __init__(self, cache: LRUCache | None = None, client: CmabClient | None = None):
        self.cache = cache if cache is not None else LRUCache()
        self.client = client if client is not None else CmabClient()

    def _filter_attributes(self, config: ProjectConfig, user: UserContext, rule_id: str) -> dict[str, Any]:
        try:
            experiment = config.get_experiment_by_id(rule_id)
        except NotFoundError:
            return {}
        if experiment.cmab is None:
            return {}
        filtered = {}
        for attribute_id in experiment.cmab.attribute_ids:
            try:
                key = config.get_attribute_key_by_id(attribute_id)
            except NotFoundError:
                logger.debug("CMAB attribute with id %s not found in project config", attribute_id)
                continue
            if key in user.attributes:
                filtered[key] = user.attributes[key]
        return filtered

    def get_decision(self, config: ProjectConfig, user: UserContext, rule_id: str, options: Iterable[str] = ()) -> CmabDecision:
        """
        Return the CMAB decision for the user and rule. Raises
        CmabFetchFailedError when the prediction cannot be fetched.
        """
        options = {str(o) for o in options}
        reasons: list[str] = []
        attributes = self._filter_attributes(config, user, rule_id)

        if IGNORE_CMAB_CACHE in options:
            reasons.append("Ignoring CMAB cache as requested")
            return self._fetch(config, user, rule_id, attributes, reasons)

        if RESET_CMAB_CACHE in options:
            self.cache.reset()
            reasons.append("Reset CMAB cache as requested")

        key = cache_key(user.id, rule_id)
        if INVALIDATE_USER_CMAB_CACHE in options:
            self.cache.remove(key)
            reasons.append("Invalidated user CMAB cache as requested")

        attributes_hash = hash_attributes(attributes)
        cached = self.cache.lookup(key)
        if cached is not None:
            if cached.attributes_hash == attributes_hash:
                logger.debug("Returning cached CMAB decision for rule %s and user %r", rule_id, user.id)
                reasons.append("Returning cached CMAB decision")
                return CmabDecision(variation_id=cached.variation_id, cmab_uuid=cached.cmab_uuid, reasons=reasons)
            self.cache.remove(key)
            reasons.append("Attributes changed, invalidating cache")

        decision = self._fetch(config, user, rule_id, attributes, reasons)
        self.cache.save(key, _CacheValue(attributes_hash, decision.variation_id, decision.cmab_uuid))
        decision.reasons.append("Fetched new CMAB decision and cached it")
        return decision

    def _fetch(self, config: ProjectConfig, user: UserContext, rule_id: str, attributes: dict[str, Any], reasons: list[str]) -> CmabDecision:
        cmab_uuid = str(uuid.uuid4())
        try:
            variation_id = self.client.fetch_decision(rule_id, user.id, attributes, cmab_uuid)
        except CmabFetchError as e:
            try:
                experiment_key = config.get_experiment_by_id(rule_id).key
            except NotFoundError:
                experiment_key = rule_id
            logger.error("CMAB fetch for rule %s failed: %s", rule_id, e)
            raise CmabFetchFailedError(experiment_key) from e
        return CmabDecision(variation_id=variation_id, cmab_uuid=cmab_uuid, reasons=reasons)
