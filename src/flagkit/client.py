"""
The client facade.

Lookups through the facade never raise: invalid input, a missing config or an
unknown key is logged and the documented safe default is returned. Decision
notifications are sent synchronously after any impression was queued.
"""

from __future__ import annotations

import functools
import logging
import threading
import time
from collections.abc import Iterable
from typing import Any

from . import entities
from .cmab import CmabClient, CmabService, LRUCache
from .config_manager import (
    DEFAULT_DATAFILE_URL_TEMPLATE,
    DEFAULT_POLLING_INTERVAL,
    PollingConfigManager,
    ProjectConfigManager,
    StaticConfigManager,
)
from .decision import (
    DecideOption,
    DecisionReasons,
    DecisionService,
    UserProfileService,
    coerce_variable,
    get_variable_value,
    translate_options,
)
from .entities import Attributes, DecisionSource, Experiment, Variation
from .errors import ConfigNotReadyError, InvalidArgumentError, InvalidAttributeValueTypeError, NotFoundError
from .event_processor import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_FLUSH_INTERVAL,
    BatchEventProcessor,
    EventDispatcher,
    EventProcessor,
    HTTPEventDispatcher,
)
from .events import create_conversion_event, create_impression_event
from .execution import ExecutionContext
from .metrics import decision_duration
from .notification import NotificationCenter, NotificationType
from .project_config import ProjectConfig

logger = logging.getLogger(__name__)


def _timed(api: str):
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return fn(*args, **kwargs)
            finally:
                decision_duration.labels(api=api).observe(time.perf_counter() - start)

        return wrapper

    return decorator


def _valid_user(api: str, user_id: Any, attributes: Any) -> bool:
    if not isinstance(user_id, str):
        logger.error("%s: user_id must be a string, not %s", api, type(user_id).__name__)
        return False
    if not user_id:
        logger.error("%s: user_id must not be empty", api)
        return False
    if attributes is not None and not isinstance(attributes, dict):
        logger.error("%s: attributes must be a dict, not %s", api, type(attributes).__name__)
        return False
    return True


def _valid_key(api: str, name: str, key: Any) -> bool:
    if not isinstance(key, str) or not key:
        logger.error("%s: %s must be a non-empty string", api, name)
        return False
    return True


class Decision:
    """
    The result of UserContext.decide.
    """

    __slots__ = ("variation_key", "enabled", "variables", "rule_key", "flag_key", "user_context", "reasons")
    variation_key: str | None
    enabled: bool
    variables: dict[str, Any]
    rule_key: str | None
    flag_key: str
    user_context: UserContext | None
    reasons: list[str]

    def __init__(
        self,
        flag_key: str,
        user_context: UserContext | None,
        variation_key: str | None = None,
        enabled: bool = False,
        variables: dict[str, Any] | None = None,
        rule_key: str | None = None,
        reasons: list[str] | None = None,
    ):
        self.flag_key = flag_key
        self.user_context = user_context
        self.variation_key = variation_key
        self.enabled = enabled
        self.variables = variables or {}
        self.rule_key = rule_key
        self.reasons = reasons or []

    def to_dict(self) -> dict[str, Any]:
        return {
            "variation_key": self.variation_key,
            "enabled": self.enabled,
            "variables": self.variables,
            "rule_key": self.rule_key,
            "flag_key": self.flag_key,
            "user_context": self.user_context.to_dict() if self.user_context is not None else None,
            "reasons": self.reasons,
        }

    def __repr__(self) -> str:
        return f"Decision({self.to_dict()!r})"


class UserContext:
    """
    A user bound to a client. Attributes may be changed with set_attribute;
    every decision uses a snapshot taken when it starts. UserContext is
    thread-safe.
    """

    def __init__(self, client: Client, user_id: str, attributes: Attributes | None = None):
        self._client = client
        self._user_id = user_id
        self._mu = threading.Lock()
        self._attributes: Attributes = dict(attributes or {})
        self._qualified_segments: list[str] | None = None

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def attributes(self) -> Attributes:
        with self._mu:
            return dict(self._attributes)

    def set_attribute(self, key: str, value: Any):
        with self._mu:
            self._attributes[key] = value

    @property
    def qualified_segments(self) -> list[str] | None:
        with self._mu:
            return list(self._qualified_segments) if self._qualified_segments is not None else None

    @qualified_segments.setter
    def qualified_segments(self, segments: Iterable[str] | None):
        with self._mu:
            self._qualified_segments = list(segments) if segments is not None else None

    def is_qualified_for(self, segment: str) -> bool:
        with self._mu:
            return segment in (self._qualified_segments or ())

    def _snapshot(self) -> UserContext:
        uc = UserContext(self._client, self._user_id, self.attributes)
        uc._qualified_segments = self.qualified_segments
        return uc

    def _to_user(self) -> entities.UserContext:
        with self._mu:
            return entities.UserContext(self._user_id, self._attributes, self._qualified_segments)

    def decide(self, key: str, options: Iterable[DecideOption | str] | None = None) -> Decision:
        return self._client._decide(self._snapshot(), key, options)

    def decide_for_keys(self, keys: Iterable[str], options: Iterable[DecideOption | str] | None = None) -> dict[str, Decision]:
        return self._client._decide_for_keys(self._snapshot(), keys, options)

    def decide_all(self, options: Iterable[DecideOption | str] | None = None) -> dict[str, Decision]:
        return self._client._decide_all(self._snapshot(), options)

    def track_event(self, event_key: str, event_tags: dict[str, Any] | None = None):
        self._client.track(event_key, self._user_id, self.attributes, event_tags)

    def to_dict(self) -> dict[str, Any]:
        return {"user_id": self._user_id, "attributes": self.attributes}


class Client:
    """
    Answers per user questions about features and experiments from the config
    currently published by the config manager. Client is thread-safe.
    """

    def __init__(
        self,
        config_manager: ProjectConfigManager,
        event_processor: EventProcessor | None = None,
        decision_service: DecisionService | None = None,
        notification_center: NotificationCenter | None = None,
        default_decide_options: Iterable[DecideOption | str] | None = None,
    ):
        self.config_manager = config_manager
        self.event_processor = event_processor
        self.decision_service = decision_service or DecisionService()
        self.notification_center = notification_center or config_manager.notification_center
        self.default_decide_options = translate_options(default_decide_options)
        self._closed = False
        self._close_mu = threading.Lock()

    def _get_config(self, api: str) -> ProjectConfig | None:
        try:
            return self.config_manager.get_config()
        except ConfigNotReadyError:
            logger.error("%s: project config is not available", api)
            return None

    def _send_event(self, user_event):
        if user_event is None or self.event_processor is None:
            return False
        return self.event_processor.process(user_event)

    def _send_decision_notification(self, type: str, user_id: str, attributes: Attributes | None, decision_info: dict[str, Any]):
        self.notification_center.send(
            NotificationType.DECISION,
            {
                "type": type,
                "user_id": user_id,
                "attributes": dict(attributes or {}),
                "decision_info": decision_info,
            },
        )

    # Experiments

    def _get_experiment_variation(self, api: str, experiment_key: str, user_id: str, attributes: Attributes | None):
        if not _valid_key(api, "experiment_key", experiment_key) or not _valid_user(api, user_id, attributes):
            return None
        config = self._get_config(api)
        if config is None:
            return None
        try:
            experiment = config.get_experiment_by_key(experiment_key)
        except NotFoundError as e:
            logger.error("%s: %s", api, e)
            return None
        user = entities.UserContext(user_id, attributes)
        decision = self.decision_service.get_variation(config, experiment, user)
        self._send_decision_notification(
            "ab-test",
            user_id,
            attributes,
            {"experiment_key": experiment.key, "variation_key": decision.variation.key if decision.variation else None},
        )
        return config, experiment, user, decision

    @_timed("activate")
    def activate(self, experiment_key: str, user_id: str, attributes: Attributes | None = None) -> str:
        """
        Return the key of the variation the user is bucketed into, or "" if
        none, and record an impression when a variation is assigned.
        """
        res = self._get_experiment_variation("activate", experiment_key, user_id, attributes)
        if res is None:
            return ""
        config, experiment, user, decision = res
        if decision.variation is None:
            logger.info('Not activating user "%s" for experiment "%s"', user_id, experiment_key)
            return ""
        self._send_event(
            create_impression_event(
                config,
                experiment,
                decision.variation,
                user,
                flag_key="",
                rule_key=experiment.key,
                rule_type=DecisionSource.EXPERIMENT,
                enabled=True,
                cmab_uuid=decision.cmab_uuid,
            )
        )
        return decision.variation.key

    @_timed("get_variation")
    def get_variation(self, experiment_key: str, user_id: str, attributes: Attributes | None = None) -> str:
        """
        Like activate but without recording an impression.
        """
        res = self._get_experiment_variation("get_variation", experiment_key, user_id, attributes)
        if res is None:
            return ""
        decision = res[3]
        return decision.variation.key if decision.variation is not None else ""

    def _get_experiment(self, api: str, experiment_key: str, user_id: str) -> Experiment | None:
        if not _valid_key(api, "experiment_key", experiment_key) or not _valid_user(api, user_id, None):
            return None
        config = self._get_config(api)
        if config is None:
            return None
        try:
            return config.get_experiment_by_key(experiment_key)
        except NotFoundError as e:
            logger.error("%s: %s", api, e)
            return None

    def set_forced_variation(self, experiment_key: str, user_id: str, variation_key: str | None) -> bool:
        """
        Force the user into a variation of the experiment for the lifetime of
        the client. Passing None as variation_key clears the override. Returns
        whether the override was applied.
        """
        api = "set_forced_variation"
        experiment = self._get_experiment(api, experiment_key, user_id)
        if experiment is None:
            return False
        store = self.decision_service.override_store
        if variation_key is None:
            store.remove_variation(experiment.key, user_id)
            logger.debug('Cleared forced variation of user "%s" for experiment "%s"', user_id, experiment.key)
            return True
        if not _valid_key(api, "variation_key", variation_key):
            return False
        if experiment.get_variation_by_key(variation_key) is None:
            logger.error('%s: no variation "%s" in experiment "%s"', api, variation_key, experiment.key)
            return False
        store.set_variation(experiment.key, user_id, variation_key)
        logger.debug('Forced user "%s" into variation "%s" of experiment "%s"', user_id, variation_key, experiment.key)
        return True

    def get_forced_variation(self, experiment_key: str, user_id: str) -> str | None:
        """
        The variation key the user was forced into with set_forced_variation,
        or None. Overrides naming a variation the current config no longer has
        are ignored.
        """
        experiment = self._get_experiment("get_forced_variation", experiment_key, user_id)
        if experiment is None:
            return None
        variation_key = self.decision_service.override_store.get_variation(experiment.key, user_id)
        if variation_key is None or experiment.get_variation_by_key(variation_key) is None:
            return None
        return variation_key

    # Features

    def _get_feature(self, api: str, config: ProjectConfig, feature_key: str):
        try:
            return config.get_feature_by_key(feature_key)
        except NotFoundError as e:
            logger.error("%s: %s", api, e)
            return None

    @staticmethod
    def _source_info(decision) -> dict[str, Any]:
        if decision.source == DecisionSource.FEATURE_TEST and decision.experiment is not None and decision.variation is not None:
            return {"experiment_key": decision.experiment.key, "variation_key": decision.variation.key}
        return {}

    @_timed("is_feature_enabled")
    def is_feature_enabled(self, feature_key: str, user_id: str, attributes: Attributes | None = None) -> bool:
        api = "is_feature_enabled"
        if not _valid_key(api, "feature_key", feature_key) or not _valid_user(api, user_id, attributes):
            return False
        config = self._get_config(api)
        if config is None:
            return False
        feature = self._get_feature(api, config, feature_key)
        if feature is None:
            return False
        return self._is_feature_enabled(config, feature, user_id, attributes)

    def _is_feature_enabled(self, config: ProjectConfig, feature: entities.Feature, user_id: str, attributes: Attributes | None) -> bool:
        user = entities.UserContext(user_id, attributes)
        decision = self.decision_service.get_variation_for_feature(config, feature, user)
        enabled = decision.feature_enabled

        if decision.variation is not None:
            self._send_event(
                create_impression_event(
                    config,
                    decision.experiment,
                    decision.variation,
                    user,
                    flag_key=feature.key,
                    rule_key=decision.experiment.key if decision.experiment else "",
                    rule_type=decision.source,
                    enabled=enabled,
                    cmab_uuid=decision.cmab_uuid,
                )
            )

        logger.info('Feature "%s" is %s for user "%s"', feature.key, "enabled" if enabled else "not enabled", user_id)
        self._send_decision_notification(
            "feature",
            user_id,
            attributes,
            {
                "feature_key": feature.key,
                "feature_enabled": enabled,
                "source": str(decision.source),
                "source_info": self._source_info(decision),
            },
        )
        return enabled

    @_timed("get_enabled_features")
    def get_enabled_features(self, user_id: str, attributes: Attributes | None = None) -> list[str]:
        """
        Keys of the features enabled for the user, in datafile order. All of
        them are decided against the same config.
        """
        if not _valid_user("get_enabled_features", user_id, attributes):
            return []
        config = self._get_config("get_enabled_features")
        if config is None:
            return []
        return [key for key, feature in config.features.items() if self._is_feature_enabled(config, feature, user_id, attributes)]

    def _typed_variable_value(self, variable, raw: str) -> Any:
        try:
            return coerce_variable(variable.type, raw)
        except InvalidAttributeValueTypeError as e:
            logger.error('Value of variable "%s" is invalid: %s', variable.key, e)
        try:
            return coerce_variable(variable.type, variable.default_value)
        except InvalidAttributeValueTypeError as e:
            logger.error('Default value of variable "%s" is invalid: %s', variable.key, e)
            return None

    def _get_feature_variable(
        self,
        api: str,
        feature_key: str,
        variable_key: str,
        user_id: str,
        attributes: Attributes | None,
        variable_type: str | None,
    ) -> Any:
        if (
            not _valid_key(api, "feature_key", feature_key)
            or not _valid_key(api, "variable_key", variable_key)
            or not _valid_user(api, user_id, attributes)
        ):
            return None
        config = self._get_config(api)
        if config is None:
            return None
        feature = self._get_feature(api, config, feature_key)
        if feature is None:
            return None
        variable = feature.variables.get(variable_key)
        if variable is None:
            logger.error('%s: variable "%s" not found in feature "%s"', api, variable_key, feature_key)
            return None
        if variable_type is not None and variable.type != variable_type:
            logger.error(
                '%s: variable "%s" is of type "%s", not "%s"',
                api,
                variable_key,
                variable.type,
                variable_type,
            )
            return None

        user = entities.UserContext(user_id, attributes)
        decision = self.decision_service.get_variation_for_feature(config, feature, user)
        enabled = decision.feature_enabled
        value = self._typed_variable_value(variable, get_variable_value(variable, decision.variation))

        self._send_decision_notification(
            "feature-variable",
            user_id,
            attributes,
            {
                "feature_key": feature.key,
                "feature_enabled": enabled,
                "source": str(decision.source),
                "variable_key": variable.key,
                "variable_value": value,
                "variable_type": variable.type,
                "source_info": self._source_info(decision),
            },
        )
        return value

    @_timed("get_feature_variable")
    def get_feature_variable(self, feature_key: str, variable_key: str, user_id: str, attributes: Attributes | None = None) -> Any:
        """
        Return the value of the variable for the user, converted to the
        variable's declared type. Returns None when it cannot be resolved.
        """
        return self._get_feature_variable("get_feature_variable", feature_key, variable_key, user_id, attributes, None)

    def get_feature_variable_boolean(self, feature_key: str, variable_key: str, user_id: str, attributes: Attributes | None = None) -> bool | None:
        return self._get_feature_variable("get_feature_variable_boolean", feature_key, variable_key, user_id, attributes, "boolean")

    def get_feature_variable_integer(self, feature_key: str, variable_key: str, user_id: str, attributes: Attributes | None = None) -> int | None:
        return self._get_feature_variable("get_feature_variable_integer", feature_key, variable_key, user_id, attributes, "integer")

    def get_feature_variable_double(self, feature_key: str, variable_key: str, user_id: str, attributes: Attributes | None = None) -> float | None:
        return self._get_feature_variable("get_feature_variable_double", feature_key, variable_key, user_id, attributes, "double")

    def get_feature_variable_string(self, feature_key: str, variable_key: str, user_id: str, attributes: Attributes | None = None) -> str | None:
        return self._get_feature_variable("get_feature_variable_string", feature_key, variable_key, user_id, attributes, "string")

    def get_feature_variable_json(self, feature_key: str, variable_key: str, user_id: str, attributes: Attributes | None = None) -> Any:
        return self._get_feature_variable("get_feature_variable_json", feature_key, variable_key, user_id, attributes, "json")

    @_timed("get_all_feature_variables")
    def get_all_feature_variables(self, feature_key: str, user_id: str, attributes: Attributes | None = None) -> dict[str, Any] | None:
        api = "get_all_feature_variables"
        if not _valid_key(api, "feature_key", feature_key) or not _valid_user(api, user_id, attributes):
            return None
        config = self._get_config(api)
        if config is None:
            return None
        feature = self._get_feature(api, config, feature_key)
        if feature is None:
            return None

        user = entities.UserContext(user_id, attributes)
        decision = self.decision_service.get_variation_for_feature(config, feature, user)
        values = {v.key: self._typed_variable_value(v, get_variable_value(v, decision.variation)) for v in feature.variables.values()}

        self._send_decision_notification(
            "all-feature-variables",
            user_id,
            attributes,
            {
                "feature_key": feature.key,
                "feature_enabled": decision.feature_enabled,
                "source": str(decision.source),
                "variable_values": values,
                "source_info": self._source_info(decision),
            },
        )
        return values

    # Conversions

    @_timed("track")
    def track(self, event_key: str, user_id: str, attributes: Attributes | None = None, event_tags: dict[str, Any] | None = None):
        api = "track"
        if not _valid_key(api, "event_key", event_key) or not _valid_user(api, user_id, attributes):
            return
        if event_tags is not None and not isinstance(event_tags, dict):
            logger.error("%s: event_tags must be a dict, not %s", api, type(event_tags).__name__)
            return
        config = self._get_config(api)
        if config is None:
            return
        try:
            event = config.get_event_by_key(event_key)
        except NotFoundError:
            logger.error('%s: event "%s" not found, not tracking user "%s"', api, event_key, user_id)
            return

        user_event = create_conversion_event(config, event, entities.UserContext(user_id, attributes), event_tags)
        self._send_event(user_event)
        logger.info('Tracked event "%s" for user "%s"', event_key, user_id)
        self.notification_center.send(
            NotificationType.TRACK,
            {
                "event_key": event_key,
                "user_id": user_id,
                "attributes": dict(attributes or {}),
                "event_tags": dict(event_tags or {}),
                "event": user_event,
            },
        )

    # Decide

    def get_config_summary(self) -> dict[str, Any] | None:
        """
        A projection of the current config (see ProjectConfig.to_summary), or
        None if no config is available yet.
        """
        config = self._get_config("get_config_summary")
        return config.to_summary() if config is not None else None

    def create_user_context(self, user_id: str, attributes: Attributes | None = None) -> UserContext | None:
        if not _valid_user("create_user_context", user_id, attributes):
            return None
        return UserContext(self, user_id, attributes)

    def _merge_options(self, options: Iterable[DecideOption | str] | None) -> set[DecideOption]:
        try:
            return self.default_decide_options | translate_options(options)
        except InvalidArgumentError as e:
            logger.error("decide: %s, using default options", e)
            return set(self.default_decide_options)

    @_timed("decide")
    def _decide(self, user_context: UserContext, key: str, options: Iterable[DecideOption | str] | None) -> Decision:
        if not isinstance(key, str):
            logger.error("decide: flag key must be a string, not %s", type(key).__name__)
            return Decision(flag_key=str(key), user_context=user_context, reasons=["Flag key must be a string."])
        config = self._get_config("decide")
        if config is None:
            return Decision(flag_key=key, user_context=user_context, reasons=["SDK not configured properly yet."])
        feature = self._get_feature("decide", config, key)
        if feature is None:
            return Decision(flag_key=key, user_context=user_context, reasons=[f'No flag was found for key "{key}".'])
        return self._decide_feature(config, feature, user_context, self._merge_options(options))

    def _decide_feature(self, config: ProjectConfig, feature: entities.Feature, user_context: UserContext, options: set[DecideOption]) -> Decision:
        user = user_context._to_user()
        reasons = DecisionReasons(DecideOption.INCLUDE_REASONS in options)
        decision = self.decision_service.get_variation_for_feature(config, feature, user, options, reasons)
        if decision.error is not None:
            return Decision(flag_key=feature.key, user_context=user_context, reasons=reasons.to_report())

        enabled = decision.feature_enabled
        variation: Variation | None = decision.variation
        experiment: Experiment | None = decision.experiment
        rule_key = experiment.key if experiment is not None else None

        variables: dict[str, Any] = {}
        if DecideOption.EXCLUDE_VARIABLES not in options:
            for v in feature.variables.values():
                try:
                    variables[v.key] = coerce_variable(v.type, get_variable_value(v, variation))
                except InvalidAttributeValueTypeError as e:
                    reasons.add_error(f'Variable value for key "{v.key}" is invalid or wrong type: {e}')
                    variables[v.key] = None

        dispatched = False
        if DecideOption.DISABLE_DECISION_EVENT not in options:
            dispatched = self._send_event(
                create_impression_event(
                    config,
                    experiment,
                    variation,
                    user,
                    flag_key=feature.key,
                    rule_key=rule_key or "",
                    rule_type=decision.source,
                    enabled=enabled,
                    cmab_uuid=decision.cmab_uuid,
                )
            )

        report = reasons.to_report()
        self._send_decision_notification(
            "flag",
            user.id,
            user.attributes,
            {
                "flag_key": feature.key,
                "enabled": enabled,
                "variables": variables,
                "variation_key": variation.key if variation is not None else None,
                "rule_key": rule_key,
                "reasons": report,
                "decision_event_dispatched": dispatched,
            },
        )
        return Decision(
            flag_key=feature.key,
            user_context=user_context,
            variation_key=variation.key if variation is not None else None,
            enabled=enabled,
            variables=variables,
            rule_key=rule_key,
            reasons=report,
        )

    def _decide_for_keys(self, user_context: UserContext, keys: Iterable[str], options: Iterable[DecideOption | str] | None) -> dict[str, Decision]:
        merged = self._merge_options(options)
        config = self._get_config("decide_for_keys")
        if config is None:
            return {}
        return self._decide_keys(config, user_context, keys, merged)

    def _decide_all(self, user_context: UserContext, options: Iterable[DecideOption | str] | None) -> dict[str, Decision]:
        merged = self._merge_options(options)
        config = self._get_config("decide_all")
        if config is None:
            return {}
        return self._decide_keys(config, user_context, list(config.features), merged)

    def _decide_keys(self, config: ProjectConfig, user_context: UserContext, keys: Iterable[str], options: set[DecideOption]) -> dict[str, Decision]:
        decisions: dict[str, Decision] = {}
        for key in keys:
            feature = self._get_feature("decide_for_keys", config, key) if isinstance(key, str) else None
            if feature is None:
                d = Decision(flag_key=str(key), user_context=user_context, reasons=[f'No flag was found for key "{key}".'])
            else:
                start = time.perf_counter()
                d = self._decide_feature(config, feature, user_context, options)
                decision_duration.labels(api="decide").observe(time.perf_counter() - start)
            if DecideOption.ENABLED_FLAGS_ONLY in options and not d.enabled:
                continue
            decisions[d.flag_key] = d
        return decisions

    def close(self):
        """
        Stop the config manager and flush and stop the event processor. close
        is idempotent.
        """
        with self._close_mu:
            if self._closed:
                return
            self._closed = True
        self.config_manager.close()
        if self.event_processor is not None:
            self.event_processor.close()


def new_client(
    sdk_key: str | None = None,
    datafile: bytes | str | dict | None = None,
    *,
    datafile_url_template: str = DEFAULT_DATAFILE_URL_TEMPLATE,
    polling_interval: float = DEFAULT_POLLING_INTERVAL,
    event_dispatcher: EventDispatcher | None = None,
    event_batch_size: int = DEFAULT_BATCH_SIZE,
    event_flush_interval: float = DEFAULT_FLUSH_INTERVAL,
    user_profile_service: UserProfileService | None = None,
    cmab_cache_size: int = 100,
    cmab_cache_timeout: float = 0,
    default_decide_options: Iterable[DecideOption | str] | None = None,
) -> Client:
    """
    Build a client from the standard components: a polling config manager when
    sdk_key is given (a static one otherwise), a batch event processor with the
    HTTP dispatcher and a CMAB service with the default client. The background
    workers share one execution context.
    """
    notification_center = NotificationCenter()
    execution_context = ExecutionContext()
    config_manager: ProjectConfigManager
    if sdk_key:
        config_manager = PollingConfigManager(
            sdk_key,
            datafile_url_template=datafile_url_template,
            initial_datafile=datafile,
            polling_interval=polling_interval,
            notification_center=notification_center,
            execution_context=execution_context,
        ).start()
    elif datafile is not None:
        config_manager = StaticConfigManager(datafile=datafile, notification_center=notification_center)
    else:
        raise InvalidArgumentError("either sdk_key or datafile must be given")

    event_processor = BatchEventProcessor(
        dispatcher=event_dispatcher or HTTPEventDispatcher(),
        batch_size=event_batch_size,
        flush_interval=event_flush_interval,
        notification_center=notification_center,
        execution_context=execution_context,
    )
    decision_service = DecisionService(
        user_profile_service=user_profile_service,
        cmab_service=CmabService(LRUCache(cmab_cache_size, cmab_cache_timeout), CmabClient()),
    )
    return Client(config_manager, event_processor, decision_service, notification_center, default_decide_options)
