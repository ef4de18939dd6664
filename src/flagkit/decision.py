"""
The decision pipeline.

For one experiment the layers are tried in order: running status, runtime
forced variations, whitelist, user profile, audience, CMAB and finally hash
bucketing. A feature is decided
by its feature tests first and then by its rollout, whose last rule is the
"everyone else" catch-all.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import abstractmethod
from collections.abc import Iterable
from copy import deepcopy
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeAlias

from .audience import user_in_audience
from .bucketing import ExperimentBucketer
from .entities import (
    DecisionSource,
    Experiment,
    ExperimentDecision,
    Feature,
    FeatureDecision,
    UserContext,
    Variable,
    Variation,
)
from .errors import CmabFetchFailedError, InvalidArgumentError, InvalidAttributeValueTypeError
from .reasons import DecisionReason

if TYPE_CHECKING:
    from .cmab import CmabService
    from .project_config import ProjectConfig

logger = logging.getLogger(__name__)


class DecideOption(StrEnum):
    DISABLE_DECISION_EVENT = "DISABLE_DECISION_EVENT"
    ENABLED_FLAGS_ONLY = "ENABLED_FLAGS_ONLY"
    IGNORE_USER_PROFILE_SERVICE = "IGNORE_USER_PROFILE_SERVICE"
    INCLUDE_REASONS = "INCLUDE_REASONS"
    EXCLUDE_VARIABLES = "EXCLUDE_VARIABLES"
    IGNORE_CMAB_CACHE = "IGNORE_CMAB_CACHE"
    RESET_CMAB_CACHE = "RESET_CMAB_CACHE"
    INVALIDATE_USER_CMAB_CACHE = "INVALIDATE_USER_CMAB_CACHE"


def translate_options(options: Iterable[DecideOption | str] | None) -> set[DecideOption]:
    """
    Convert decide options given as enum members or strings. Raises
    InvalidArgumentError for unknown options.
    """
    result: set[DecideOption] = set()
    for o in options or ():
        try:
            result.add(DecideOption(o))
        except ValueError:
            raise InvalidArgumentError(f"invalid decide option {o!r}") from None
    return result


class DecisionReasons:
    """
    Collects the messages produced while deciding. Errors are always reported;
    informational messages only when INCLUDE_REASONS is set.
    """

    __slots__ = ("include_infos", "errors", "infos")

    def __init__(self, include_infos: bool = False):
        self.include_infos = include_infos
        self.errors: list[str] = []
        self.infos: list[str] = []

    def add_error(self, msg: str) -> str:
        self.errors.append(msg)
        return msg

    def add_info(self, msg: str) -> str:
        self.infos.append(msg)
        return msg

    def extend(self, other: DecisionReasons):
        self.errors.extend(other.errors)
        self.infos.extend(other.infos)

    def to_report(self) -> list[str]:
        if self.include_infos:
            return self.errors + self.infos
        return list(self.errors)


# User profiles


UserProfile: TypeAlias = dict[str, Any]


class UserProfileService:
    """
    Persists the variation a user was bucketed into so that later decisions
    stay sticky across datafile revisions. Profiles look like:

        {"user_id": "u1", "experiment_bucket_map": {"<experiment id>": {"variation_id": "<variation id>"}}}
    """

    @abstractmethod
    def lookup(self, user_id: str) -> UserProfile | None: ...

    @abstractmethod
    def save(self, profile: UserProfile) -> None: ...


class InMemoryUserProfileService(UserProfileService):
    def __init__(self):
        self._mu = threading.Lock()
        self._profiles: dict[str, UserProfile] = {}

    def lookup(self, user_id: str) -> UserProfile | None:
        with self._mu:
            profile = self._profiles.get(user_id)
        return deepcopy(profile) if profile is not None else None

    def save(self, profile: UserProfile) -> None:
        with self._mu:
            self._profiles[profile["user_id"]] = deepcopy(profile)


# Forced variations


class ExperimentOverrideStore:
    """
    Variation keys forced at runtime, by experiment key and user id. They take
    precedence over the datafile whitelist. ExperimentOverrideStore is
    thread-safe.
    """

    def __init__(self):
        self._mu = threading.Lock()
        self._overrides: dict[tuple[str, str], str] = {}

    def get_variation(self, experiment_key: str, user_id: str) -> str | None:
        with self._mu:
            return self._overrides.get((experiment_key, user_id))

    def set_variation(self, experiment_key: str, user_id: str, variation_key: str):
        with self._mu:
            self._overrides[(experiment_key, user_id)] = variation_key

    def remove_variation(self, experiment_key: str, user_id: str):
        with self._mu:
            self._overrides.pop((experiment_key, user_id), None)


# Variable values


def get_variable_value(variable: Variable, variation: Variation | None) -> str:
    """
    The raw value of the variable for the given variation: its override when
    the variation is enabled and overrides the variable, otherwise the default.
    """
    if variation is not None and variation.feature_enabled and variable.id in variation.variables:
        return variation.variables[variable.id]
    return variable.default_value


def coerce_variable(type: str, raw: str) -> Any:
    """
    Convert a raw variable value to its declared type. Raises
    InvalidAttributeValueTypeError when the value does not parse.
    """
    match type:
        case "string":
            return raw
        case "boolean":
            lowered = raw.strip().lower()
            if lowered in ("true", "1"):
                return True
            if lowered in ("false", "0"):
                return False
            raise InvalidAttributeValueTypeError(f"{raw!r} is not a boolean")
        case "integer":
            try:
                return int(raw)
            except ValueError:
                raise InvalidAttributeValueTypeError(f"{raw!r} is not an integer") from None
        case "double":
            try:
                return float(raw)
            except ValueError:
                raise InvalidAttributeValueTypeError(f"{raw!r} is not a double") from None
        case "json":
            try:
                return json.loads(raw)
            except ValueError:
                raise InvalidAttributeValueTypeError(f"{raw!r} is not valid JSON") from None
    raise InvalidAttributeValueTypeError(f"unknown variable type {type!r}")


class DecisionService:
    """
    Decides variations for experiments and features. DecisionService holds no
    per-call state and is thread-safe as long as its collaborators are.
    """

    def __init__(
        self,
        bucketer: ExperimentBucketer | None = None,
        user_profile_service: UserProfileService | None = None,
        cmab_service: CmabService | None = None,
        override_store: ExperimentOverrideStore | None = None,
    ):
        self.bucketer = bucketer or ExperimentBucketer()
        self.override_store = override_store if override_store is not None else ExperimentOverrideStore()
        self.user_profile_service = user_profile_service
        self.cmab_service = cmab_service

    # Experiments

    def get_variation(
        self,
        config: ProjectConfig,
        experiment: Experiment,
        user: UserContext,
        options: Iterable[DecideOption] = (),
        reasons: DecisionReasons | None = None,
    ) -> ExperimentDecision:
        options = set(options)
        if reasons is None:
            reasons = DecisionReasons(DecideOption.INCLUDE_REASONS in options)

        if not experiment.is_running():
            logger.debug(reasons.add_info(f'Experiment "{experiment.key}" is not running.'))
            return ExperimentDecision(reason=DecisionReason.EXPERIMENT_NOT_RUNNING)

        for check in (self._get_override_variation, self._get_whitelisted_variation):
            decision = check(experiment, user, reasons)
            if decision.variation is not None:
                return decision

        use_profile = (
            self.user_profile_service is not None
            and DecideOption.IGNORE_USER_PROFILE_SERVICE not in options
            and experiment.cmab is None
        )
        profile: UserProfile | None = None
        if use_profile:
            profile = self._lookup_profile(user.id, reasons)
            variation = self._get_saved_variation(experiment, profile, reasons)
            if variation is not None:
                return ExperimentDecision(variation=variation, reason=DecisionReason.USER_PROFILE_VARIATION_FOUND)

        in_audience, audience_reasons = user_in_audience(experiment, user, config.audiences)
        for msg in audience_reasons:
            reasons.add_info(msg)
        if not in_audience:
            logger.debug(reasons.add_info(f'User "{user.id}" does not meet conditions to be in experiment "{experiment.key}".'))
            return ExperimentDecision(reason=DecisionReason.DOES_NOT_QUALIFY)

        if experiment.cmab is not None:
            return self._get_cmab_variation(config, experiment, user, options, reasons)

        group = config.groups.get(experiment.group_id) if experiment.group_id else None
        variation, reason = self.bucketer.bucket(user.get_bucketing_id(), experiment, group)
        if variation is None:
            logger.debug(reasons.add_info(f'User "{user.id}" is in no variation of experiment "{experiment.key}".'))
            return ExperimentDecision(reason=reason)

        logger.debug(reasons.add_info(f'User "{user.id}" is in variation "{variation.key}" of experiment "{experiment.key}".'))
        if use_profile:
            self._save_profile(user.id, profile, experiment, variation)
        return ExperimentDecision(variation=variation, reason=reason)

    def _get_override_variation(self, experiment: Experiment, user: UserContext, reasons: DecisionReasons) -> ExperimentDecision:
        variation_key = self.override_store.get_variation(experiment.key, user.id)
        if variation_key is None:
            return ExperimentDecision(reason=DecisionReason.NO_OVERRIDE_VARIATION_ASSIGNMENT)
        variation = experiment.get_variation_by_key(variation_key)
        if variation is None:
            logger.debug(
                reasons.add_info(
                    f'{DecisionReason.INVALID_OVERRIDE_VARIATION_ASSIGNMENT}: user "{user.id}" is forced into unknown '
                    f'variation "{variation_key}" of experiment "{experiment.key}".'
                )
            )
            return ExperimentDecision(reason=DecisionReason.INVALID_OVERRIDE_VARIATION_ASSIGNMENT)
        logger.debug(
            reasons.add_info(f'User "{user.id}" is forced in variation "{variation_key}" of experiment "{experiment.key}" at runtime.')
        )
        return ExperimentDecision(variation=variation, reason=DecisionReason.OVERRIDE_VARIATION_ASSIGNMENT_FOUND)

    def _get_whitelisted_variation(self, experiment: Experiment, user: UserContext, reasons: DecisionReasons) -> ExperimentDecision:
        variation_key = experiment.forced_variations.get(user.id)
        if variation_key is None:
            return ExperimentDecision(reason=DecisionReason.NO_WHITELIST_VARIATION_ASSIGNMENT)
        variation = experiment.get_variation_by_key(variation_key)
        if variation is None:
            logger.debug(
                reasons.add_info(
                    f'{DecisionReason.INVALID_WHITELIST_VARIATION_ASSIGNMENT}: user "{user.id}" is forced into unknown '
                    f'variation "{variation_key}" of experiment "{experiment.key}".'
                )
            )
            return ExperimentDecision(reason=DecisionReason.INVALID_WHITELIST_VARIATION_ASSIGNMENT)
        logger.debug(reasons.add_info(f'User "{user.id}" is forced in variation "{variation_key}".'))
        return ExperimentDecision(variation=variation, reason=DecisionReason.WHITELIST_VARIATION_ASSIGNMENT_FOUND)

    def _lookup_profile(self, user_id: str, reasons: DecisionReasons) -> UserProfile:
        assert self.user_profile_service is not None
        try:
            profile = self.user_profile_service.lookup(user_id)
        except Exception as e:
            logger.exception("Unable to retrieve user profile for user %r", user_id)
            reasons.add_error(f'Unable to retrieve user profile for user "{user_id}": {e}')
            profile = None
        if not isinstance(profile, dict) or not isinstance(profile.get("experiment_bucket_map"), dict):
            return {"user_id": user_id, "experiment_bucket_map": {}}
        return profile

    def _get_saved_variation(self, experiment: Experiment, profile: UserProfile | None, reasons: DecisionReasons) -> Variation | None:
        if profile is None:
            return None
        saved = profile["experiment_bucket_map"].get(experiment.id)
        if not isinstance(saved, dict):
            return None
        variation = experiment.get_variation_by_id(saved.get("variation_id", ""))
        if variation is None:
            logger.debug(
                reasons.add_info(
                    f'Saved variation for user "{profile["user_id"]}" in experiment "{experiment.key}" no longer exists.'
                )
            )
            return None
        logger.debug(
            reasons.add_info(
                f'Found saved variation "{variation.key}" of experiment "{experiment.key}" for user "{profile["user_id"]}".'
            )
        )
        return variation

    def _save_profile(self, user_id: str, profile: UserProfile | None, experiment: Experiment, variation: Variation):
        assert self.user_profile_service is not None
        profile = profile or {"user_id": user_id, "experiment_bucket_map": {}}
        profile["experiment_bucket_map"][experiment.id] = {"variation_id": variation.id}
        try:
            self.user_profile_service.save(profile)
        except Exception:
            logger.exception("Unable to save user profile for user %r", user_id)

    def _get_cmab_variation(
        self,
        config: ProjectConfig,
        experiment: Experiment,
        user: UserContext,
        options: set[DecideOption],
        reasons: DecisionReasons,
    ) -> ExperimentDecision:
        # CMAB experiments take all of their traffic; only mutex groups can
        # exclude the user.
        group = config.groups.get(experiment.group_id) if experiment.group_id else None
        excluded = self.bucketer.bucket_into_group(user.get_bucketing_id(), experiment, group)
        if excluded is not None:
            logger.debug(reasons.add_info(f'User "{user.id}" not in CMAB experiment "{experiment.key}" due to traffic allocation.'))
            return ExperimentDecision(reason=excluded)

        if self.cmab_service is None:
            err = CmabFetchFailedError(experiment.key)
            reasons.add_error(str(err))
            logger.error("No CMAB service available to decide experiment %s", experiment.key)
            return ExperimentDecision(reason=DecisionReason.CMAB_FETCH_FAILED, error=err)

        try:
            cmab_decision = self.cmab_service.get_decision(config, user, experiment.id, options)
        except CmabFetchFailedError as e:
            reasons.add_error(str(e))
            return ExperimentDecision(reason=DecisionReason.CMAB_FETCH_FAILED, error=e)
        for msg in cmab_decision.reasons:
            reasons.add_info(msg)

        variation = experiment.get_variation_by_id(cmab_decision.variation_id)
        if variation is None:
            logger.warning(
                reasons.add_info(
                    f'CMAB returned unknown variation "{cmab_decision.variation_id}" for experiment "{experiment.key}".'
                )
            )
            return ExperimentDecision(reason=DecisionReason.BUCKETED_VARIATION_NOT_FOUND)
        logger.debug(reasons.add_info(f'User "{user.id}" bucketed into variation "{variation.key}" by CMAB service.'))
        return ExperimentDecision(variation=variation, reason=DecisionReason.BUCKETED_INTO_VARIATION, cmab_uuid=cmab_decision.cmab_uuid)

    # Features

    def get_variation_for_feature(
        self,
        config: ProjectConfig,
        feature: Feature,
        user: UserContext,
        options: Iterable[DecideOption] = (),
        reasons: DecisionReasons | None = None,
    ) -> FeatureDecision:
        options = set(options)
        if reasons is None:
            reasons = DecisionReasons(DecideOption.INCLUDE_REASONS in options)

        for experiment in feature.feature_experiments:
            d = self.get_variation(config, experiment, user, options, reasons)
            if d.error is not None:
                # A failed CMAB fetch ends the decision; there is no fallback
                # to the remaining rules.
                return FeatureDecision(experiment=experiment, source=DecisionSource.FEATURE_TEST, reason=d.reason, error=d.error)
            if d.variation is not None:
                logger.debug(
                    reasons.add_info(f'User "{user.id}" is in feature test "{experiment.key}" of feature "{feature.key}".')
                )
                return FeatureDecision(
                    experiment=experiment,
                    variation=d.variation,
                    source=DecisionSource.FEATURE_TEST,
                    reason=DecisionReason.BUCKETED_INTO_FEATURE_TEST,
                    cmab_uuid=d.cmab_uuid,
                )

        return self.get_variation_for_rollout(config, feature, user, reasons)

    def get_variation_for_rollout(
        self,
        config: ProjectConfig,
        feature: Feature,
        user: UserContext,
        reasons: DecisionReasons | None = None,
    ) -> FeatureDecision:
        if reasons is None:
            reasons = DecisionReasons()

        rollout = feature.rollout
        if rollout is None:
            logger.debug(reasons.add_info(f'Feature "{feature.key}" has no rollout.'))
            return FeatureDecision(reason=DecisionReason.NO_ROLLOUT_FOR_FEATURE)
        rules = rollout.experiments
        if not rules:
            logger.debug(reasons.add_info(f'Rollout of feature "{feature.key}" has no rules.'))
            return FeatureDecision(reason=DecisionReason.ROLLOUT_HAS_NO_EXPERIMENTS)

        bucketing_id = user.get_bucketing_id()
        last = len(rules) - 1
        reason: str = DecisionReason.DOES_NOT_MEET_ROLLOUT_TARGETING
        idx = 0
        while idx <= last:
            rule = rules[idx]
            label = "Everyone Else" if idx == last else str(idx + 1)
            if idx < last:
                in_audience, audience_reasons = user_in_audience(rule, user, config.audiences, logging_key=label)
                for msg in audience_reasons:
                    reasons.add_info(msg)
                if not in_audience:
                    logger.debug(reasons.add_info(f'User "{user.id}" does not meet conditions for targeting rule {label}.'))
                    reason = DecisionReason.FAILED_ROLLOUT_TARGETING
                    idx += 1
                    continue

            variation, _ = self.bucketer.bucket(bucketing_id, rule, None)
            if variation is not None:
                logger.debug(reasons.add_info(f'User "{user.id}" bucketed into targeting rule {label}.'))
                return FeatureDecision(
                    experiment=rule,
                    variation=variation,
                    source=DecisionSource.ROLLOUT,
                    reason=DecisionReason.BUCKETED_INTO_ROLLOUT,
                )

            logger.debug(reasons.add_info(f'User "{user.id}" not bucketed into targeting rule {label}.'))
            reason = DecisionReason.FAILED_ROLLOUT_BUCKETING
            # Passing a rule's audience but missing its traffic skips straight
            # to the "everyone else" rule.
            idx = last if idx < last else last + 1

        return FeatureDecision(reason=reason)
