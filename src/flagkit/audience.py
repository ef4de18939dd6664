"""
Three valued evaluation of audience condition trees.

Every node evaluates to True, False or None. None stands for UNKNOWN: a missing
attribute, an attribute of the wrong type, an unsupported match type or an
unsupported condition value. Only a definite True qualifies a user for an
audience.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import TypeAlias

from .entities import (
    Audience,
    Condition,
    ConditionTree,
    Experiment,
    LeafNode,
    OperatorNode,
    UserContext,
    is_finite_number,
)

logger = logging.getLogger(__name__)

CUSTOM_ATTRIBUTE_CONDITION_TYPE = "custom_attribute"

Tristate: TypeAlias = bool | None


# Semantic versions


def _is_pre_release(v: str) -> bool:
    return "-" in v


def _split_semver(v: str) -> list[str]:
    """
    Split a semantic version into its dotted numeric parts followed by the
    pre-release/build suffix, if any. Raises ValueError for malformed versions.
    """
    if not v or " " in v:
        raise ValueError(f"invalid semantic version {v!r}")
    prefix = v
    suffix: list[str] = []
    if "-" in v or "+" in v:
        sep = "-" if "-" in v else "+"
        parts = [p for p in v.split(sep, 1) if p]
        if len(parts) <= 1:
            raise ValueError(f"invalid semantic version {v!r}")
        prefix, suffix = parts[0], parts[1:]
    dot_count = prefix.count(".")
    if dot_count > 2:
        raise ValueError(f"invalid semantic version {v!r}")
    parts = [p for p in prefix.split(".") if p]
    if len(parts) != dot_count + 1 or not all(p.isdigit() for p in parts):
        raise ValueError(f"invalid semantic version {v!r}")
    return parts + suffix


def compare_semver(version: str, target: str) -> int:
    """
    Compare version against target up to the precision of target. Returns -1, 0
    or 1. Raises ValueError if either version is malformed.
    """
    target_parts = _split_semver(target)
    version_parts = _split_semver(version)

    for idx, t in enumerate(target_parts):
        if len(version_parts) <= idx:
            # Equal so far but version is less precise. A pre-release target
            # sorts before its release so the version is then greater.
            return 1 if _is_pre_release(target) else -1
        p = version_parts[idx]
        if not p.isdigit():
            if p < t:
                return -1
            if p > t:
                return 1
        elif t.isdigit():
            if int(p) < int(t):
                return -1
            if int(p) > int(t):
                return 1
        else:
            return -1

    if _is_pre_release(version) and not _is_pre_release(target):
        return -1
    return 0


# Matchers


def _unsupported_value(condition: Condition) -> None:
    logger.warning(
        "Audience condition %s has an unsupported condition value. You may need to upgrade to a newer release of the SDK.",
        condition,
    )
    return None


def _missing_attribute(condition: Condition) -> None:
    logger.debug(
        "Audience condition %s evaluated to UNKNOWN because no value was passed for user attribute %r.",
        condition,
        condition.name,
    )
    return None


def _mismatched_type(condition: Condition, value: object) -> None:
    logger.warning(
        "Audience condition %s evaluated to UNKNOWN because a value of type %r was passed for user attribute %r.",
        condition,
        type(value).__name__,
        condition.name,
    )
    return None


def _match_exact(condition: Condition, user: UserContext) -> Tristate:
    cv = condition.value
    if not isinstance(cv, (str, bool)) and not is_finite_number(cv):
        return _unsupported_value(condition)
    if not user.has_attribute(condition.name):
        return _missing_attribute(condition)
    uv = user.attributes[condition.name]
    if isinstance(cv, str):
        return uv == cv if isinstance(uv, str) else _mismatched_type(condition, uv)
    if isinstance(cv, bool):
        return uv == cv if isinstance(uv, bool) else _mismatched_type(condition, uv)
    if not is_finite_number(uv):
        return _mismatched_type(condition, uv)
    return float(uv) == float(cv)


def _match_exists(condition: Condition, user: UserContext) -> Tristate:
    return user.has_attribute(condition.name)


def _match_substring(condition: Condition, user: UserContext) -> Tristate:
    if not isinstance(condition.value, str):
        return _unsupported_value(condition)
    if not user.has_attribute(condition.name):
        return _missing_attribute(condition)
    uv = user.attributes[condition.name]
    if not isinstance(uv, str):
        return _mismatched_type(condition, uv)
    return condition.value in uv


def _numeric_matcher(cmp: Callable[[float, float], bool]) -> Callable[[Condition, UserContext], Tristate]:
    def match(condition: Condition, user: UserContext) -> Tristate:
        if not is_finite_number(condition.value):
            return _unsupported_value(condition)
        if not user.has_attribute(condition.name):
            return _missing_attribute(condition)
        uv = user.attributes[condition.name]
        if not is_finite_number(uv):
            return _mismatched_type(condition, uv)
        return cmp(float(uv), float(condition.value))

    return match


def _semver_matcher(accept: Callable[[int], bool]) -> Callable[[Condition, UserContext], Tristate]:
    def match(condition: Condition, user: UserContext) -> Tristate:
        if not isinstance(condition.value, str):
            return _unsupported_value(condition)
        if not user.has_attribute(condition.name):
            return _missing_attribute(condition)
        uv = user.attributes[condition.name]
        if not isinstance(uv, str):
            return _mismatched_type(condition, uv)
        try:
            return accept(compare_semver(uv, condition.value))
        except ValueError:
            logger.warning("Audience condition %s evaluated to UNKNOWN because of an invalid semantic version.", condition)
            return None

    return match


def _match_qualified(condition: Condition, user: UserContext) -> Tristate:
    if not isinstance(condition.value, str):
        return _unsupported_value(condition)
    return user.is_qualified_for(condition.value)


MATCHERS: dict[str, Callable[[Condition, UserContext], Tristate]] = {
    "exact": _match_exact,
    "exists": _match_exists,
    "substring": _match_substring,
    "lt": _numeric_matcher(lambda a, b: a < b),
    "le": _numeric_matcher(lambda a, b: a <= b),
    "gt": _numeric_matcher(lambda a, b: a > b),
    "ge": _numeric_matcher(lambda a, b: a >= b),
    "semver_eq": _semver_matcher(lambda c: c == 0),
    "semver_lt": _semver_matcher(lambda c: c < 0),
    "semver_le": _semver_matcher(lambda c: c <= 0),
    "semver_gt": _semver_matcher(lambda c: c > 0),
    "semver_ge": _semver_matcher(lambda c: c >= 0),
    "qualified": _match_qualified,
}


def evaluate_condition(condition: Condition, user: UserContext) -> Tristate:
    if condition.type != CUSTOM_ATTRIBUTE_CONDITION_TYPE:
        logger.warning("Audience condition %s uses an unknown condition type.", condition)
        return None
    matcher = MATCHERS.get(condition.match or "exact")
    if matcher is None:
        logger.warning("Audience condition %s uses an unknown match type.", condition)
        return None
    return matcher(condition, user)


# Tree evaluation


def evaluate(node: ConditionTree, user: UserContext, audiences: Mapping[str, Audience]) -> Tristate:
    """
    Evaluate a condition tree for the given user. Audience id leaves are
    dereferenced through audiences and evaluated in the same algebra.
    """
    if isinstance(node, OperatorNode):
        match node.op:
            case "and":
                return _evaluate_and(node.children, user, audiences)
            case "not":
                return _evaluate_not(node.children, user, audiences)
            case _:
                return _evaluate_or(node.children, user, audiences)

    item = node.item
    if isinstance(item, Condition):
        return evaluate_condition(item, user)

    audience = audiences.get(item)
    if audience is None or audience.condition_tree is None:
        logger.debug("Unable to evaluate audience %r: not found", item)
        return None
    logger.debug("Starting to evaluate audience %r.", item)
    result = evaluate(audience.condition_tree, user, audiences)
    logger.debug("Audience %r evaluated to %s.", item, "UNKNOWN" if result is None else result)
    return result


def _evaluate_and(children: list[ConditionTree], user: UserContext, audiences: Mapping[str, Audience]) -> Tristate:
    saw_unknown = False
    for child in children:
        r = evaluate(child, user, audiences)
        if r is None:
            saw_unknown = True
        elif not r:
            return False
    return None if saw_unknown else True


def _evaluate_or(children: list[ConditionTree], user: UserContext, audiences: Mapping[str, Audience]) -> Tristate:
    saw_unknown = False
    for child in children:
        r = evaluate(child, user, audiences)
        if r is None:
            saw_unknown = True
        elif r:
            return True
    return None if saw_unknown else False


def _evaluate_not(children: list[ConditionTree], user: UserContext, audiences: Mapping[str, Audience]) -> Tristate:
    if not children:
        return None
    r = evaluate(children[0], user, audiences)
    return None if r is None else not r


def user_in_audience(
    experiment: Experiment,
    user: UserContext,
    audiences: Mapping[str, Audience],
    logging_key: str | None = None,
) -> tuple[bool, list[str]]:
    """
    Whether the user qualifies for the experiment's audience conditions. An
    experiment without conditions admits everyone. Returns the outcome and the
    informational messages gathered on the way.
    """
    key = logging_key or experiment.key
    tree = experiment.audience_condition_tree
    if tree is None:
        msg = f'Audiences for experiment "{key}" collectively evaluated to TRUE.'
        logger.debug(msg)
        return True, [msg]
    result = evaluate(tree, user, audiences)
    label = "UNKNOWN" if result is None else str(result).upper()
    msg = f'Audiences for experiment "{key}" collectively evaluated to {label}.'
    logger.debug(msg)
    return result is True, [msg]
