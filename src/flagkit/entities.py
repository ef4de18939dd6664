"""
Value types derived from the datafile, plus the user context and decision
results that flow through the decision pipeline.

Datafile entities are built once by ProjectConfig.from_datafile and shared
read-only by every thread that holds the config. Nothing in the SDK mutates
them after the config is published. They are plain slotted objects, not
frozen ones, so callers must not modify them either.

Entities refer to each other by id rather than by reference wherever the
datafile would otherwise produce cycles (features <-> experiments <-> groups).
The ProjectConfig owns the index maps used to dereference them.
"""

from __future__ import annotations

import math
from enum import StrEnum
from typing import Any, Literal, TypeAlias

AttributeValue: TypeAlias = None | str | bool | int | float
Attributes: TypeAlias = dict[str, Any]

BUCKETING_ID_ATTRIBUTE = "$opt_bucketing_id"
MAX_TRAFFIC_VALUE = 10000


class _Entity:
    """
    Base for the slotted value types. Provides keyword construction, structural
    equality and a readable repr over every declared slot.
    """

    __slots__ = ()

    def __init__(self, **kwargs: Any):
        for k, v in kwargs.items():
            setattr(self, k, v)

    @classmethod
    def _all_slots(cls) -> tuple[str, ...]:
        slots: list[str] = []
        for klass in reversed(cls.__mro__):
            slots.extend(s for s in getattr(klass, "__slots__", ()) if not s.startswith("_"))
        return tuple(slots)

    def __eq__(self, other: object) -> bool:
        if type(self) is not type(other):
            return NotImplemented
        return all(getattr(self, s, None) == getattr(other, s, None) for s in self._all_slots())

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        fields = ", ".join(f"{s}={getattr(self, s, None)!r}" for s in self._all_slots())
        return f"{type(self).__name__}({fields})"


# Condition trees


class Condition(_Entity):
    """A leaf predicate over a single user attribute."""

    __slots__ = ("type", "match", "name", "value")
    type: str
    match: str | None
    name: str
    value: Any

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type, "name": self.name, "value": self.value}
        if self.match is not None:
            d["match"] = self.match
        return d

    def __str__(self) -> str:
        return str(self.to_dict())


class OperatorNode(_Entity):
    __slots__ = ("op", "children")
    op: Literal["and", "or", "not"]
    children: list[ConditionTree]


class LeafNode(_Entity):
    """
    A leaf of a condition tree. The item is a Condition in audience trees and an
    audience id string in audience-condition trees.
    """

    __slots__ = ("item",)
    item: Condition | str


ConditionTree: TypeAlias = OperatorNode | LeafNode


# Datafile entities


class Attribute(_Entity):
    __slots__ = ("id", "key")
    id: str
    key: str


class Audience(_Entity):
    __slots__ = ("id", "name", "conditions", "condition_tree")
    id: str
    name: str
    # Conditions as they appeared in the datafile.
    conditions: Any
    condition_tree: ConditionTree | None


class Event(_Entity):
    __slots__ = ("id", "key", "experiment_ids")
    id: str
    key: str
    experiment_ids: list[str]


class Range(_Entity):
    __slots__ = ("entity_id", "end_of_range")
    entity_id: str
    end_of_range: int


class Variable(_Entity):
    __slots__ = ("id", "key", "type", "sub_type", "default_value")
    id: str
    key: str
    type: Literal["string", "boolean", "integer", "double", "json"]
    sub_type: str
    default_value: str


class Variation(_Entity):
    __slots__ = ("id", "key", "feature_enabled", "variables")
    id: str
    key: str
    feature_enabled: bool
    # Variable id to value override.
    variables: dict[str, str]


class Cmab(_Entity):
    __slots__ = ("attribute_ids", "traffic_allocation")
    attribute_ids: list[str]
    traffic_allocation: int


class ExperimentStatus(StrEnum):
    RUNNING = "Running"
    LAUNCHED = "Launched"
    PAUSED = "Paused"
    NOT_STARTED = "Not started"
    ARCHIVED = "Archived"


class Experiment(_Entity):
    __slots__ = (
        "id",
        "key",
        "layer_id",
        "status",
        "variations",
        "traffic_allocation",
        "audience_ids",
        "audience_conditions",
        "audience_condition_tree",
        "forced_variations",
        "group_id",
        "cmab",
        "_variation_ids_by_key",
    )
    id: str
    key: str
    layer_id: str
    status: str
    # Variation id to variation, in datafile order.
    variations: dict[str, Variation]
    traffic_allocation: list[Range]
    audience_ids: list[str]
    # audienceConditions as they appeared in the datafile, None when absent.
    audience_conditions: Any
    audience_condition_tree: ConditionTree | None
    # User id to variation key.
    forced_variations: dict[str, str]
    group_id: str
    cmab: Cmab | None
    _variation_ids_by_key: dict[str, str]

    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self._variation_ids_by_key = {v.key: v.id for v in self.variations.values()}

    def is_running(self) -> bool:
        return self.status in (ExperimentStatus.RUNNING, ExperimentStatus.LAUNCHED)

    def get_variation_by_key(self, key: str) -> Variation | None:
        vid = self._variation_ids_by_key.get(key)
        return self.variations.get(vid) if vid is not None else None

    def get_variation_by_id(self, id: str) -> Variation | None:
        return self.variations.get(id)


class Group(_Entity):
    __slots__ = ("id", "policy", "experiment_ids", "traffic_allocation")
    id: str
    policy: Literal["random", "overlapping"] | str
    experiment_ids: list[str]
    traffic_allocation: list[Range]


class Rollout(_Entity):
    __slots__ = ("id", "experiments")
    id: str
    experiments: list[Experiment]


class Feature(_Entity):
    __slots__ = ("id", "key", "rollout_id", "experiment_ids", "variables", "feature_experiments", "rollout")
    id: str
    key: str
    rollout_id: str
    experiment_ids: list[str]
    # Variable key to variable, in datafile order.
    variables: dict[str, Variable]
    feature_experiments: list[Experiment]
    rollout: Rollout | None


class Integration(_Entity):
    __slots__ = ("key", "host", "public_key")
    key: str
    host: str | None
    public_key: str | None


# User context


class UserContext(_Entity):
    """
    The user being decided for. This is the plain value handed to the decision
    pipeline; the facade's UserContext wraps it with decide/track operations.
    """

    __slots__ = ("id", "attributes", "qualified_segments")
    id: str
    attributes: Attributes
    qualified_segments: list[str] | None

    def __init__(self, id: str, attributes: Attributes | None = None, qualified_segments: list[str] | None = None):
        super().__init__(id=id, attributes=dict(attributes or {}), qualified_segments=qualified_segments)

    def get_bucketing_id(self) -> str:
        """
        The bucketing id is the $opt_bucketing_id attribute when it is a
        string, otherwise the user id.
        """
        value = self.attributes.get(BUCKETING_ID_ATTRIBUTE)
        if isinstance(value, str):
            return value
        return self.id

    def has_attribute(self, name: str) -> bool:
        return self.attributes.get(name) is not None

    def is_qualified_for(self, segment: str) -> bool:
        return segment in (self.qualified_segments or ())


def is_finite_number(v: Any) -> bool:
    """
    True for ints and floats (not bools) that are finite and whose magnitude is
    representable exactly as a double.
    """
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return False
    if isinstance(v, float) and (math.isnan(v) or math.isinf(v)):
        return False
    return abs(v) <= 2**53


# Decision results


class DecisionSource(StrEnum):
    FEATURE_TEST = "feature-test"
    ROLLOUT = "rollout"
    EXPERIMENT = "experiment"


class ExperimentDecision(_Entity):
    __slots__ = ("variation", "reason", "cmab_uuid", "error")
    variation: Variation | None
    reason: str
    cmab_uuid: str | None
    error: Exception | None

    def __init__(self, variation: Variation | None = None, reason: str = "", cmab_uuid: str | None = None, error: Exception | None = None):
        super().__init__(variation=variation, reason=reason, cmab_uuid=cmab_uuid, error=error)


class FeatureDecision(_Entity):
    __slots__ = ("experiment", "variation", "source", "reason", "cmab_uuid", "error")
    experiment: Experiment | None
    variation: Variation | None
    source: DecisionSource
    reason: str
    cmab_uuid: str | None
    error: Exception | None

    def __init__(
        self,
        experiment: Experiment | None = None,
        variation: Variation | None = None,
        source: DecisionSource = DecisionSource.ROLLOUT,
        reason: str = "",
        cmab_uuid: str | None = None,
        error: Exception | None = None,
    ):
        super().__init__(experiment=experiment, variation=variation, source=source, reason=reason, cmab_uuid=cmab_uuid, error=error)

    @property
    def feature_enabled(self) -> bool:
        return self.variation is not None and bool(self.variation.feature_enabled)


class CmabDecision(_Entity):
    __slots__ = ("variation_id", "cmab_uuid", "reasons")
    variation_id: str
    cmab_uuid: str
    reasons: list[str]
