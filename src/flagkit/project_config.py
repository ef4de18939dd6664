"""
Datafile parsing. A datafile is validated against datafile_schema.json, mapped
into the entity graph and indexed once. The resulting ProjectConfig is never
mutated after construction; config managers publish a new instance per
revision.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable
from typing import Any, TypeAlias

import dill
import jsonschema

from .entities import (
    Attribute,
    Audience,
    Cmab,
    Condition,
    ConditionTree,
    Event,
    Experiment,
    Feature,
    Group,
    Integration,
    LeafNode,
    OperatorNode,
    Range,
    Rollout,
    Variable,
    Variation,
)
from .errors import InvalidDatafileError, NotFoundError

logger = logging.getLogger(__name__)

SUPPORTED_VERSIONS = {"4"}

_OPERATORS = {"and", "or", "not"}

with open(os.path.join(os.path.dirname(__file__), "datafile_schema.json")) as f:
    _datafile_schema = json.load(f)

DictDatafile: TypeAlias = dict[str, Any]


def build_condition_tree(conditions: Any) -> ConditionTree | None:
    """
    Compile the conditions of an audience into a condition tree. Legacy
    audiences carry their conditions as a JSON encoded string.
    """
    if isinstance(conditions, str):
        try:
            conditions = json.loads(conditions)
        except ValueError as e:
            raise InvalidDatafileError(f"invalid audience conditions {conditions!r}: {e}") from e
    return _compile(conditions, audience_leaves=False)


def build_audience_condition_tree(audience_conditions: Any) -> ConditionTree | None:
    """
    Compile an experiment's audienceConditions into a tree whose leaves are
    audience ids.
    """
    return _compile(audience_conditions, audience_leaves=True)


def _compile(raw: Any, audience_leaves: bool) -> ConditionTree | None:
    if isinstance(raw, list):
        if not raw:
            return None
        if isinstance(raw[0], str) and raw[0] in _OPERATORS:
            op, rest = raw[0], raw[1:]
        else:
            # A bare list without a leading operator is an implicit "or".
            op, rest = "or", raw
        children = [c for c in (_compile(r, audience_leaves) for r in rest) if c is not None]
        return OperatorNode(op=op, children=children)
    if isinstance(raw, dict):
        return LeafNode(
            item=Condition(
                type=raw.get("type"),
                match=raw.get("match"),
                name=raw.get("name"),
                value=raw.get("value"),
            )
        )
    if isinstance(raw, str) and audience_leaves:
        return LeafNode(item=raw)
    return None


def _map_ranges(raw: list[dict]) -> list[Range]:
    return [Range(entity_id=r["entityId"], end_of_range=r["endOfRange"]) for r in raw]


def _map_experiment(raw: dict, group_id: str = "") -> Experiment:
    variations = {}
    for v in raw["variations"]:
        variations[v["id"]] = Variation(
            id=v["id"],
            key=v["key"],
            feature_enabled=v.get("featureEnabled", False),
            variables={vv["id"]: vv["value"] for vv in v.get("variables", [])},
        )

    audience_ids = list(raw.get("audienceIds", []))
    audience_conditions = raw.get("audienceConditions")
    if audience_conditions is not None:
        tree = build_audience_condition_tree(audience_conditions)
    elif audience_ids:
        tree = OperatorNode(op="or", children=[LeafNode(item=a) for a in audience_ids])
    else:
        tree = None

    cmab = None
    if raw.get("cmab") is not None:
        cmab = Cmab(
            attribute_ids=list(raw["cmab"].get("attributeIds", [])),
            traffic_allocation=raw["cmab"].get("trafficAllocation", 0),
        )

    return Experiment(
        id=raw["id"],
        key=raw["key"],
        layer_id=raw.get("layerId", ""),
        status=raw.get("status", ""),
        variations=variations,
        traffic_allocation=_map_ranges(raw["trafficAllocation"]),
        audience_ids=audience_ids,
        audience_conditions=audience_conditions,
        audience_condition_tree=tree,
        forced_variations=dict(raw.get("forcedVariations", {})),
        group_id=group_id or raw.get("groupId", ""),
        cmab=cmab,
    )


def _map_variable(raw: dict) -> Variable:
    sub_type = raw.get("subType", "")
    var_type = raw["type"]
    if var_type == "string" and sub_type == "json":
        var_type = "json"
    return Variable(id=raw["id"], key=raw["key"], type=var_type, sub_type=sub_type, default_value=raw["defaultValue"])


class ProjectConfig:
    """
    The parsed and indexed datafile. Use ProjectConfig.from_datafile to build
    one.
    """

    __slots__ = (
        "datafile",
        "version",
        "account_id",
        "project_id",
        "revision",
        "anonymize_ip",
        "bot_filtering",
        "sdk_key",
        "environment_key",
        "send_flag_decisions",
        "attributes",
        "audiences",
        "events",
        "experiments",
        "features",
        "groups",
        "rollouts",
        "integrations",
        "_raw_audiences",
        "_raw_typed_audiences",
        "_experiment_ids_by_key",
        "_experiments_by_id",
        "_attribute_keys_by_id",
        "_features_by_id",
        "_feature_keys_by_experiment_id",
        "_variations_by_flag_key",
    )
    datafile: str
    version: str
    account_id: str
    project_id: str
    revision: str
    anonymize_ip: bool
    bot_filtering: bool | None
    sdk_key: str
    environment_key: str
    send_flag_decisions: bool
    # Attribute key to attribute.
    attributes: dict[str, Attribute]
    # Audience id to audience. Typed audiences win over legacy ones.
    audiences: dict[str, Audience]
    # Event key to event.
    events: dict[str, Event]
    # A/B and feature test experiments (not rollout rules) by key, in datafile order.
    experiments: dict[str, Experiment]
    # Feature key to feature, in datafile order.
    features: dict[str, Feature]
    groups: dict[str, Group]
    rollouts: dict[str, Rollout]
    integrations: list[Integration]

    @staticmethod
    def from_datafile(datafile: bytes | str | DictDatafile) -> ProjectConfig:
        """
        Parse, validate and index the given datafile. Raises InvalidDatafileError.
        """
        if isinstance(datafile, (bytes, bytearray)):
            try:
                datafile = datafile.decode("utf-8")
            except UnicodeDecodeError as e:
                raise InvalidDatafileError(f"datafile is not valid UTF-8: {e}") from e
        if isinstance(datafile, str):
            raw_str = datafile
            try:
                d = json.loads(datafile)
            except ValueError as e:
                raise InvalidDatafileError(f"datafile is not valid JSON: {e}") from e
        else:
            d = datafile
            raw_str = json.dumps(d)
        if not isinstance(d, dict):
            raise InvalidDatafileError("datafile must be a JSON object")

        version = d.get("version")
        if version not in SUPPORTED_VERSIONS:
            raise InvalidDatafileError(f"unsupported datafile version {version!r}")

        try:
            jsonschema.validate(d, _datafile_schema)
        except jsonschema.ValidationError as e:
            raise InvalidDatafileError(f"datafile failed validation: {e.message}") from e

        c = ProjectConfig()
        c.datafile = raw_str
        c.version = version
        c.account_id = d["accountId"]
        c.project_id = d["projectId"]
        c.revision = d["revision"]
        c.anonymize_ip = d.get("anonymizeIP", False)
        c.bot_filtering = d.get("botFiltering")
        c.sdk_key = d.get("sdkKey", "")
        c.environment_key = d.get("environmentKey", "")
        c.send_flag_decisions = d.get("sendFlagDecisions", False)

        # Attributes

        c.attributes = {}
        c._attribute_keys_by_id = {}
        for a in d["attributes"]:
            c.attributes[a["key"]] = Attribute(id=a["id"], key=a["key"])
            c._attribute_keys_by_id[a["id"]] = a["key"]

        # Audiences

        c._raw_audiences = d["audiences"]
        c._raw_typed_audiences = d.get("typedAudiences", [])
        c.audiences = {}
        for a in c._raw_audiences + c._raw_typed_audiences:
            c.audiences[a["id"]] = Audience(
                id=a["id"],
                name=a.get("name", ""),
                conditions=a["conditions"],
                condition_tree=build_condition_tree(a["conditions"]),
            )

        # Events

        c.events = {e["key"]: Event(id=e["id"], key=e["key"], experiment_ids=list(e.get("experimentIds", []))) for e in d["events"]}

        # Experiments and groups

        c.experiments = {}
        c._experiments_by_id = {}
        for e in d["experiments"]:
            exp = _map_experiment(e)
            c.experiments[exp.key] = exp
            c._experiments_by_id[exp.id] = exp

        c.groups = {}
        for g in d["groups"]:
            group = Group(
                id=g["id"],
                policy=g["policy"],
                experiment_ids=[e["id"] for e in g["experiments"]],
                traffic_allocation=_map_ranges(g["trafficAllocation"]),
            )
            c.groups[group.id] = group
            for e in g["experiments"]:
                exp = _map_experiment(e, group_id=group.id)
                c.experiments[exp.key] = exp
                c._experiments_by_id[exp.id] = exp

        c._experiment_ids_by_key = {k: e.id for k, e in c.experiments.items()}

        # Rollouts. Rollout rules are reachable by id but not by key since rule
        # keys are not unique across rollouts.

        c.rollouts = {}
        for r in d["rollouts"]:
            rules = [_map_experiment(e) for e in r["experiments"]]
            c.rollouts[r["id"]] = Rollout(id=r["id"], experiments=rules)
            for rule in rules:
                c._experiments_by_id.setdefault(rule.id, rule)

        # Features

        c.features = {}
        c._features_by_id = {}
        c._feature_keys_by_experiment_id = {}
        c._variations_by_flag_key = {}
        for f in d["featureFlags"]:
            experiment_ids = list(f.get("experimentIds", []))
            rollout_id = f.get("rolloutId", "")
            feature = Feature(
                id=f["id"],
                key=f["key"],
                rollout_id=rollout_id,
                experiment_ids=experiment_ids,
                variables={v["key"]: _map_variable(v) for v in f.get("variables", [])},
                feature_experiments=[c._experiments_by_id[eid] for eid in experiment_ids if eid in c._experiments_by_id],
                rollout=c.rollouts.get(rollout_id) if rollout_id else None,
            )
            c.features[feature.key] = feature
            c._features_by_id[feature.id] = feature
            for eid in experiment_ids:
                c._feature_keys_by_experiment_id.setdefault(eid, []).append(feature.key)

            variations: dict[str, Variation] = {}
            rules = list(feature.feature_experiments) + (list(feature.rollout.experiments) if feature.rollout else [])
            for rule in rules:
                for v in rule.variations.values():
                    variations.setdefault(v.id, v)
            c._variations_by_flag_key[feature.key] = list(variations.values())

        # Integrations

        c.integrations = [Integration(key=i["key"], host=i.get("host"), public_key=i.get("publicKey")) for i in d.get("integrations", [])]

        logger.debug("Parsed datafile revision %s of project %s", c.revision, c.project_id)
        return c

    @staticmethod
    def from_bytes(b: bytes) -> ProjectConfig:
        obj = dill.loads(b)
        assert isinstance(obj, ProjectConfig)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    def to_datafile(self) -> DictDatafile:
        """
        Rebuild a datafile from the entity graph. Parsing the result yields a
        config equal to this one for every field the SDK preserves.
        """

        def ranges(rs: list[Range]) -> list[dict]:
            return [{"entityId": r.entity_id, "endOfRange": r.end_of_range} for r in rs]

        def experiment(e: Experiment) -> dict:
            d: dict[str, Any] = {
                "id": e.id,
                "key": e.key,
                "layerId": e.layer_id,
                "status": e.status,
                "variations": [
                    {
                        "id": v.id,
                        "key": v.key,
                        "featureEnabled": v.feature_enabled,
                        "variables": [{"id": vid, "value": val} for vid, val in v.variables.items()],
                    }
                    for v in e.variations.values()
                ],
                "trafficAllocation": ranges(e.traffic_allocation),
                "audienceIds": list(e.audience_ids),
                "forcedVariations": dict(e.forced_variations),
            }
            if e.audience_conditions is not None:
                d["audienceConditions"] = e.audience_conditions
            if e.cmab is not None:
                d["cmab"] = {"attributeIds": list(e.cmab.attribute_ids), "trafficAllocation": e.cmab.traffic_allocation}
            return d

        grouped = {eid for g in self.groups.values() for eid in g.experiment_ids}
        d: DictDatafile = {
            "version": self.version,
            "accountId": self.account_id,
            "projectId": self.project_id,
            "revision": self.revision,
            "anonymizeIP": self.anonymize_ip,
            "sendFlagDecisions": self.send_flag_decisions,
            "attributes": [{"id": a.id, "key": a.key} for a in self.attributes.values()],
            "audiences": list(self._raw_audiences),
            "typedAudiences": list(self._raw_typed_audiences),
            "events": [{"id": e.id, "key": e.key, "experimentIds": list(e.experiment_ids)} for e in self.events.values()],
            "experiments": [experiment(e) for e in self.experiments.values() if e.id not in grouped],
            "groups": [
                {
                    "id": g.id,
                    "policy": g.policy,
                    "experiments": [experiment(self._experiments_by_id[eid]) for eid in g.experiment_ids],
                    "trafficAllocation": ranges(g.traffic_allocation),
                }
                for g in self.groups.values()
            ],
            "featureFlags": [
                {
                    "id": f.id,
                    "key": f.key,
                    "rolloutId": f.rollout_id,
                    "experimentIds": list(f.experiment_ids),
                    "variables": [
                        {"id": v.id, "key": v.key, "type": v.type, "defaultValue": v.default_value, **({"subType": v.sub_type} if v.sub_type else {})}
                        for v in f.variables.values()
                    ],
                }
                for f in self.features.values()
            ],
            "rollouts": [{"id": r.id, "experiments": [experiment(e) for e in r.experiments]} for r in self.rollouts.values()],
            "integrations": [
                {"key": i.key, **({"host": i.host} if i.host is not None else {}), **({"publicKey": i.public_key} if i.public_key is not None else {})}
                for i in self.integrations
            ],
        }
        if self.bot_filtering is not None:
            d["botFiltering"] = self.bot_filtering
        if self.sdk_key:
            d["sdkKey"] = self.sdk_key
        if self.environment_key:
            d["environmentKey"] = self.environment_key
        return d

    def to_summary(self) -> dict[str, Any]:
        """
        A read-only projection of the config for applications: experiments and
        features keyed by key, with the variable values each variation
        resolves to, plus the revision and raw datafile.
        """

        def variables_map(variables: Iterable[Variable], values: dict[str, str] | None = None) -> dict:
            values = values or {}
            return {
                v.key: {"id": v.id, "key": v.key, "type": v.type, "value": values.get(v.id, v.default_value)}
                for v in variables
            }

        def experiment_summary(e: Experiment) -> dict:
            feature_keys = self._feature_keys_by_experiment_id.get(e.id)
            variables = self.features[feature_keys[0]].variables.values() if feature_keys else ()
            return {
                "id": e.id,
                "key": e.key,
                "variations_map": {
                    v.key: {
                        "id": v.id,
                        "key": v.key,
                        "feature_enabled": v.feature_enabled,
                        # Disabled variations resolve to the defaults.
                        "variables_map": variables_map(variables, v.variables if v.feature_enabled else None),
                    }
                    for v in e.variations.values()
                },
            }

        return {
            "revision": self.revision,
            "experiments_map": {key: experiment_summary(e) for key, e in self.experiments.items()},
            "features_map": {
                f.key: {
                    "id": f.id,
                    "key": f.key,
                    "experiments_map": {e.key: experiment_summary(e) for e in f.feature_experiments},
                    "variables_map": variables_map(f.variables.values()),
                }
                for f in self.features.values()
            },
            "datafile": self.datafile,
        }

    # Lookups. All raise NotFoundError for unknown keys/ids.

    def get_feature_by_key(self, key: str) -> Feature:
        try:
            return self.features[key]
        except KeyError:
            raise NotFoundError(f'feature with key "{key}" not found') from None

    def get_feature_by_id(self, id: str) -> Feature:
        try:
            return self._features_by_id[id]
        except KeyError:
            raise NotFoundError(f'feature with id "{id}" not found') from None

    def get_experiment_by_key(self, key: str) -> Experiment:
        try:
            return self.experiments[key]
        except KeyError:
            raise NotFoundError(f'experiment with key "{key}" not found') from None

    def get_experiment_by_id(self, id: str) -> Experiment:
        try:
            return self._experiments_by_id[id]
        except KeyError:
            raise NotFoundError(f'experiment with id "{id}" not found') from None

    def get_experiment_id_by_key(self, key: str) -> str:
        try:
            return self._experiment_ids_by_key[key]
        except KeyError:
            raise NotFoundError(f'experiment with key "{key}" not found') from None

    def get_event_by_key(self, key: str) -> Event:
        try:
            return self.events[key]
        except KeyError:
            raise NotFoundError(f'event with key "{key}" not found') from None

    def get_attribute_by_key(self, key: str) -> Attribute:
        try:
            return self.attributes[key]
        except KeyError:
            raise NotFoundError(f'attribute with key "{key}" not found') from None

    def get_attribute_key_by_id(self, id: str) -> str:
        try:
            return self._attribute_keys_by_id[id]
        except KeyError:
            raise NotFoundError(f'attribute with id "{id}" not found') from None

    def get_audience_by_id(self, id: str) -> Audience:
        try:
            return self.audiences[id]
        except KeyError:
            raise NotFoundError(f'audience with id "{id}" not found') from None

    def get_group_by_id(self, id: str) -> Group:
        try:
            return self.groups[id]
        except KeyError:
            raise NotFoundError(f'group with id "{id}" not found') from None

    def get_rollout_by_id(self, id: str) -> Rollout:
        try:
            return self.rollouts[id]
        except KeyError:
            raise NotFoundError(f'rollout with id "{id}" not found') from None

    def get_variable_by_key(self, feature_key: str, variable_key: str) -> Variable:
        feature = self.get_feature_by_key(feature_key)
        try:
            return feature.variables[variable_key]
        except KeyError:
            raise NotFoundError(f'variable with key "{variable_key}" not found in feature "{feature_key}"') from None

    def get_feature_keys_for_experiment(self, experiment_id: str) -> list[str]:
        return list(self._feature_keys_by_experiment_id.get(experiment_id, []))

    def get_flag_variations(self, flag_key: str) -> list[Variation]:
        return list(self._variations_by_flag_key.get(flag_key, []))

    def get_flag_variation_by_key(self, flag_key: str, variation_key: str) -> Variation | None:
        for v in self._variations_by_flag_key.get(flag_key, []):
            if v.key == variation_key:
                return v
        return None

    def is_feature_experiment(self, experiment_id: str) -> bool:
        return experiment_id in self._feature_keys_by_experiment_id
