"""
Deterministic hash based bucketing.

Stability of the hash is crucial: a user's assignment must be identical across
instances, processes and SDK languages for the same (bucketing id, entity id,
revision). We therefore use MurmurHash3 x86 32-bit with seed 1, the same hash
every other implementation of this datafile format uses, and map it into
[0, 10000) using integer arithmetic so the result can never round up to 10000.
"""

from __future__ import annotations

import logging

import mmh3

from .entities import MAX_TRAFFIC_VALUE, Experiment, Group, Range, Variation
from .reasons import DecisionReason

logger = logging.getLogger(__name__)

HASH_SEED = 1
_MAX_HASH_BITS = 32


def murmur3_32(key: str, seed: int = HASH_SEED) -> int:
    return mmh3.hash(key.encode("utf-8"), seed, signed=False)


def bucket_value(key: str) -> int:
    """
    Hash the given bucketing key into an integer in [0, 10000).
    """
    return (murmur3_32(key) * MAX_TRAFFIC_VALUE) >> _MAX_HASH_BITS


def bucket_to_entity(key: str, ranges: list[Range]) -> str:
    """
    Return the entity id of the first range whose end is greater than the
    bucket value of key. An empty string means the key falls in unallocated
    traffic.
    """
    value = bucket_value(key)
    logger.debug("Assigned bucket %d to bucketing key %r", value, key)
    for r in ranges:
        if value < r.end_of_range:
            return r.entity_id
    return ""


class BucketResult:
    __slots__ = ("variation", "reason")
    variation: Variation | None
    reason: str

    def __init__(self, variation: Variation | None, reason: str):
        self.variation = variation
        self.reason = reason

    def __iter__(self):
        return iter((self.variation, self.reason))


class ExperimentBucketer:
    """
    Buckets a user into a variation of an experiment, honoring mutually
    exclusive groups.
    """

    def bucket_into_group(self, bucketing_id: str, experiment: Experiment, group: Group | None) -> str | None:
        """
        Return None when the user lands on the experiment within its mutex
        group (or the experiment is not mutually exclusive), otherwise the
        reason the user was excluded.
        """
        if group is None or group.policy != "random":
            return None
        bucketed_experiment_id = bucket_to_entity(bucketing_id + group.id, group.traffic_allocation)
        if bucketed_experiment_id == "":
            logger.debug("User with bucketing id %r is not in any experiment of group %s", bucketing_id, group.id)
            return DecisionReason.NOT_IN_GROUP
        if bucketed_experiment_id != experiment.id:
            logger.debug(
                "User with bucketing id %r is not in experiment %s of group %s",
                bucketing_id,
                experiment.key,
                group.id,
            )
            return DecisionReason.NOT_BUCKETED_INTO_VARIATION
        return None

    def bucket(self, bucketing_id: str, experiment: Experiment, group: Group | None) -> BucketResult:
        excluded = self.bucket_into_group(bucketing_id, experiment, group)
        if excluded is not None:
            return BucketResult(None, excluded)

        variation_id = bucket_to_entity(bucketing_id + experiment.id, experiment.traffic_allocation)
        if variation_id == "":
            return BucketResult(None, DecisionReason.NOT_BUCKETED_INTO_VARIATION)
        variation = experiment.get_variation_by_id(variation_id)
        if variation is None:
            return BucketResult(None, DecisionReason.BUCKETED_VARIATION_NOT_FOUND)
        return BucketResult(variation, DecisionReason.BUCKETED_INTO_VARIATION)
