"""
Impression and conversion events, and their serialization into the batch
format accepted by the event ingest endpoint.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from typing import TYPE_CHECKING, Any

from . import __version__
from .entities import Attributes, DecisionSource, Event, Experiment, UserContext, Variation, is_finite_number

if TYPE_CHECKING:
    from .project_config import ProjectConfig

logger = logging.getLogger(__name__)

CLIENT_NAME = "python-sdk"
DEFAULT_EVENT_ENDPOINT = "https://logx.optimizely.com/v1/events"

ACTIVATE_EVENT_KEY = "campaign_activated"
CUSTOM_ATTRIBUTE_TYPE = "custom"
BOT_FILTERING_ATTRIBUTE = "$opt_bot_filtering"
RESERVED_ATTRIBUTE_PREFIX = "$opt_"


class EventContext:
    __slots__ = ("project_id", "account_id", "revision", "client_name", "client_version", "anonymize_ip", "bot_filtering")
    project_id: str
    account_id: str
    revision: str
    client_name: str
    client_version: str
    anonymize_ip: bool
    bot_filtering: bool | None

    def __init__(self, config: ProjectConfig):
        self.project_id = config.project_id
        self.account_id = config.account_id
        self.revision = config.revision
        self.client_name = CLIENT_NAME
        self.client_version = __version__
        self.anonymize_ip = config.anonymize_ip
        self.bot_filtering = config.bot_filtering

    def batch_key(self) -> tuple[str, str]:
        """Events may only share a batch when their batch keys are equal."""
        return (self.project_id, self.revision)


class VisitorAttribute:
    __slots__ = ("entity_id", "key", "type", "value")

    def __init__(self, entity_id: str, key: str, value: Any, type: str = CUSTOM_ATTRIBUTE_TYPE):
        self.entity_id = entity_id
        self.key = key
        self.value = value
        self.type = type

    def to_dict(self) -> dict[str, Any]:
        return {"entity_id": self.entity_id, "key": self.key, "type": self.type, "value": self.value}


class ImpressionEvent:
    __slots__ = (
        "campaign_id",
        "experiment_id",
        "variation_id",
        "flag_key",
        "rule_key",
        "rule_type",
        "variation_key",
        "enabled",
        "cmab_uuid",
    )
    campaign_id: str
    experiment_id: str
    variation_id: str
    flag_key: str
    rule_key: str
    rule_type: str
    variation_key: str
    enabled: bool
    cmab_uuid: str | None

    def metadata(self) -> dict[str, Any]:
        md: dict[str, Any] = {
            "flag_key": self.flag_key,
            "rule_key": self.rule_key,
            "rule_type": self.rule_type,
            "variation_key": self.variation_key,
            "enabled": self.enabled,
        }
        if self.cmab_uuid:
            md["cmab_uuid"] = self.cmab_uuid
        return md


class ConversionEvent:
    __slots__ = ("entity_id", "key", "tags", "revenue", "value")
    entity_id: str
    key: str
    tags: dict[str, Any]
    revenue: int | None
    value: float | None


class UserEvent:
    __slots__ = ("context", "timestamp", "uuid", "visitor_id", "attributes", "impression", "conversion")
    context: EventContext
    # Milliseconds since the epoch.
    timestamp: int
    uuid: str
    visitor_id: str
    attributes: list[VisitorAttribute]
    impression: ImpressionEvent | None
    conversion: ConversionEvent | None

    def __init__(self, config: ProjectConfig, user: UserContext):
        self.context = EventContext(config)
        self.timestamp = int(time.time() * 1000)
        self.uuid = str(uuid.uuid4())
        self.visitor_id = user.id
        self.attributes = build_visitor_attributes(config, user.attributes)
        self.impression = None
        self.conversion = None


class LogEvent:
    __slots__ = ("endpoint", "params", "http_verb", "headers")

    def __init__(self, endpoint: str, params: dict[str, Any]):
        self.endpoint = endpoint
        self.params = params
        self.http_verb = "POST"
        self.headers = {"Content-Type": "application/json"}


def build_visitor_attributes(config: ProjectConfig, attributes: Attributes) -> list[VisitorAttribute]:
    """
    Map user attributes to visitor attributes through the datafile's attribute
    keys. Unknown keys are dropped unless they are reserved ($opt_ prefixed).
    """
    result = []
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, float) and not math.isfinite(value):
            continue
        attribute = config.attributes.get(key)
        if attribute is not None:
            result.append(VisitorAttribute(attribute.id, key, value))
        elif key.startswith(RESERVED_ATTRIBUTE_PREFIX):
            result.append(VisitorAttribute(key, key, value))
        else:
            logger.debug("Dropping unknown attribute %r from event", key)
    if config.bot_filtering is not None:
        result.append(VisitorAttribute(BOT_FILTERING_ATTRIBUTE, BOT_FILTERING_ATTRIBUTE, config.bot_filtering))
    return result


def create_impression_event(
    config: ProjectConfig,
    experiment: Experiment | None,
    variation: Variation | None,
    user: UserContext,
    flag_key: str,
    rule_key: str,
    rule_type: str,
    enabled: bool,
    cmab_uuid: str | None = None,
) -> UserEvent | None:
    """
    Build the impression for a decision. Returns None when nothing should be
    recorded: rollout decisions and empty decisions are only recorded when the
    datafile sets sendFlagDecisions.
    """
    if (rule_type == DecisionSource.ROLLOUT or variation is None) and not config.send_flag_decisions:
        return None

    imp = ImpressionEvent()
    imp.campaign_id = experiment.layer_id if experiment is not None else ""
    imp.experiment_id = experiment.id if experiment is not None else ""
    imp.variation_id = variation.id if variation is not None else ""
    imp.flag_key = flag_key
    imp.rule_key = rule_key
    imp.rule_type = str(rule_type)
    imp.variation_key = variation.key if variation is not None else ""
    imp.enabled = enabled
    imp.cmab_uuid = cmab_uuid

    e = UserEvent(config, user)
    e.impression = imp
    return e


def _revenue(tags: dict[str, Any]) -> int | None:
    v = tags.get("revenue")
    if isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float) and math.isfinite(v) and v.is_integer():
        return int(v)
    return None


def _value(tags: dict[str, Any]) -> float | None:
    v = tags.get("value")
    if is_finite_number(v):
        return float(v)
    return None


def create_conversion_event(config: ProjectConfig, event: Event, user: UserContext, tags: dict[str, Any] | None = None) -> UserEvent:
    tags = dict(tags or {})
    conv = ConversionEvent()
    conv.entity_id = event.id
    conv.key = event.key
    conv.tags = tags
    conv.revenue = _revenue(tags)
    conv.value = _value(tags)

    e = UserEvent(config, user)
    e.conversion = conv
    return e


def _snapshot(e: UserEvent) -> dict[str, Any]:
    if e.impression is not None:
        imp = e.impression
        return {
            "decisions": [
                {
                    "campaign_id": imp.campaign_id,
                    "experiment_id": imp.experiment_id,
                    "variation_id": imp.variation_id,
                    "metadata": imp.metadata(),
                }
            ],
            "events": [
                {
                    "entity_id": imp.campaign_id,
                    "key": ACTIVATE_EVENT_KEY,
                    "timestamp": e.timestamp,
                    "uuid": e.uuid,
                }
            ],
        }

    assert e.conversion is not None
    conv = e.conversion
    ev: dict[str, Any] = {
        "entity_id": conv.entity_id,
        "key": conv.key,
        "timestamp": e.timestamp,
        "uuid": e.uuid,
    }
    if conv.tags:
        ev["tags"] = conv.tags
    if conv.revenue is not None:
        ev["revenue"] = conv.revenue
    if conv.value is not None:
        ev["value"] = conv.value
    return {"events": [ev]}


def build_log_event(user_events: list[UserEvent], endpoint: str = DEFAULT_EVENT_ENDPOINT) -> LogEvent:
    """
    Serialize a batch of user events. All events must share the same batch
    key; the batch context is taken from the first one.
    """
    if not user_events:
        raise ValueError("cannot build a log event from an empty batch")
    ctx = user_events[0].context
    visitors = [
        {
            "visitor_id": e.visitor_id,
            "attributes": [a.to_dict() for a in e.attributes],
            "snapshots": [_snapshot(e)],
        }
        for e in user_events
    ]
    params = {
        "account_id": ctx.account_id,
        "project_id": ctx.project_id,
        "revision": ctx.revision,
        "client_name": ctx.client_name,
        "client_version": ctx.client_version,
        "anonymize_ip": ctx.anonymize_ip,
        "enrich_decisions": True,
        "visitors": visitors,
    }
    return LogEvent(endpoint, params)
