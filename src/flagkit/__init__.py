__version__ = "1.0.0"

from .client import Client, Decision, UserContext, new_client
from .cmab import CmabClient, CmabService, LRUCache, RetryConfig
from .config_manager import PollingConfigManager, ProjectConfigManager, Requester, StaticConfigManager
from .decision import DecideOption, DecisionService, ExperimentOverrideStore, InMemoryUserProfileService, UserProfileService
from .errors import (
    CmabFetchError,
    CmabFetchFailedError,
    ConfigNotReadyError,
    FlagKitError,
    InvalidArgumentError,
    InvalidAttributeValueTypeError,
    InvalidDatafileError,
    NotFoundError,
    TransportError,
)
from .event_processor import BatchEventProcessor, EventDispatcher, ForwardingEventProcessor, HTTPEventDispatcher
from .events import CLIENT_NAME
from .notification import NotificationCenter, NotificationType
from .project_config import ProjectConfig

__all__ = [
    "__version__",
    "CLIENT_NAME",
    "BatchEventProcessor",
    "Client",
    "CmabClient",
    "CmabFetchError",
    "CmabFetchFailedError",
    "CmabService",
    "ConfigNotReadyError",
    "DecideOption",
    "Decision",
    "DecisionService",
    "EventDispatcher",
    "ExperimentOverrideStore",
    "FlagKitError",
    "ForwardingEventProcessor",
    "HTTPEventDispatcher",
    "InMemoryUserProfileService",
    "InvalidArgumentError",
    "InvalidAttributeValueTypeError",
    "InvalidDatafileError",
    "LRUCache",
    "NotFoundError",
    "NotificationCenter",
    "NotificationType",
    "PollingConfigManager",
    "ProjectConfig",
    "ProjectConfigManager",
    "Requester",
    "RetryConfig",
    "StaticConfigManager",
    "TransportError",
    "UserContext",
    "UserProfileService",
    "new_client",
]
