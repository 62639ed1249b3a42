"""
druidlink Core Module

Service discovery against the coordination service: session lifecycle,
one-shot watches, the reconciled broker cache and endpoint selection.
"""

from .broker_cache import BrokerCache, BrokerCacheStats, Endpoint, ReconcileResult
from .config import DispatchConfig, DruidLinkSettings
from .coordination import (
    CoordinationClient,
    KazooCoordinationClient,
    MemoryCoordinationClient,
    SessionEvent,
)
from .discovery import BrokerDiscovery
from .errors import (
    DruidLinkError,
    EndpointMetadataError,
    NoEndpointAvailable,
    RegistryConnectionError,
    RegistryNodeMissing,
    RequestFailed,
    ServiceUnavailable,
)
from .selector import EndpointSelector
from .session import RegistrySession, SessionOptions, SessionState, WatchHandle
from .watcher import ServiceWatcher, WatchState
