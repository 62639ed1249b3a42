"""
druidlink - ZooKeeper-discovered Druid broker client.

Keeps a watch-driven cache of the live brokers registered under a discovery
path and dispatches queries to one of them, with static override and
fallback endpoints.

## Architecture

- **core**: registry session, one-shot watchers, broker cache, selection
- **client**: request dispatcher and the ``DruidClient`` facade
- **cli**: diagnostics commands

## Quick Start

```python
from druidlink import DruidClient, DruidLinkSettings

settings = DruidLinkSettings(zookeeper_uri="zk1:2181,zk2:2181")
async with await DruidClient.connect(settings) as client:
    rows = await client.send(query)
```
"""

from .client import DataSourceMetadata, Dispatcher, DruidClient
from .core import (
    BrokerCache,
    BrokerDiscovery,
    DispatchConfig,
    DruidLinkError,
    DruidLinkSettings,
    Endpoint,
    EndpointSelector,
    NoEndpointAvailable,
    RegistryConnectionError,
    RegistrySession,
    RequestFailed,
    ServiceUnavailable,
    ServiceWatcher,
)

__version__ = "0.1.0"
__license__ = "MIT"

__all__ = [
    # Core
    "BrokerCache",
    "BrokerDiscovery",
    "DispatchConfig",
    "DruidLinkSettings",
    "Endpoint",
    "EndpointSelector",
    "RegistrySession",
    "ServiceWatcher",
    # Errors
    "DruidLinkError",
    "NoEndpointAvailable",
    "RegistryConnectionError",
    "RequestFailed",
    "ServiceUnavailable",
    # Client
    "DataSourceMetadata",
    "Dispatcher",
    "DruidClient",
]
