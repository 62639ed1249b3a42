"""
Semantic type aliases for druidlink.

These aliases keep signatures self-documenting by naming what a raw str,
int or float stands for in the discovery and dispatch layers.
"""

from collections.abc import Mapping
from typing import Any, TypeAlias

# Time and timestamp types
Timestamp: TypeAlias = float
DurationSeconds: TypeAlias = float

# Coordination service types
ZNodePath: TypeAlias = str
ZNodeName: TypeAlias = str
SessionEpoch: TypeAlias = int
ConnectionString: TypeAlias = str

# Network types
HostAddress: TypeAlias = str
PortNumber: TypeAlias = int
UrlString: TypeAlias = str

# Broker discovery types
ServiceName: TypeAlias = str
EndpointName: TypeAlias = str
DataSourceName: TypeAlias = str

# Statistics types
EntryCount: TypeAlias = int

# Payload types
JsonDict: TypeAlias = dict[str, Any]
QueryPayload: TypeAlias = Mapping[str, Any]
