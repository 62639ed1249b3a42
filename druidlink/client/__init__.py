"""
druidlink Client Module

Request dispatch to discovered, static or fallback brokers.
"""

from __future__ import annotations

from .client import DruidClient
from .dispatcher import DataSourceMetadata, Dispatcher

__all__ = [
    "DataSourceMetadata",
    "Dispatcher",
    "DruidClient",
]
