from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterable
from typing import TypeAlias
from dataclasses import dataclass, field, replace
from threading import Lock

from loguru import logger

from druidlink.datastructures.type_aliases import (
    EndpointName,
    EntryCount,
    HostAddress,
    JsonDict,
    PortNumber,
    Timestamp,
    UrlString,
)

from .config import DEFAULT_API_VERSION, DEFAULT_SERVICE_ROOT
from .errors import EndpointMetadataError

EndpointFetcher: TypeAlias = Callable[[EndpointName], "Endpoint | None"]


@dataclass(frozen=True, slots=True)
class Endpoint:
    """A registered broker and the base URI queries are posted to."""

    name: EndpointName
    address: HostAddress
    port: PortNumber
    service_root: str = DEFAULT_SERVICE_ROOT
    api_version: str = DEFAULT_API_VERSION

    @property
    def uri(self) -> UrlString:
        return (
            f"http://{self.address}:{self.port}/"
            f"{self.service_root}/{self.api_version}/"
        )

    @classmethod
    def from_metadata(
        cls,
        name: EndpointName,
        payload: bytes | str,
        *,
        service_root: str = DEFAULT_SERVICE_ROOT,
        api_version: str = DEFAULT_API_VERSION,
    ) -> Endpoint:
        """Build an endpoint from a node's JSON metadata (``address``/``port``)."""
        try:
            node = json.loads(payload)
        except (TypeError, ValueError) as exc:
            raise EndpointMetadataError(
                f"Broker {name} has non-JSON metadata: {exc}"
            ) from exc
        if not isinstance(node, dict):
            raise EndpointMetadataError(f"Broker {name} metadata is not an object")
        address = node.get("address")
        port = node.get("port")
        if not isinstance(address, str) or not address:
            raise EndpointMetadataError(f"Broker {name} has no address")
        if isinstance(port, bool) or not isinstance(port, int):
            raise EndpointMetadataError(f"Broker {name} has invalid port {port!r}")
        return cls(
            name=name,
            address=address,
            port=port,
            service_root=service_root,
            api_version=api_version,
        )

    def to_dict(self) -> JsonDict:
        return {
            "name": self.name,
            "address": self.address,
            "port": int(self.port),
            "uri": self.uri,
        }


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    retained: tuple[EndpointName, ...] = ()
    added: tuple[EndpointName, ...] = ()
    removed: tuple[EndpointName, ...] = ()
    skipped: tuple[EndpointName, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


@dataclass(slots=True)
class BrokerCacheStats:
    reconciliations: int = 0
    endpoints_added: EntryCount = 0
    endpoints_removed: EntryCount = 0
    metadata_fetches: int = 0
    metadata_skips: int = 0
    replacements: int = 0
    last_reconciled_at: Timestamp | None = None

    def to_dict(self) -> JsonDict:
        return {
            "reconciliations": self.reconciliations,
            "endpoints_added": self.endpoints_added,
            "endpoints_removed": self.endpoints_removed,
            "metadata_fetches": self.metadata_fetches,
            "metadata_skips": self.metadata_skips,
            "replacements": self.replacements,
            "last_reconciled_at": self.last_reconciled_at,
        }


@dataclass(eq=False, slots=True)
class BrokerCache:
    """Reconciled list of live endpoints.

    The endpoint tuple is replaced wholesale under the writer lock; readers
    take the current tuple without locking and never see a partial update.
    """

    _endpoints: tuple[Endpoint, ...] = ()
    stats: BrokerCacheStats = field(default_factory=BrokerCacheStats)
    _lock: Lock = field(default_factory=Lock)

    def snapshot(self) -> tuple[Endpoint, ...]:
        return self._endpoints

    def names(self) -> tuple[EndpointName, ...]:
        return tuple(endpoint.name for endpoint in self._endpoints)

    def __len__(self) -> int:
        return len(self._endpoints)

    def reconcile(
        self,
        live: Iterable[EndpointName],
        fetch: EndpointFetcher,
        *,
        now: Timestamp | None = None,
    ) -> ReconcileResult:
        """Merge the live listing into the cache.

        Entries still listed are carried forward without a fetch, new names
        are fetched, and names no longer listed are dropped. A fetch that
        returns ``None`` skips that name; it stays absent and is fetched
        again on the next reconciliation.
        """
        timestamp = now if now is not None else time.time()
        live_names = tuple(dict.fromkeys(live))
        live_set = set(live_names)
        with self._lock:
            current = self._endpoints
            known = {endpoint.name for endpoint in current}
            retained = [endpoint for endpoint in current if endpoint.name in live_set]
            added: list[Endpoint] = []
            skipped: list[EndpointName] = []
            for name in live_names:
                if name in known:
                    continue
                self.stats.metadata_fetches += 1
                endpoint = fetch(name)
                if endpoint is None:
                    skipped.append(name)
                    continue
                if endpoint.name != name:
                    endpoint = replace(endpoint, name=name)
                added.append(endpoint)
            removed = tuple(
                endpoint.name for endpoint in current if endpoint.name not in live_set
            )
            self._endpoints = tuple(retained) + tuple(added)

            self.stats.reconciliations += 1
            self.stats.endpoints_added += len(added)
            self.stats.endpoints_removed += len(removed)
            self.stats.metadata_skips += len(skipped)
            self.stats.last_reconciled_at = timestamp

        result = ReconcileResult(
            retained=tuple(endpoint.name for endpoint in retained),
            added=tuple(endpoint.name for endpoint in added),
            removed=removed,
            skipped=tuple(skipped),
        )
        if result.changed or result.skipped:
            logger.info(
                "Brokers reconciled: added={} removed={} skipped={} total={}",
                list(result.added),
                list(result.removed),
                list(result.skipped),
                len(self._endpoints),
            )
        return result

    def replace_endpoint(self, endpoint: Endpoint) -> bool:
        """Swap the cached entry with the same name, if any."""
        with self._lock:
            current = self._endpoints
            if not any(existing.name == endpoint.name for existing in current):
                return False
            self._endpoints = tuple(
                endpoint if existing.name == endpoint.name else existing
                for existing in current
            )
            self.stats.replacements += 1
        logger.info("Broker {} now at {}", endpoint.name, endpoint.uri)
        return True
