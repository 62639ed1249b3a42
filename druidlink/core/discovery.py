"""
Broker discovery over the coordination service.

``BrokerDiscovery`` keeps two watches armed:

- the discovery path, whose children are the registered service categories;
- the service path (``{discovery_path}/{service_name}``), whose children are
  the individual brokers, each carrying ``{"address": ..., "port": ...}``.

A change under the discovery path re-checks that the service category still
exists before reconciling; a change under the service path reconciles the
broker cache directly. Reconciliation is serialized per path. On session
expiry the whole watch tree is rebuilt and the cache reconciled again.
"""

from __future__ import annotations

from collections.abc import Callable
from threading import Lock

from loguru import logger

from druidlink.datastructures.type_aliases import (
    EndpointName,
    JsonDict,
    SessionEpoch,
    ServiceName,
    ZNodePath,
)

from .broker_cache import BrokerCache, Endpoint, ReconcileResult
from .config import (
    DEFAULT_API_VERSION,
    DEFAULT_DISCOVERY_PATH,
    DEFAULT_SERVICE_NAME,
    DEFAULT_SERVICE_ROOT,
)
from .coordination import join_path
from .errors import (
    DruidLinkError,
    EndpointMetadataError,
    RegistryConnectionError,
    RegistryNodeMissing,
    ServiceUnavailable,
)
from .session import RegistrySession
from .watcher import ServiceWatcher


class BrokerDiscovery:
    def __init__(
        self,
        session: RegistrySession,
        *,
        discovery_path: ZNodePath = DEFAULT_DISCOVERY_PATH,
        service_name: ServiceName = DEFAULT_SERVICE_NAME,
        service_root: str = DEFAULT_SERVICE_ROOT,
        api_version: str = DEFAULT_API_VERSION,
        cache: BrokerCache | None = None,
    ) -> None:
        self.session = session
        self.discovery_path = discovery_path
        self.service_name = service_name
        self.service_path = join_path(discovery_path, service_name)
        self.service_root = service_root
        self.api_version = api_version
        self.cache = cache if cache is not None else BrokerCache()
        self._discovery_watcher = ServiceWatcher(
            session, self.discovery_path, self._on_services_changed
        )
        self._service_watcher = ServiceWatcher(
            session, self.service_path, self._on_brokers_changed
        )
        self._path_locks: dict[ZNodePath, Lock] = {
            self.discovery_path: Lock(),
            self.service_path: Lock(),
        }
        self._started = False
        self._closed = False
        self.last_error: DruidLinkError | None = None

    def start(self) -> ReconcileResult:
        """Arm both watches and load the brokers.

        Raises ``ServiceUnavailable`` when the service category is not
        registered; the discovery watch stays armed so the brokers are picked
        up once the category appears.
        """
        if not self._started:
            self.session.on_expired(self._on_session_expired)
            self._started = True
        return self.check_brokers()

    def close(self) -> None:
        self._closed = True
        self._discovery_watcher.teardown()
        self._service_watcher.teardown()

    def check_brokers(self) -> ReconcileResult:
        """Verify the service category is registered, then reconcile.

        A missing discovery path cannot carry a child watch, so nothing is
        armed and a later ``check_brokers`` (or a session renewal) has to
        look again.
        """
        with self._path_locks[self.discovery_path]:
            try:
                services = self._discovery_watcher.arm()
            except RegistryNodeMissing as exc:
                logger.warning("Discovery path {} does not exist", self.discovery_path)
                raise ServiceUnavailable(
                    self.service_name, self.discovery_path
                ) from exc
        if self.service_name not in services:
            logger.warning(
                "There aren't any {} defined under {}",
                self.service_name,
                self.discovery_path,
            )
            raise ServiceUnavailable(self.service_name, self.discovery_path)
        return self.load_brokers()

    def load_brokers(self) -> ReconcileResult:
        """Re-arm the service path watch and reconcile the cache with it."""
        with self._path_locks[self.service_path]:
            try:
                live = self._service_watcher.arm()
            except RegistryNodeMissing as exc:
                raise ServiceUnavailable(
                    self.service_name, self.discovery_path
                ) from exc
            return self.cache.reconcile(live, self._fetch_endpoint)

    def refresh_endpoint(self, name: EndpointName) -> bool:
        """Re-read one broker's metadata and replace it in the cache.

        Only child membership is watched, so a broker that rewrites its own
        node in place is picked up when a caller asks for it here. Brokers
        that re-register under a new name are handled by reconciliation.
        Returns ``False`` when the name is not cached or its metadata cannot
        be read.
        """
        with self._path_locks[self.service_path]:
            endpoint = self._fetch_endpoint(name)
            if endpoint is None:
                return False
            return self.cache.replace_endpoint(endpoint)

    def describe(self) -> JsonDict:
        return {
            "discovery_path": self.discovery_path,
            "service_path": self.service_path,
            "session_epoch": self.session.epoch,
            "session_state": self.session.state.value,
            "discovery_watch": self._discovery_watcher.state.value,
            "service_watch": self._service_watcher.state.value,
            "brokers": [endpoint.to_dict() for endpoint in self.cache.snapshot()],
            "stats": self.cache.stats.to_dict(),
        }

    def _fetch_endpoint(self, name: EndpointName) -> Endpoint | None:
        path = join_path(self.service_path, name)
        try:
            payload = self.session.get(path)
            return Endpoint.from_metadata(
                name,
                payload,
                service_root=self.service_root,
                api_version=self.api_version,
            )
        except (
            RegistryNodeMissing,
            RegistryConnectionError,
            EndpointMetadataError,
        ) as exc:
            logger.warning("Skipping broker {}: {}", name, exc)
            return None

    def _on_services_changed(self, watcher: ServiceWatcher) -> None:
        self._run_in_background("service categories changed", self.check_brokers)

    def _on_brokers_changed(self, watcher: ServiceWatcher) -> None:
        self._run_in_background("brokers changed", self.load_brokers)

    def _on_session_expired(self, epoch: SessionEpoch) -> None:
        logger.warning("Rebuilding broker watches for session epoch {}", epoch)
        self._run_in_background("session renewed", self.check_brokers)

    def _run_in_background(
        self, reason: str, refresh: Callable[[], ReconcileResult]
    ) -> None:
        if self._closed:
            return
        try:
            result = refresh()
        except DruidLinkError as exc:
            self.last_error = exc
            logger.error("Broker refresh after {} failed: {}", reason, exc)
            return
        self.last_error = None
        logger.debug(
            "Broker refresh after {}: {} brokers ({} added, {} removed)",
            reason,
            len(self.cache),
            len(result.added),
            len(result.removed),
        )
