from __future__ import annotations

from dataclasses import dataclass

from druidlink.datastructures.type_aliases import (
    ConnectionString,
    DurationSeconds,
    ServiceName,
    UrlString,
    ZNodePath,
)

DEFAULT_DISCOVERY_PATH: ZNodePath = "/discoveryPath"
DEFAULT_SERVICE_NAME: ServiceName = "broker"
DEFAULT_SERVICE_ROOT = "druid"
DEFAULT_API_VERSION = "v2"
DEFAULT_HTTP_TIMEOUT: DurationSeconds = 2 * 60


@dataclass(frozen=True, slots=True)
class DispatchConfig:
    """How the dispatcher resolves a broker for each request.

    With ``static_endpoint`` set and no ``fallback_endpoint`` every request goes
    to the static endpoint and discovery is never consulted. Otherwise the
    discovery cache is used and ``fallback_endpoint`` (if any) backs it up.
    """

    static_endpoint: UrlString | None = None
    fallback_endpoint: UrlString | None = None
    timeout: DurationSeconds = DEFAULT_HTTP_TIMEOUT

    @property
    def uses_discovery(self) -> bool:
        return self.static_endpoint is None or self.fallback_endpoint is not None

    @classmethod
    def from_options(
        cls,
        *,
        static_setup: UrlString | None = None,
        fallback: bool = False,
        http_timeout: DurationSeconds | None = None,
    ) -> DispatchConfig:
        """Map the ``static_setup``/``fallback`` option pair.

        A static setup flagged as fallback becomes the backup for discovery
        instead of replacing it.
        """
        timeout = DEFAULT_HTTP_TIMEOUT if http_timeout is None else http_timeout
        if static_setup and not fallback:
            return cls(static_endpoint=static_setup, timeout=timeout)
        return cls(
            fallback_endpoint=static_setup if fallback else None,
            timeout=timeout,
        )


@dataclass(slots=True)
class DruidLinkSettings:
    """druidlink client configuration settings."""

    zookeeper_uri: ConnectionString = "127.0.0.1:2181"
    discovery_path: ZNodePath = DEFAULT_DISCOVERY_PATH
    service_name: ServiceName = DEFAULT_SERVICE_NAME
    service_root: str = DEFAULT_SERVICE_ROOT
    api_version: str = DEFAULT_API_VERSION
    static_setup: UrlString | None = None
    fallback: bool = False
    http_timeout: DurationSeconds = DEFAULT_HTTP_TIMEOUT
    session_timeout: DurationSeconds = 10.0
    connect_timeout: DurationSeconds = 15.0
    log_level: str = "INFO"
    debug_scopes: tuple[str, ...] = ()

    def dispatch_config(self) -> DispatchConfig:
        return DispatchConfig.from_options(
            static_setup=self.static_setup,
            fallback=self.fallback,
            http_timeout=self.http_timeout,
        )

    @property
    def service_path(self) -> ZNodePath:
        return f"{self.discovery_path.rstrip('/')}/{self.service_name}"
