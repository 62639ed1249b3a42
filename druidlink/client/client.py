from __future__ import annotations

import asyncio
from typing import Any

import aiohttp
from loguru import logger
from yarl import URL

from druidlink.core.broker_cache import Endpoint
from druidlink.core.config import DispatchConfig, DruidLinkSettings
from druidlink.core.discovery import BrokerDiscovery
from druidlink.core.errors import DruidLinkError, ServiceUnavailable
from druidlink.core.selector import EndpointSelector
from druidlink.core.session import ClientFactory, RegistrySession, SessionOptions
from druidlink.datastructures.type_aliases import DataSourceName, QueryPayload

from .dispatcher import DataSourceMetadata, Dispatcher


class DruidClient:
    """Send queries to a Druid broker tier discovered through ZooKeeper.

    The client is an explicit handle: build it with ``connect()``, pass it to
    whatever needs to query, and ``close()`` it on shutdown.

    Example:
        async with await DruidClient.connect(
            DruidLinkSettings(zookeeper_uri="zk1:2181,zk2:2181")
        ) as client:
            rows = await client.send({"queryType": "timeBoundary", ...})
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        registry: RegistrySession | None = None,
        discovery: BrokerDiscovery | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.registry = registry
        self.discovery = discovery

    @classmethod
    async def connect(
        cls,
        settings: DruidLinkSettings,
        *,
        client_factory: ClientFactory | None = None,
        http_session: aiohttp.ClientSession | None = None,
    ) -> DruidClient:
        """Open the registry session (unless static-only) and load brokers.

        Raises ``RegistryConnectionError`` when ZooKeeper is unreachable.
        ``ServiceUnavailable`` at startup is raised unless a fallback endpoint
        is configured, in which case discovery keeps watching and the
        fallback serves requests meanwhile.
        """
        config = settings.dispatch_config()
        if not config.uses_discovery:
            logger.info("Using static broker {}", config.static_endpoint)
            return cls(Dispatcher(config, session=http_session))

        registry = await asyncio.to_thread(
            RegistrySession.connect,
            settings.zookeeper_uri,
            SessionOptions(
                session_timeout=settings.session_timeout,
                connect_timeout=settings.connect_timeout,
            ),
            client_factory=client_factory,
        )
        discovery = BrokerDiscovery(
            registry,
            discovery_path=settings.discovery_path,
            service_name=settings.service_name,
            service_root=settings.service_root,
            api_version=settings.api_version,
        )
        try:
            await asyncio.to_thread(discovery.start)
        except ServiceUnavailable as exc:
            if config.fallback_endpoint is None:
                await cls._abandon(discovery, registry)
                raise
            logger.warning(
                "{}; serving from fallback {} until brokers register",
                exc,
                config.fallback_endpoint,
            )
        except DruidLinkError:
            await cls._abandon(discovery, registry)
            raise
        selector = EndpointSelector(discovery.cache)
        return cls(
            Dispatcher(config, selector, session=http_session),
            registry=registry,
            discovery=discovery,
        )

    @staticmethod
    async def _abandon(discovery: BrokerDiscovery, registry: RegistrySession) -> None:
        discovery.close()
        await asyncio.to_thread(registry.close)

    @property
    def config(self) -> DispatchConfig:
        return self.dispatcher.config

    def healthy(self) -> bool:
        """Whether the registry session is usable (always true when static)."""
        if self.registry is None:
            return True
        return self.registry.is_healthy()

    def broker_uri(self) -> URL:
        return self.dispatcher.resolve_endpoint()

    def brokers(self) -> tuple[Endpoint, ...]:
        if self.discovery is None:
            return ()
        return self.discovery.cache.snapshot()

    async def send(self, query: QueryPayload | Any) -> Any:
        return await self.dispatcher.send(query)

    async def data_source(self, name: DataSourceName) -> DataSourceMetadata:
        return await self.dispatcher.data_source(name)

    async def close(self) -> None:
        await self.dispatcher.close()
        if self.discovery is not None:
            self.discovery.close()
        if self.registry is not None:
            await asyncio.to_thread(self.registry.close)

    async def __aenter__(self) -> DruidClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
