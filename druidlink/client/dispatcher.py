from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import aiohttp
from loguru import logger
from yarl import URL

from druidlink.core.config import DispatchConfig
from druidlink.core.errors import NoEndpointAvailable, RequestFailed
from druidlink.core.selector import EndpointSelector
from druidlink.datastructures.type_aliases import (
    DataSourceName,
    JsonDict,
    QueryPayload,
    UrlString,
)


@dataclass(frozen=True, slots=True)
class DataSourceMetadata:
    """Dimensions and metrics a broker reports for one datasource."""

    name: DataSourceName
    dimensions: tuple[str, ...] = ()
    metrics: tuple[str, ...] = ()
    raw: JsonDict = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, name: DataSourceName, payload: Any) -> DataSourceMetadata:
        if not isinstance(payload, dict):
            payload = {}
        return cls(
            name=name,
            dimensions=tuple(str(item) for item in payload.get("dimensions") or ()),
            metrics=tuple(str(item) for item in payload.get("metrics") or ()),
            raw=payload,
        )


def parse_endpoint(uri: UrlString | None) -> URL | None:
    """Return ``uri`` as a URL if it is a usable http(s) base, else ``None``."""
    if not uri:
        return None
    try:
        url = URL(uri)
        port = url.port
    except (TypeError, ValueError):
        return None
    if url.scheme not in ("http", "https") or not url.host or port is None:
        return None
    return url


def query_body(query: QueryPayload | Any) -> JsonDict:
    if isinstance(query, Mapping):
        return dict(query)
    to_dict = getattr(query, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"Cannot serialize query of type {type(query).__name__}")


class Dispatcher:
    """Resolve a broker per call and send queries to it.

    Resolution order: the static endpoint when discovery is disabled, then a
    random discovered broker, then the fallback endpoint. No retries happen
    here; every failure is raised to the caller.
    """

    def __init__(
        self,
        config: DispatchConfig,
        selector: EndpointSelector | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.config = config
        self._selector = selector
        self._session = session
        self._owns_session = session is None

    def resolve_endpoint(self) -> URL:
        if not self.config.uses_discovery:
            static = parse_endpoint(self.config.static_endpoint)
            if static is None:
                raise NoEndpointAvailable(
                    f"Static broker {self.config.static_endpoint} is not a valid URI"
                )
            return static

        candidate: URL | None = None
        endpoint = self._selector.pick() if self._selector is not None else None
        if endpoint is not None:
            candidate = parse_endpoint(endpoint.uri)
            if candidate is None:
                logger.warning(
                    "Broker {} has malformed URI {}", endpoint.name, endpoint.uri
                )
        if candidate is None and self.config.fallback_endpoint:
            candidate = parse_endpoint(self.config.fallback_endpoint)
            if candidate is not None:
                logger.debug("Using fallback broker {}", candidate)
        if candidate is None:
            described = endpoint.uri if endpoint is not None else None
            raise NoEndpointAvailable(f"Broker {described} (currently) not available")
        return candidate

    async def send(self, query: QueryPayload | Any) -> Any:
        """POST ``query`` to a broker and return the decoded JSON response."""
        url = self.resolve_endpoint()
        body = query_body(query)
        status, text = await self._request("POST", url, json_body=body)
        if status != 200:
            raise RequestFailed(status, text, url=str(url))
        try:
            return json.loads(text)
        except ValueError as exc:
            raise RequestFailed(status, text, url=str(url)) from exc

    async def data_source(self, name: DataSourceName) -> DataSourceMetadata:
        base = self.resolve_endpoint()
        url = base / "datasources" / name
        status, text = await self._request("GET", url)
        if status != 200:
            raise RequestFailed(
                status,
                f"Request failed for dataSource {name} - {text}",
                url=str(url),
            )
        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise RequestFailed(status, text, url=str(url)) from exc
        return DataSourceMetadata.from_payload(name, payload)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> Dispatcher:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _request(
        self, method: str, url: URL, *, json_body: JsonDict | None = None
    ) -> tuple[int, str]:
        timeout = aiohttp.ClientTimeout(total=self.config.timeout)
        logger.debug("{} {}", method, url)
        try:
            async with self._http().request(
                method, url, json=json_body, timeout=timeout
            ) as response:
                return response.status, await response.text()
        except (aiohttp.ClientError, TimeoutError) as exc:
            reason = str(exc) or type(exc).__name__
            raise RequestFailed(None, reason, url=str(url)) from exc
