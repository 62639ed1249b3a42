"""Dispatcher tests against a local aiohttp broker stand-in."""

import asyncio
import random
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from druidlink.client.dispatcher import (
    DataSourceMetadata,
    Dispatcher,
    parse_endpoint,
    query_body,
)
from druidlink.core.broker_cache import BrokerCache, Endpoint
from druidlink.core.config import DispatchConfig
from druidlink.core.errors import NoEndpointAvailable, RequestFailed
from druidlink.core.selector import EndpointSelector


class BrokerStandIn:
    def __init__(self) -> None:
        self.queries: list[tuple[str, dict]] = []
        self.datasources: list[str] = []

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/druid/v2/", self.query)
        app.router.add_post("/fallback/v2/", self.query)
        app.router.add_post("/broken/v2/", self.broken)
        app.router.add_post("/text/v2/", self.text)
        app.router.add_post("/slow/v2/", self.slow)
        app.router.add_get("/druid/v2/datasources/{name}", self.datasource)
        return app

    async def query(self, request: web.Request) -> web.Response:
        self.queries.append((request.path, await request.json()))
        return web.json_response([{"timestamp": "2024-01-01T00:00:00Z", "result": {}}])

    async def broken(self, request: web.Request) -> web.Response:
        return web.Response(status=500, text="query interrupted")

    async def text(self, request: web.Request) -> web.Response:
        return web.Response(status=200, text="<html>not json</html>")

    async def slow(self, request: web.Request) -> web.Response:
        await asyncio.sleep(1)
        return web.json_response([])

    async def datasource(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        self.datasources.append(name)
        if name != "wikipedia":
            return web.Response(status=404, text="unknown datasource")
        return web.json_response(
            {"dimensions": ["page", "user"], "metrics": ["count", "added"]}
        )


@pytest_asyncio.fixture
async def broker() -> AsyncGenerator[tuple[BrokerStandIn, TestServer], None]:
    stand_in = BrokerStandIn()
    server = TestServer(stand_in.app())
    await server.start_server()
    yield stand_in, server
    await server.close()


def _base(server: TestServer, root: str) -> str:
    return str(server.make_url(f"/{root}/v2/"))


def _selector_for(*endpoints: Endpoint) -> EndpointSelector:
    cache = BrokerCache()
    by_name = {endpoint.name: endpoint for endpoint in endpoints}
    cache.reconcile(list(by_name), by_name.get)
    return EndpointSelector(cache, rng=random.Random(0))


def test_parse_endpoint() -> None:
    assert str(parse_endpoint("http://10.0.0.1:8082/druid/v2/")) == (
        "http://10.0.0.1:8082/druid/v2/"
    )
    assert parse_endpoint(None) is None
    assert parse_endpoint("") is None
    assert parse_endpoint("not a url") is None
    assert parse_endpoint("ftp://10.0.0.1/druid/v2/") is None
    assert parse_endpoint("http://:8080/druid/v2/") is None


def test_query_body_accepts_mappings_and_to_dict() -> None:
    class Query:
        def to_dict(self) -> dict:
            return {"queryType": "timeBoundary", "dataSource": "wikipedia"}

    assert query_body({"queryType": "segmentMetadata"}) == {
        "queryType": "segmentMetadata"
    }
    assert query_body(Query())["queryType"] == "timeBoundary"
    with pytest.raises(TypeError):
        query_body(42)


def test_static_endpoint_ignores_empty_cache() -> None:
    config = DispatchConfig(static_endpoint="http://10.0.0.5:8082/druid/v2/")
    dispatcher = Dispatcher(config, EndpointSelector(BrokerCache()))
    for _ in range(3):
        assert str(dispatcher.resolve_endpoint()) == "http://10.0.0.5:8082/druid/v2/"


def test_malformed_static_endpoint_is_unavailable() -> None:
    dispatcher = Dispatcher(DispatchConfig(static_endpoint="nonsense"))
    with pytest.raises(NoEndpointAvailable):
        dispatcher.resolve_endpoint()


def test_discovered_endpoint_is_preferred_over_fallback() -> None:
    config = DispatchConfig(fallback_endpoint="http://10.0.0.9:8082/druid/v2/")
    selector = _selector_for(Endpoint(name="b1", address="10.0.0.1", port=8082))
    dispatcher = Dispatcher(config, selector)
    assert str(dispatcher.resolve_endpoint()) == "http://10.0.0.1:8082/druid/v2/"


def test_empty_cache_resolves_to_fallback() -> None:
    config = DispatchConfig(fallback_endpoint="http://10.0.0.9:8082/druid/v2/")
    dispatcher = Dispatcher(config, EndpointSelector(BrokerCache()))
    assert str(dispatcher.resolve_endpoint()) == "http://10.0.0.9:8082/druid/v2/"


def test_malformed_discovered_endpoint_resolves_to_fallback() -> None:
    config = DispatchConfig(fallback_endpoint="http://10.0.0.9:8082/druid/v2/")
    selector = _selector_for(Endpoint(name="b1", address="", port=8082))
    dispatcher = Dispatcher(config, selector)
    assert str(dispatcher.resolve_endpoint()) == "http://10.0.0.9:8082/druid/v2/"


def test_nothing_to_resolve_raises() -> None:
    dispatcher = Dispatcher(DispatchConfig(), EndpointSelector(BrokerCache()))
    with pytest.raises(NoEndpointAvailable):
        dispatcher.resolve_endpoint()
    with pytest.raises(NoEndpointAvailable):
        Dispatcher(DispatchConfig()).resolve_endpoint()


async def test_send_posts_to_static_endpoint(
    broker: tuple[BrokerStandIn, TestServer],
) -> None:
    stand_in, server = broker
    config = DispatchConfig(static_endpoint=_base(server, "druid"), timeout=5)
    async with Dispatcher(config) as dispatcher:
        rows = await dispatcher.send({"queryType": "timeBoundary"})

    assert rows == [{"timestamp": "2024-01-01T00:00:00Z", "result": {}}]
    assert stand_in.queries == [("/druid/v2/", {"queryType": "timeBoundary"})]


async def test_send_posts_to_discovered_broker(
    broker: tuple[BrokerStandIn, TestServer],
) -> None:
    stand_in, server = broker
    selector = _selector_for(
        Endpoint(name="b1", address=server.host, port=server.port)
    )
    async with Dispatcher(DispatchConfig(timeout=5), selector) as dispatcher:
        await dispatcher.send({"queryType": "timeseries"})

    assert [path for path, _ in stand_in.queries] == ["/druid/v2/"]


async def test_send_uses_fallback_when_cache_empty(
    broker: tuple[BrokerStandIn, TestServer],
) -> None:
    stand_in, server = broker
    config = DispatchConfig(fallback_endpoint=_base(server, "fallback"), timeout=5)
    async with Dispatcher(config, EndpointSelector(BrokerCache())) as dispatcher:
        await dispatcher.send({"queryType": "timeseries"})

    assert [path for path, _ in stand_in.queries] == ["/fallback/v2/"]


async def test_non_200_raises_request_failed(
    broker: tuple[BrokerStandIn, TestServer],
) -> None:
    _, server = broker
    config = DispatchConfig(static_endpoint=_base(server, "broken"), timeout=5)
    async with Dispatcher(config) as dispatcher:
        with pytest.raises(RequestFailed) as excinfo:
            await dispatcher.send({"queryType": "timeseries"})

    assert excinfo.value.status == 500
    assert excinfo.value.body == "query interrupted"
    assert "500" in str(excinfo.value)


async def test_unstructured_200_raises_request_failed(
    broker: tuple[BrokerStandIn, TestServer],
) -> None:
    _, server = broker
    config = DispatchConfig(static_endpoint=_base(server, "text"), timeout=5)
    async with Dispatcher(config) as dispatcher:
        with pytest.raises(RequestFailed) as excinfo:
            await dispatcher.send({"queryType": "timeseries"})
    assert excinfo.value.status == 200


async def test_timeout_raises_request_failed_without_status(
    broker: tuple[BrokerStandIn, TestServer],
) -> None:
    _, server = broker
    config = DispatchConfig(static_endpoint=_base(server, "slow"), timeout=0.2)
    async with Dispatcher(config) as dispatcher:
        with pytest.raises(RequestFailed) as excinfo:
            await dispatcher.send({"queryType": "timeseries"})
    assert excinfo.value.status is None


async def test_data_source_metadata(
    broker: tuple[BrokerStandIn, TestServer],
) -> None:
    _, server = broker
    config = DispatchConfig(static_endpoint=_base(server, "druid"), timeout=5)
    async with Dispatcher(config) as dispatcher:
        meta = await dispatcher.data_source("wikipedia")
        with pytest.raises(RequestFailed) as excinfo:
            await dispatcher.data_source("missing")

    assert meta == DataSourceMetadata(
        name="wikipedia",
        dimensions=("page", "user"),
        metrics=("count", "added"),
        raw={"dimensions": ["page", "user"], "metrics": ["count", "added"]},
    )
    assert excinfo.value.status == 404
    assert "missing" in excinfo.value.body


def test_data_source_metadata_tolerates_partial_payload() -> None:
    meta = DataSourceMetadata.from_payload("wikipedia", {"dimensions": ["page"]})
    assert meta.dimensions == ("page",)
    assert meta.metrics == ()
    assert DataSourceMetadata.from_payload("x", ["odd"]).raw == {}


async def test_data_source_on_base_without_trailing_slash(
    broker: tuple[BrokerStandIn, TestServer],
) -> None:
    stand_in, server = broker
    base = _base(server, "druid").rstrip("/")
    config = DispatchConfig(fallback_endpoint=base, timeout=5)
    async with Dispatcher(config, EndpointSelector(BrokerCache())) as dispatcher:
        meta = await dispatcher.data_source("wikipedia")

    assert meta.dimensions == ("page", "user")
    assert stand_in.datasources == ["wikipedia"]


async def test_data_source_name_is_a_single_path_segment(
    broker: tuple[BrokerStandIn, TestServer],
) -> None:
    stand_in, server = broker
    config = DispatchConfig(static_endpoint=_base(server, "druid"), timeout=5)
    async with Dispatcher(config) as dispatcher:
        with pytest.raises(RequestFailed) as excinfo:
            await dispatcher.data_source("wiki?pedia#1")

    assert excinfo.value.status == 404
    assert stand_in.datasources == ["wiki?pedia#1"]
    assert "%3F" in excinfo.value.url
