"""Discovery under concurrent watch firings.

The in-memory tree runs watch callbacks on the thread that made the change,
so each change made from its own thread behaves like a kazoo handler thread.
"""

import threading
from collections.abc import Generator

import pytest

from druidlink.core.coordination import MemoryCoordinationClient
from druidlink.core.discovery import BrokerDiscovery
from druidlink.core.selector import EndpointSelector
from druidlink.core.session import RegistrySession
from tests.conftest import DISCOVERY_PATH, SERVICE_PATH, register_broker

WAIT = 5.0


class Gate:
    """Blocks a call until released, recording when calls start and end."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()
        self.log: list[str] = []

    def hold(self, label: str) -> None:
        self.log.append(f"{label}:start")
        self.entered.set()
        assert self.release.wait(WAIT)

    def done(self, label: str) -> None:
        self.log.append(f"{label}:end")


@pytest.fixture
def discovery(session: RegistrySession) -> Generator[BrokerDiscovery, None, None]:
    broker_discovery = BrokerDiscovery(session)
    yield broker_discovery
    broker_discovery.close()


def _in_thread(target, *args) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


def test_concurrent_firings_reconcile_one_at_a_time(
    registry: MemoryCoordinationClient,
    session: RegistrySession,
    discovery: BrokerDiscovery,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    register_broker(registry, "b1", "10.0.0.1")
    discovery.start()
    before = discovery.cache.snapshot()
    selector = EndpointSelector(discovery.cache)

    gate = Gate()
    read = session.get

    def gated_get(path: str) -> bytes:
        name = path.rsplit("/", 1)[-1]
        if name == "b2":
            gate.hold(name)
        else:
            gate.log.append(f"{name}:start")
        data = read(path)
        gate.done(name)
        return data

    monkeypatch.setattr(session, "get", gated_get)

    first = _in_thread(register_broker, registry, "b2", "10.0.0.2")
    assert gate.entered.wait(WAIT)

    # The first reconciliation holds the writer lock inside the fetch.
    for _ in range(20):
        assert selector.pick() is before[0]
    assert discovery.cache.snapshot() is before

    second = _in_thread(register_broker, registry, "b3", "10.0.0.3")
    second.join(0.2)
    assert second.is_alive()
    assert discovery.cache.stats.reconciliations == 1
    assert "b3:start" not in gate.log

    gate.release.set()
    first.join(WAIT)
    second.join(WAIT)
    assert not first.is_alive() and not second.is_alive()

    assert gate.log == ["b2:start", "b2:end", "b3:start", "b3:end"]
    assert discovery.cache.names() == ("b1", "b2", "b3")
    assert discovery.cache.snapshot()[0] is before[0]
    assert discovery.cache.stats.reconciliations == 3
    assert sorted(h.path for h in session.active_watches()) == [
        DISCOVERY_PATH,
        SERVICE_PATH,
    ]


def test_stale_firing_during_rebuild_is_discarded(
    registry: MemoryCoordinationClient,
    session: RegistrySession,
    discovery: BrokerDiscovery,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    register_broker(registry, "b1", "10.0.0.1")
    discovery.start()

    gate = Gate()
    list_children = session.children

    def gated_children(path, handle=None):
        if path == SERVICE_PATH and handle is not None and handle.epoch == 2:
            gate.hold("rebuild")
        return list_children(path, handle=handle)

    monkeypatch.setattr(session, "children", gated_children)

    # Old-session watches stay registered in the tree, as late deliveries.
    rebuild = _in_thread(lambda: registry.expire_session(drop_watches=False))
    assert gate.entered.wait(WAIT)
    assert session.epoch == 2

    register_broker(registry, "b2", "10.0.0.2")

    assert discovery.cache.stats.reconciliations == 1
    assert discovery.cache.names() == ("b1",)

    gate.release.set()
    rebuild.join(WAIT)
    assert not rebuild.is_alive()

    assert discovery.cache.stats.reconciliations == 2
    assert discovery.cache.names() == ("b1", "b2")
    handles = session.active_watches()
    assert sorted(h.path for h in handles) == [DISCOVERY_PATH, SERVICE_PATH]
    assert all(h.epoch == 2 for h in handles)
