"""Pytest configuration and fixtures for druidlink testing.

The coordination service is modelled by ``MemoryCoordinationClient`` so the
watch, reconciliation and expiry paths run deterministically without a
ZooKeeper ensemble.
"""

import json
from collections.abc import Generator

import pytest

from druidlink.core.coordination import MemoryCoordinationClient
from druidlink.core.session import RegistrySession

DISCOVERY_PATH = "/discoveryPath"
SERVICE_PATH = f"{DISCOVERY_PATH}/broker"


def broker_payload(address: str, port: int) -> bytes:
    return json.dumps({"address": address, "port": port}).encode()


def register_broker(
    registry: MemoryCoordinationClient, name: str, address: str, port: int = 8080
) -> None:
    registry.create(f"{SERVICE_PATH}/{name}", broker_payload(address, port))


@pytest.fixture
def registry() -> MemoryCoordinationClient:
    """Coordination tree with an empty broker category and a coordinator."""
    tree = MemoryCoordinationClient()
    tree.create(SERVICE_PATH)
    tree.create(f"{DISCOVERY_PATH}/coordinator")
    return tree


@pytest.fixture
def session(
    registry: MemoryCoordinationClient,
) -> Generator[RegistrySession, None, None]:
    registry_session = RegistrySession(registry, uri="memory")
    registry_session.start()
    yield registry_session
    registry_session.close()
