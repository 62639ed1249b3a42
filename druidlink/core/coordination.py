"""
Coordination service adapters.

The discovery layer talks to the coordination service through the small
``CoordinationClient`` protocol: hierarchical children listing with an
optional one-shot watch, raw data reads, session state notifications and a
way to run blocking work off the notification thread.

Two implementations are provided:

- ``KazooCoordinationClient`` wraps a ``kazoo`` ZooKeeper client.
- ``MemoryCoordinationClient`` keeps the tree in memory for development and
  tests, including one-shot watch semantics and session expiry simulation.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, TypeAlias

from kazoo.client import KazooClient, KazooState
from kazoo.exceptions import KazooException, NoNodeError
from kazoo.handlers.threading import KazooTimeoutError
from kazoo.protocol.states import EventType, WatchedEvent
from loguru import logger

from druidlink.datastructures.type_aliases import (
    ConnectionString,
    DurationSeconds,
    ZNodeName,
    ZNodePath,
)

from .errors import RegistryConnectionError, RegistryNodeMissing

ChildWatch: TypeAlias = Callable[[ZNodePath], None]


class SessionEvent(Enum):
    """Session state changes reported by a coordination client."""

    CONNECTED = "connected"
    SUSPENDED = "suspended"
    LOST = "lost"


SessionListener: TypeAlias = Callable[[SessionEvent], None]


class CoordinationClient(Protocol):
    """Operations the discovery layer needs from the coordination service."""

    def start(self, timeout: DurationSeconds) -> None: ...

    def stop(self) -> None: ...

    def children(
        self, path: ZNodePath, watch: ChildWatch | None = None
    ) -> list[ZNodeName]: ...

    def get(self, path: ZNodePath) -> bytes: ...

    def add_session_listener(self, listener: SessionListener) -> None: ...

    def spawn(self, func: Callable[..., Any], *args: Any) -> None: ...


def join_path(parent: ZNodePath, child: ZNodeName) -> ZNodePath:
    return f"{parent.rstrip('/')}/{child}"


_KAZOO_STATES = {
    KazooState.CONNECTED: SessionEvent.CONNECTED,
    KazooState.SUSPENDED: SessionEvent.SUSPENDED,
    KazooState.LOST: SessionEvent.LOST,
}

# Session-level watch events (EventType.NONE) are handled through the
# session listener, only node events are forwarded to child watches.
_CHILD_WATCH_EVENTS = frozenset({EventType.CHILD, EventType.DELETED})


class KazooCoordinationClient:
    """ZooKeeper-backed coordination client."""

    def __init__(
        self,
        hosts: ConnectionString,
        *,
        session_timeout: DurationSeconds = 10.0,
        client: KazooClient | None = None,
    ) -> None:
        self._hosts = hosts
        self._client = client or KazooClient(hosts=hosts, timeout=session_timeout)
        self._listeners: list[SessionListener] = []
        self._client.add_listener(self._on_state)

    def start(self, timeout: DurationSeconds) -> None:
        try:
            self._client.start(timeout=timeout)
        except KazooTimeoutError as exc:
            self._client.close()
            raise RegistryConnectionError(
                f"Could not connect to ZooKeeper at {self._hosts}"
            ) from exc

    def stop(self) -> None:
        self._client.stop()
        self._client.close()

    def children(
        self, path: ZNodePath, watch: ChildWatch | None = None
    ) -> list[ZNodeName]:
        kazoo_watch = self._wrap_watch(watch) if watch is not None else None
        try:
            return list(self._client.get_children(path, watch=kazoo_watch))
        except NoNodeError as exc:
            raise RegistryNodeMissing(path) from exc
        except KazooException as exc:
            raise RegistryConnectionError(
                f"Failed to list children of {path}: {exc!r}"
            ) from exc

    def get(self, path: ZNodePath) -> bytes:
        try:
            data, _stat = self._client.get(path)
        except NoNodeError as exc:
            raise RegistryNodeMissing(path) from exc
        except KazooException as exc:
            raise RegistryConnectionError(f"Failed to read {path}: {exc!r}") from exc
        return data or b""

    def add_session_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def spawn(self, func: Callable[..., Any], *args: Any) -> None:
        self._client.handler.spawn(func, *args)

    def _wrap_watch(self, watch: ChildWatch) -> Callable[[WatchedEvent], None]:
        def _kazoo_watch(event: WatchedEvent) -> None:
            if event.type not in _CHILD_WATCH_EVENTS:
                logger.debug(
                    "Ignoring {} watch event on {}", event.type, event.path
                )
                return
            # Watch callbacks share kazoo's single callback thread, handlers
            # issue blocking reads so they run on their own thread.
            self._client.handler.spawn(watch, event.path)

        return _kazoo_watch

    def _on_state(self, state: str) -> None:
        event = _KAZOO_STATES.get(state)
        if event is None:
            return
        for listener in list(self._listeners):
            listener(event)


@dataclass(eq=False, slots=True)
class MemoryCoordinationClient:
    """In-memory coordination tree for development and tests.

    Watches are one-shot like ZooKeeper's: a watch fires on the first change
    to the children of its path and is then discarded. ``spawn`` runs work
    synchronously so tests observe its effects deterministically.
    """

    reachable: bool = True
    _nodes: dict[ZNodePath, bytes] = field(default_factory=dict)
    _child_watches: dict[ZNodePath, list[ChildWatch]] = field(
        default_factory=lambda: defaultdict(list)
    )
    _listeners: list[SessionListener] = field(default_factory=list)
    _connected: bool = False
    _lock: threading.RLock = field(default_factory=threading.RLock)

    @property
    def connected(self) -> bool:
        return self._connected

    def start(self, timeout: DurationSeconds) -> None:
        if not self.reachable:
            raise RegistryConnectionError("Coordination service unreachable")
        self._connected = True
        self._notify(SessionEvent.CONNECTED)

    def stop(self) -> None:
        self._connected = False
        with self._lock:
            self._child_watches.clear()

    def children(
        self, path: ZNodePath, watch: ChildWatch | None = None
    ) -> list[ZNodeName]:
        self._ensure_connected()
        with self._lock:
            if path not in self._nodes:
                raise RegistryNodeMissing(path)
            if watch is not None:
                self._child_watches[path].append(watch)
            return self._children_of(path)

    def get(self, path: ZNodePath) -> bytes:
        self._ensure_connected()
        with self._lock:
            try:
                return self._nodes[path]
            except KeyError:
                raise RegistryNodeMissing(path) from None

    def add_session_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def spawn(self, func: Callable[..., Any], *args: Any) -> None:
        func(*args)

    def create(self, path: ZNodePath, data: bytes = b"") -> None:
        """Create ``path`` (and missing parents), firing the parent's watches."""
        with self._lock:
            parts = [part for part in path.split("/") if part]
            current = ""
            created: list[ZNodePath] = []
            for part in parts:
                current = f"{current}/{part}"
                if current not in self._nodes:
                    self._nodes[current] = b""
                    created.append(current)
            self._nodes[path] = data
        for node in created:
            self._fire_children_changed(_parent_of(node))

    def set(self, path: ZNodePath, data: bytes) -> None:
        with self._lock:
            if path not in self._nodes:
                raise RegistryNodeMissing(path)
            self._nodes[path] = data

    def delete(self, path: ZNodePath) -> None:
        """Delete ``path`` and its descendants, firing the parent's watches."""
        with self._lock:
            if path not in self._nodes:
                raise RegistryNodeMissing(path)
            prefix = f"{path}/"
            for node in [n for n in self._nodes if n == path or n.startswith(prefix)]:
                self._nodes.pop(node, None)
        self._fire_children_changed(_parent_of(path))
        self._fire_children_changed(path)

    def pending_watch_count(self, path: ZNodePath) -> int:
        with self._lock:
            return len(self._child_watches.get(path, ()))

    def expire_session(self, *, drop_watches: bool = True) -> None:
        """Simulate session expiry followed by a fresh session.

        Outstanding watches are dropped server-side as ZooKeeper does; with
        ``drop_watches=False`` they survive to model late deliveries from
        the old session.
        """
        if drop_watches:
            with self._lock:
                self._child_watches.clear()
        self._notify(SessionEvent.LOST)
        self._notify(SessionEvent.CONNECTED)

    def suspend(self) -> None:
        self._notify(SessionEvent.SUSPENDED)

    def resume(self) -> None:
        self._notify(SessionEvent.CONNECTED)

    def _children_of(self, path: ZNodePath) -> list[ZNodeName]:
        prefix = "/" if path == "/" else f"{path}/"
        names = []
        for node in self._nodes:
            if node.startswith(prefix) and node != path:
                rest = node[len(prefix) :]
                if "/" not in rest:
                    names.append(rest)
        return sorted(names)

    def _fire_children_changed(self, path: ZNodePath) -> None:
        with self._lock:
            watches = self._child_watches.pop(path, [])
        for watch in watches:
            watch(path)

    def _notify(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise RegistryConnectionError("Coordination client is not connected")


def _parent_of(path: ZNodePath) -> ZNodePath:
    parent = path.rsplit("/", 1)[0]
    return parent or "/"
