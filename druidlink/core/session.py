"""
Registry session lifecycle.

``RegistrySession`` owns the coordination client connection and every watch
handle registered through it. Each re-established session after an expiry
advances the session epoch; handles carry the epoch they were registered
in, so firings that belong to an earlier session are discarded.

Session states::

    DISCONNECTED -> CONNECTED -> EXPIRED -> CONNECTED (epoch + 1) -> ...
                                            CLOSED (explicit close)
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeAlias
from dataclasses import dataclass, field
from enum import Enum
from threading import RLock

from loguru import logger

from druidlink.datastructures.type_aliases import (
    ConnectionString,
    DurationSeconds,
    SessionEpoch,
    ZNodeName,
    ZNodePath,
)

from .coordination import CoordinationClient, KazooCoordinationClient, SessionEvent

ExpiredCallback: TypeAlias = Callable[[SessionEpoch], None]
WatchCallback: TypeAlias = Callable[["WatchHandle"], None]
ClientFactory: TypeAlias = Callable[..., CoordinationClient]


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    EXPIRED = "expired"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class SessionOptions:
    session_timeout: DurationSeconds = 10.0
    connect_timeout: DurationSeconds = 15.0


@dataclass(eq=False, slots=True)
class WatchHandle:
    """One outstanding watch registration on one path."""

    path: ZNodePath
    epoch: SessionEpoch
    callback: WatchCallback = field(repr=False)
    active: bool = True

    def release(self) -> None:
        self.active = False


class RegistrySession:
    """Connection to the coordination service plus its watch registrations."""

    def __init__(
        self, client: CoordinationClient, *, uri: ConnectionString = ""
    ) -> None:
        self._client = client
        self._uri = uri
        self._state = SessionState.DISCONNECTED
        self._suspended = False
        self._epoch: SessionEpoch = 0
        self._watches: dict[ZNodePath, WatchHandle] = {}
        self._expired_callbacks: list[ExpiredCallback] = []
        self._lock = RLock()
        client.add_session_listener(self._on_session_event)

    @classmethod
    def connect(
        cls,
        uri: ConnectionString,
        options: SessionOptions | None = None,
        *,
        client_factory: ClientFactory | None = None,
    ) -> RegistrySession:
        """Open a session, raising ``RegistryConnectionError`` if unreachable."""
        options = options or SessionOptions()
        factory = client_factory or KazooCoordinationClient
        client = factory(uri, session_timeout=options.session_timeout)
        session = cls(client, uri=uri)
        session.start(timeout=options.connect_timeout)
        return session

    def start(self, *, timeout: DurationSeconds = 15.0) -> None:
        logger.info("Connecting to coordination service at {}", self._uri)
        self._client.start(timeout)
        with self._lock:
            self._state = SessionState.CONNECTED
            self._suspended = False
            self._epoch += 1
        logger.info("Registry session established (epoch {})", self._epoch)

    def close(self) -> None:
        with self._lock:
            if self._state is SessionState.CLOSED:
                return
            self._state = SessionState.CLOSED
            self._release_all()
        self._client.stop()
        logger.info("Registry session to {} closed", self._uri)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def epoch(self) -> SessionEpoch:
        return self._epoch

    @property
    def client(self) -> CoordinationClient:
        return self._client

    def is_healthy(self) -> bool:
        return self._state is SessionState.CONNECTED and not self._suspended

    def on_expired(self, callback: ExpiredCallback) -> None:
        """Call ``callback(new_epoch)`` once per expiry, after reconnection."""
        self._expired_callbacks.append(callback)

    def register_watch(self, path: ZNodePath, callback: WatchCallback) -> WatchHandle:
        """Register a new handle on ``path``, releasing any existing one first."""
        with self._lock:
            previous = self._watches.pop(path, None)
            if previous is not None:
                previous.release()
            handle = WatchHandle(path=path, epoch=self._epoch, callback=callback)
            self._watches[path] = handle
            return handle

    def release_watch(self, handle: WatchHandle) -> None:
        with self._lock:
            handle.release()
            if self._watches.get(handle.path) is handle:
                self._watches.pop(handle.path, None)

    def active_watch(self, path: ZNodePath) -> WatchHandle | None:
        with self._lock:
            handle = self._watches.get(path)
            return handle if handle is not None and handle.active else None

    def active_watches(self) -> tuple[WatchHandle, ...]:
        with self._lock:
            return tuple(h for h in self._watches.values() if h.active)

    def children(
        self, path: ZNodePath, handle: WatchHandle | None = None
    ) -> list[ZNodeName]:
        """List children of ``path``; with a handle, the watch is set by the same read."""
        if handle is None:
            return self._client.children(path)
        return self._client.children(path, watch=lambda _path: self._fire(handle))

    def get(self, path: ZNodePath) -> bytes:
        return self._client.get(path)

    def _fire(self, handle: WatchHandle) -> None:
        with self._lock:
            if handle.epoch != self._epoch:
                logger.debug(
                    "Discarding stale watch on {} from epoch {} (current {})",
                    handle.path,
                    handle.epoch,
                    self._epoch,
                )
                return
            if not handle.active:
                logger.debug("Discarding released watch on {}", handle.path)
                return
            # One-shot: the handle is consumed until the owner re-arms.
            handle.release()
            if self._watches.get(handle.path) is handle:
                self._watches.pop(handle.path, None)
        handle.callback(handle)

    def _on_session_event(self, event: SessionEvent) -> None:
        # Runs on the coordination client's event thread: no blocking work.
        renewed_epoch: SessionEpoch | None = None
        with self._lock:
            if self._state is SessionState.CLOSED:
                return
            if event is SessionEvent.SUSPENDED:
                self._suspended = True
                logger.warning("Registry connection suspended")
            elif event is SessionEvent.LOST:
                if self._state is SessionState.CONNECTED:
                    self._state = SessionState.EXPIRED
                    self._release_all()
                    logger.warning(
                        "Registry session expired (epoch {})", self._epoch
                    )
            elif event is SessionEvent.CONNECTED:
                self._suspended = False
                if self._state is SessionState.EXPIRED:
                    self._epoch += 1
                    self._state = SessionState.CONNECTED
                    renewed_epoch = self._epoch
                    logger.info(
                        "Registry session re-established (epoch {})", self._epoch
                    )
        if renewed_epoch is not None:
            for callback in list(self._expired_callbacks):
                self._client.spawn(callback, renewed_epoch)

    def _release_all(self) -> None:
        for handle in self._watches.values():
            handle.release()
        self._watches.clear()
