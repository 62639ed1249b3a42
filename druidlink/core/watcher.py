"""One-shot child watch with explicit re-arming."""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum

from loguru import logger

from druidlink.datastructures.type_aliases import ZNodeName, ZNodePath

from .session import RegistrySession, WatchHandle


class WatchState(Enum):
    UNREGISTERED = "unregistered"
    ARMED = "armed"
    FIRED = "fired"


class ServiceWatcher:
    """Watch the children of one path.

    Each firing moves the watcher to ``FIRED`` and hands it to
    ``on_child_change``, which is expected to call ``arm()`` again. ``arm()``
    sets the new watch with the same read that returns the current children,
    so a change landing after that read always fires the new watch.
    """

    def __init__(
        self,
        session: RegistrySession,
        path: ZNodePath,
        on_child_change: Callable[[ServiceWatcher], None],
    ) -> None:
        self.path = path
        self._session = session
        self._on_child_change = on_child_change
        self._handle: WatchHandle | None = None
        self._state = WatchState.UNREGISTERED
        self.firings = 0

    @property
    def state(self) -> WatchState:
        # Session expiry releases handles behind our back.
        if self._state is WatchState.ARMED and (
            self._handle is None or not self._handle.active
        ):
            return WatchState.UNREGISTERED
        return self._state

    @property
    def handle(self) -> WatchHandle | None:
        return self._handle

    def arm(self) -> list[ZNodeName]:
        """Register a fresh watch and return the children it was set on."""
        handle = self._session.register_watch(self.path, self._fired)
        self._handle = handle
        try:
            children = self._session.children(self.path, handle=handle)
        except Exception:
            self._session.release_watch(handle)
            self._state = WatchState.UNREGISTERED
            raise
        self._state = WatchState.ARMED
        logger.debug(
            "Armed watch on {} (epoch {}, {} children)",
            self.path,
            handle.epoch,
            len(children),
        )
        return children

    def teardown(self) -> None:
        if self._handle is not None:
            self._session.release_watch(self._handle)
            self._handle = None
        self._state = WatchState.UNREGISTERED

    def _fired(self, handle: WatchHandle) -> None:
        if handle is not self._handle:
            logger.debug("Ignoring firing of superseded watch on {}", self.path)
            return
        self._state = WatchState.FIRED
        self.firings += 1
        logger.debug("Watch fired on {}", self.path)
        self._on_child_change(self)
