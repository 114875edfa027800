from __future__ import annotations

import logging
from typing import Callable, Protocol

LOGGER = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]


class ConnectivityProbe(Protocol):
    def is_online(self) -> bool: ...

    def on_connectivity_change(self, callback: ConnectivityCallback) -> Callable[[], None]: ...


class ConnectivityMonitor:
    """Connectivity state fed by the application's own network checks."""

    def __init__(self, *, online: bool = True) -> None:
        self._online = online
        self._callbacks: list[ConnectivityCallback] = []

    def is_online(self) -> bool:
        return self._online

    def on_connectivity_change(self, callback: ConnectivityCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return

        self._online = online
        LOGGER.info("Connectivity changed: %s", "online" if online else "offline")
        for callback in list(self._callbacks):
            try:
                callback(online)
            except Exception:
                LOGGER.exception("Connectivity callback failed")
