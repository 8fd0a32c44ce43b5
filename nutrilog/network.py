# -*- coding: utf-8 -*-
"""Network connectivity monitor used to gate job dispatch."""

from __future__ import annotations

import logging
from typing import Callable, List

import httpx

logger = logging.getLogger(__name__)


class NetworkMonitor:
    """Holds the current connectivity state and notifies listeners on changes.

    The state is pushed in by `set_connected()` (e.g. from a platform callback)
    or refreshed with `probe()`, which the job scheduler calls on every
    dispatcher pass.
    """

    def __init__(
        self,
        *,
        connected: bool = True,
        probe_url: str | None = None,
        probe_timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._connected = connected
        self._probe_url = probe_url
        self._probe_timeout = probe_timeout
        self._transport = transport
        self._listeners: List[Callable[[bool], None]] = []

    def is_connected(self) -> bool:
        return self._connected

    def add_listener(self, callback: Callable[[bool], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[bool], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info("Network %s", "available" if connected else "lost")
        for callback in list(self._listeners):
            try:
                callback(connected)
            except Exception:  # noqa: BLE001
                logger.exception("Network listener failed")

    async def probe(self) -> bool:
        """Refresh the state with a HEAD request; any HTTP response counts as online."""
        if not self._probe_url:
            return self._connected
        try:
            async with httpx.AsyncClient(timeout=self._probe_timeout, transport=self._transport) as client:
                await client.head(self._probe_url)
            online = True
        except httpx.TransportError as exc:
            logger.debug("Connectivity probe to %s failed: %s", self._probe_url, exc)
            online = False
        self.set_connected(online)
        return online
