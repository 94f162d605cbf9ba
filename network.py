"""Reactive network reachability state."""
from __future__ import annotations
import asyncio
import logging
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)

ReachabilityListener = Callable[[bool], None]


class NetworkMonitor:
    """Expose current reachability and notify listeners on transitions.

    Reachability is best-effort: ``is_online`` being true does not promise
    that the next remote write succeeds.
    """

    def __init__(
        self,
        online: bool = True,
        probe_url: Optional[str] = None,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._online = online
        self.probe_url = probe_url
        self.timeout = timeout
        self._transport = transport
        self._listeners: list[ReachabilityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Network is now %s", "online" if online else "offline")
        for listener in list(self._listeners):
            listener(online)

    def subscribe(self, listener: ReachabilityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def probe(self) -> bool:
        """Check ``probe_url`` and update the state; any response counts as online."""
        if not self.probe_url:
            return self._online
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                await client.head(self.probe_url)
            online = True
        except httpx.TransportError as exc:
            logger.debug("Reachability probe failed: %s", exc)
            online = False
        self.set_online(online)
        return online

    async def watch(self, interval: float = 15.0) -> None:
        """Probe every ``interval`` seconds until cancelled."""
        while True:
            await self.probe()
            await asyncio.sleep(interval)
