import asyncio
import logging
import httpx
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class Connectivity:
    """
    Online/offline signal.
    Listeners fire on every offline -> online transition.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[Listener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: Listener):
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_online(self, online: bool):
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Network reachable")
            for listener in list(self._listeners):
                try:
                    listener()
                except Exception as e:
                    logger.error(f"Connectivity listener failed: {e}", exc_info=True)
        elif was_online and not online:
            logger.warning("Network unreachable, changes will be queued")


class ConnectivityMonitor:
    """Probes a URL at a fixed interval and feeds the result into a Connectivity signal."""

    def __init__(self, connectivity: Connectivity, url: str, interval_seconds: float,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.connectivity = connectivity
        self.url = url
        self.interval_seconds = interval_seconds
        self.running = False
        self.client = httpx.AsyncClient(timeout=5, transport=transport)

    async def probe(self) -> bool:
        try:
            await self.client.head(self.url)
            # Any HTTP answer means the network path works
            online = True
        except httpx.TransportError as e:
            logger.debug(f"Connectivity probe failed: {e}")
            online = False
        self.connectivity.set_online(online)
        return online

    async def run(self):
        self.running = True
        logger.info(f"Connectivity monitor started ({self.url} every {self.interval_seconds}s)")
        while self.running:
            await self.probe()
            await asyncio.sleep(self.interval_seconds)

    async def close(self):
        self.running = False
        await self.client.aclose()
