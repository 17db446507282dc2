import asyncio
import logging
import signal
import sys
import uvicorn

from .config import settings
from .storage import FileStorage
from .store import EntryStore
from .mutation_queue import MutationQueue
from .clients.anilist_client import AniListClient
from .connectivity import Connectivity, ConnectivityMonitor
from .coordinator import SyncCoordinator
from .notifier import LogNotifier
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("main")

class SyncService:
    """Owns the process-wide store, queue and coordinator."""

    def __init__(self):
        self.storage = FileStorage(settings.DATA_DIR)
        self.store = EntryStore(self.storage)
        self.queue = MutationQueue(self.storage)
        self.anilist = AniListClient()
        self.connectivity = Connectivity(online=True)
        self.monitor = ConnectivityMonitor(
            self.connectivity,
            settings.CONNECTIVITY_CHECK_URL,
            settings.CONNECTIVITY_CHECK_INTERVAL_SECONDS
        )
        self.coordinator = SyncCoordinator(
            self.store,
            self.queue,
            self.anilist,
            notifier=LogNotifier(settings.NOTIFICATIONS_ENABLED),
            connectivity=self.connectivity
        )

        # Link coordinator to server module
        server.coordinator = self.coordinator

    async def start(self):
        if not settings.ANILIST_TOKEN:
            logger.warning("ANILIST_TOKEN not set; progress will be kept locally only")
        logger.info(f"{len(self.store)} entries loaded, {len(self.queue)} mutations pending")

        # First probe decides whether the startup drain goes out
        if await self.monitor.probe():
            await self.coordinator.drain()
        self.coordinator.start()

        tasks = [asyncio.create_task(self.monitor.run())]

        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            server_task = uvicorn.Server(config).serve()
            tasks.append(asyncio.create_task(server_task))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            await self.coordinator.stop()
            await self.monitor.close()
            await self.anilist.close()

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

if __name__ == "__main__":
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = SyncService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
