import logging
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, title: str, body: str, icon: Optional[str] = None) -> None: ...


class LogNotifier:
    """Default notifier: writes the notification to the log."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    async def notify(self, title: str, body: str, icon: Optional[str] = None) -> None:
        if not self.enabled:
            return
        logger.info(f"[Notification] {title} - {body}{' (with image)' if icon else ''}")
