import asyncio
import time


class SystemClock:
    """Wall clock and event-loop sleep. Tests swap in a fake with the same two methods."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
