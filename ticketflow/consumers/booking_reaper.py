import asyncio
import logging
from typing import List, Optional
from ticketflow.core.config import REAPER_INTERVAL_SECONDS
from ticketflow.services.booking_service import cancel_expired_bookings

log = logging.getLogger(__name__)


class BookingReaper:
    """Periodically cancels PENDING bookings whose hold has expired."""

    def __init__(self, interval: float = REAPER_INTERVAL_SECONDS, batch_size: int = 100):
        self.interval = interval
        self.batch_size = batch_size
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self._task:
            return
        self._task = asyncio.create_task(self._run(), name="booking-reaper")
        log.info(f"Booking reaper started (every {self.interval}s)")

    async def stop(self):
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _run(self):
        while True:
            try:
                await self.sweep()
            except Exception:
                log.exception("Booking reaper sweep failed.")
            await asyncio.sleep(self.interval)

    async def sweep(self) -> List[str]:
        cancelled = await cancel_expired_bookings(self.batch_size)
        if cancelled:
            log.info(f"Reaper cancelled {len(cancelled)} expired booking(s): {', '.join(cancelled)}")
        return cancelled
