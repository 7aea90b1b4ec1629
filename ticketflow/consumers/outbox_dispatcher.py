"""
Outbox dispatcher.

Every ``interval`` seconds a sweep is launched that moves PENDING outbox rows
onto their saga queue. Sweeps never overlap: a tick that finds the previous
sweep still running is skipped, not queued.

Rows are marked DISPATCHED *before* they are published. A crash or publish
failure in between leaves a DISPATCHED row that no job will ever settle; the
reconciliation half of the sweep re-publishes those after
``reconcile_after`` seconds under the same job id. Rows whose job is still
queued, running or backing off in this process are left alone.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Optional, Set
from tortoise import timezone
from ticketflow.core import metrics
from ticketflow.core.config import BATCH_SIZE, POLLING_INTERVAL, RECONCILE_AFTER_SECONDS, SAGA_JOB_ATTEMPTS
from ticketflow.events.domain_events import EVENT_ROUTES, route_for
from ticketflow.events.outbox_utility import (
    claim_for_redelivery,
    list_pending,
    list_stale_dispatched,
    mark_dispatched,
)
from ticketflow.messaging.broker import InMemoryBroker
from ticketflow.models.outbox import OutboxEvent

log = logging.getLogger(__name__)


class OutboxDispatcher:

    def __init__(
        self,
        broker: InMemoryBroker,
        interval: float = POLLING_INTERVAL,
        batch_size: int = BATCH_SIZE,
        reconcile_after: float = RECONCILE_AFTER_SECONDS,
        attempts: int = SAGA_JOB_ATTEMPTS,
    ):
        self.broker = broker
        self.interval = interval
        self.batch_size = batch_size
        self.reconcile_after = reconcile_after
        self.attempts = attempts
        self._busy = False
        self._running = False
        self._timer: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return self._busy

    async def start(self):
        if self._running:
            return
        self._running = True
        self._timer = asyncio.create_task(self._run(), name="outbox-dispatcher")
        log.info(f"--- Outbox Dispatcher Started (every {self.interval}s) ---")

    async def stop(self):
        self._running = False
        if self._timer:
            self._timer.cancel()
            await asyncio.gather(self._timer, return_exceptions=True)
            self._timer = None
        if self._ticks:
            await asyncio.gather(*self._ticks, return_exceptions=True)
        log.info("Outbox Dispatcher stopped.")

    async def _run(self):
        while self._running:
            # Ticks are launched, not awaited, so a slow sweep cannot stretch the interval.
            task = asyncio.create_task(self.tick())
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)
            await asyncio.sleep(self.interval)

    async def tick(self) -> bool:
        """Runs one sweep unless one is already in progress. Returns whether it ran."""
        if self._busy:
            log.debug("Previous outbox sweep still running; skipping tick.")
            return False

        self._busy = True
        try:
            await self.dispatch_pending()
            await self.reconcile()
        except Exception:
            log.exception("Outbox sweep failed; rows stay PENDING/DISPATCHED for the next tick.")
        finally:
            self._busy = False
        return True

    async def dispatch_pending(self) -> int:
        """Publishes one batch of PENDING rows. Returns how many were handed to a queue."""
        events = await list_pending(self.batch_size)
        if not events:
            return 0

        published = 0
        for event in events:
            try:
                if not await mark_dispatched(event.id):
                    # Another dispatcher instance got there first.
                    continue
                if await self._publish(event):
                    published += 1
            except Exception:
                log.exception(f"Failed to dispatch outbox event {event.id} ({event.event_type})")
        return published

    async def reconcile(self) -> int:
        """Re-publishes DISPATCHED rows that were never PUBLISHED. Returns the count."""
        older_than = timezone.now() - timedelta(seconds=self.reconcile_after)
        routable = [kind.value for kind in EVENT_ROUTES]
        stale = await list_stale_dispatched(older_than, self.batch_size, event_types=routable)

        redelivered = 0
        for event in stale:
            if self.broker.in_flight(str(event.id)):
                log.debug(f"Outbox event {event.id} is still being worked; not reconciling.")
                continue
            try:
                if not await claim_for_redelivery(event.id, older_than):
                    continue
                log.warning(
                    f"Reconciling outbox event {event.id} ({event.event_type}); "
                    f"DISPATCHED at {event.dispatched_at} and never published."
                )
                if await self._publish(event):
                    metrics.OUTBOX_REDELIVERED.inc()
                    redelivered += 1
            except Exception:
                log.exception(f"Failed to reconcile outbox event {event.id}")
        return redelivered

    async def _publish(self, event: OutboxEvent) -> bool:
        queue = route_for(event.event_type)
        if queue is None:
            metrics.OUTBOX_UNROUTABLE.inc()
            log.error(
                f"CONFIGURATION ERROR: no queue route for event type '{event.event_type}' "
                f"(outbox event {event.id}). Event left DISPATCHED."
            )
            return False

        try:
            await self.broker.publish(
                queue.value,
                event.event_type,
                event.payload,
                job_id=str(event.id),
                attempts=self.attempts,
            )
        except Exception:
            metrics.OUTBOX_PUBLISH_FAILURES.inc()
            log.exception(f"Publish of outbox event {event.id} to {queue.value} failed; left for reconciliation.")
            return False

        metrics.OUTBOX_DISPATCHED.labels(queue=queue.value).inc()
        log.info(f"Dispatcher DISPATCHING: {event.event_type} (ID: {event.id.hex[:8]}...) -> {queue.value}")
        return True
