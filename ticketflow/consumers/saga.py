"""
Saga router shared by the Ticket, Booking and Payment domains.

A router is a static table from ``EventType`` to an async handler, plus the
compensating event to append when a job exhausts its attempts. Job ids are
outbox event ids, so settling a job advances its outbox row to PUBLISHED.
Event types listed in ``settled_downstream`` hand their row to a later stage,
which marks it PUBLISHED itself.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional
from ticketflow.core.exceptions import UnknownJobError
from ticketflow.events.domain_events import Aggregate, EventType
from ticketflow.events.outbox_utility import create_outbox_event, mark_published, renew_dispatch_lease
from ticketflow.messaging.broker import Job
from ticketflow.schemas.events import EventPayload

log = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any], str], Awaitable[None]]


async def emit(
    aggregate: Aggregate,
    event_type: EventType,
    aggregate_id: Any,
    payload: EventPayload,
    conn: Any = None,
) -> None:
    """Appends the next event of the chain to the outbox."""
    await create_outbox_event(
        aggregate_type=aggregate,
        aggregate_id=aggregate_id,
        event_type=event_type,
        payload=payload.to_event(),
        conn=conn,
    )
    log.info(f"Emitted {event_type.value} for {aggregate.value} {aggregate_id}")


class SagaRouter:

    def __init__(
        self,
        name: str,
        aggregate: Aggregate,
        handlers: Dict[EventType, Handler],
        failure_events: Optional[Dict[EventType, EventType]] = None,
        settled_downstream: Iterable[EventType] = (),
    ):
        self.name = name
        self.aggregate = aggregate
        self.handlers = dict(handlers)
        self.failure_events = dict(failure_events or {})
        self.settled_downstream = frozenset(settled_downstream)

    async def handle(self, job_name: str, payload: Dict[str, Any], event_id: Optional[str] = None) -> None:
        kind = EventType.parse(job_name)
        handler = self.handlers.get(kind) if kind else None
        if handler is None:
            raise UnknownJobError(self.name, job_name)

        log.info(f"[{self.name}] handling {job_name} (event {event_id})")
        await handler(payload, event_id)

    async def process(self, job: Job) -> None:
        # Every attempt restarts the reconciliation clock for its row.
        await renew_dispatch_lease(job.id)
        await self.handle(job.name, job.data, job.id)

    async def on_completed(self, job: Job) -> None:
        if EventType.parse(job.name) in self.settled_downstream:
            return
        await mark_published(job.id)

    async def on_failed(self, job: Job, exc: BaseException) -> None:
        """Appends the compensating event for a permanently failed job, then settles it."""
        kind = EventType.parse(job.name)
        failure_event = self.failure_events.get(kind) if kind else None
        booking_id = job.data.get("bookingId")

        if failure_event and booking_id:
            log.error(f"[{self.name}] Job {job.id} failed permanently. Triggering Saga Rollback: {failure_event.value}")
            payload = {"bookingId": booking_id, "reason": str(exc) or type(exc).__name__}
            if job.data.get("paymentIntent"):
                payload["paymentIntent"] = job.data["paymentIntent"]
            await create_outbox_event(
                aggregate_type=self.aggregate,
                aggregate_id=booking_id,
                event_type=failure_event,
                payload=payload,
            )
        else:
            log.critical(f"[{self.name}] Job {job.id} ({job.name}) failed permanently with no compensation: {exc}")

        await mark_published(job.id)
