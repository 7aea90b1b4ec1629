import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock
import pytest
from tortoise import timezone

from ticketflow.consumers.outbox_dispatcher import OutboxDispatcher
from ticketflow.consumers.saga import SagaRouter
from ticketflow.core.config import RECONCILE_AFTER_SECONDS, check_reconcile_window, saga_job_lifetime
from ticketflow.events.domain_events import Aggregate, EventType, Queue
from ticketflow.events.outbox_utility import create_outbox_event, get_event
from ticketflow.messaging.broker import InMemoryBroker, WorkerPool
from ticketflow.models.outbox import OutboxEvent, OutboxStatus
from helpers import sample


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def dispatcher(db, broker):
    return OutboxDispatcher(broker, interval=0.01, batch_size=50, reconcile_after=30, attempts=3)


async def _append(event_type, booking_id="b-1"):
    return await create_outbox_event(Aggregate.BOOKING, booking_id, event_type, {"bookingId": booking_id})


class TestDispatch:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event_type,queue", [
        (EventType.BOOKING_CREATED, Queue.TICKET),
        (EventType.TICKETS_RESERVED, Queue.BOOKING),
        (EventType.BOOKING_PAYMENT_FAILED, Queue.BOOKING),
        (EventType.PAYMENT_REQUESTED, Queue.PAYMENT),
    ])
    async def test_routes_each_event_to_exactly_one_queue(self, dispatcher, broker, event_type, queue):
        event_id = await _append(event_type)

        assert await dispatcher.dispatch_pending() == 1

        jobs = broker.peek(queue.value)
        assert len(jobs) == 1
        job = jobs[0]
        assert job.id == str(event_id)
        assert job.name == event_type.value
        assert job.data == {"bookingId": "b-1"}
        assert job.attempts == 3
        others = [q for q in Queue if q != queue]
        assert all(broker.size(q.value) == 0 for q in others)
        assert (await get_event(event_id)).status == OutboxStatus.DISPATCHED

    @pytest.mark.asyncio
    async def test_second_sweep_does_not_republish(self, dispatcher, broker):
        await _append(EventType.BOOKING_CREATED)

        await dispatcher.dispatch_pending()
        await dispatcher.dispatch_pending()

        assert broker.size(Queue.TICKET.value) == 1

    @pytest.mark.asyncio
    async def test_unknown_event_type_is_logged_and_sweep_continues(self, dispatcher, broker, caplog):
        before = sample("outbox_unroutable_total")
        bogus = await OutboxEvent.create(
            aggregate_type="Booking", aggregate_id="b-0", event_type="booking.teleported", payload={}
        )
        good = await _append(EventType.BOOKING_CREATED)

        published = await dispatcher.dispatch_pending()

        assert published == 1
        assert sample("outbox_unroutable_total") == before + 1
        assert "CONFIGURATION ERROR" in caplog.text
        assert (await get_event(bogus.id)).status == OutboxStatus.DISPATCHED
        assert broker.peek(Queue.TICKET.value)[0].id == str(good)

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_the_dispatched_mark(self, dispatcher, broker):
        before = sample("outbox_publish_failures_total")
        broker.publish = AsyncMock(side_effect=RuntimeError("broker down"))
        first = await _append(EventType.BOOKING_CREATED, "b-1")
        second = await _append(EventType.BOOKING_CREATED, "b-2")

        assert await dispatcher.dispatch_pending() == 0

        assert broker.publish.await_count == 2
        assert sample("outbox_publish_failures_total") == before + 2
        assert (await get_event(first)).status == OutboxStatus.DISPATCHED
        assert (await get_event(second)).status == OutboxStatus.DISPATCHED


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_stale_dispatched_rows_are_republished_with_the_same_job_id(self, dispatcher, broker):
        before = sample("outbox_redelivered_total")
        event_id = await _append(EventType.BOOKING_CREATED)
        original_publish = broker.publish
        broker.publish = AsyncMock(side_effect=RuntimeError("broker down"))
        await dispatcher.dispatch_pending()
        broker.publish = original_publish

        # Fresh rows are left alone.
        assert await dispatcher.reconcile() == 0

        await OutboxEvent.filter(id=event_id).update(dispatched_at=timezone.now() - timedelta(minutes=2))
        assert await dispatcher.reconcile() == 1
        assert await dispatcher.reconcile() == 0

        jobs = broker.peek(Queue.TICKET.value)
        assert [job.id for job in jobs] == [str(event_id)]
        assert sample("outbox_redelivered_total") == before + 1

    @pytest.mark.asyncio
    async def test_published_rows_are_never_reconciled(self, dispatcher, broker):
        event_id = await _append(EventType.BOOKING_CREATED)
        await dispatcher.dispatch_pending()
        await OutboxEvent.filter(id=event_id).update(
            status=OutboxStatus.PUBLISHED, dispatched_at=timezone.now() - timedelta(minutes=2)
        )
        broker.get_nowait(Queue.TICKET.value)

        assert await dispatcher.reconcile() == 0
        assert broker.size(Queue.TICKET.value) == 0

    @pytest.mark.asyncio
    async def test_row_whose_job_is_backing_off_is_not_redelivered(self, dispatcher, broker):
        event_id = await _append(EventType.BOOKING_CREATED)
        processor = AsyncMock(side_effect=RuntimeError("db blip"))
        pool = WorkerPool(broker, Queue.TICKET.value, processor, concurrency=1, backoff=0.2)
        await dispatcher.dispatch_pending()

        # First attempt fails; the job now waits out its backoff off-queue.
        assert await pool.process_available() == 1
        assert broker.size(Queue.TICKET.value) == 0
        await OutboxEvent.filter(id=event_id).update(dispatched_at=timezone.now() - timedelta(minutes=2))

        assert await dispatcher.reconcile() == 0
        assert broker.in_flight(str(event_id)) is True
        await broker.close()

    @pytest.mark.asyncio
    async def test_each_saga_attempt_renews_the_dispatch_lease(self, dispatcher, broker):
        event_id = await _append(EventType.BOOKING_CREATED)
        router = SagaRouter(
            name="ticket",
            aggregate=Aggregate.BOOKING,
            handlers={EventType.BOOKING_CREATED: AsyncMock(side_effect=RuntimeError("gateway slow"))},
        )
        await dispatcher.dispatch_pending()
        job = broker.get_nowait(Queue.TICKET.value)
        stale = timezone.now() - timedelta(minutes=2)
        await OutboxEvent.filter(id=event_id).update(dispatched_at=stale)

        with pytest.raises(RuntimeError):
            await router.process(job)

        assert (await get_event(event_id)).status == OutboxStatus.DISPATCHED
        # A dispatcher in another worker process sees a live lease.
        other = OutboxDispatcher(InMemoryBroker(), reconcile_after=30, attempts=3)
        assert await other.reconcile() == 0


class TestReconcileWindow:

    def test_job_lifetime_counts_every_timeout_and_backoff(self):
        assert saga_job_lifetime(attempts=3, timeout=10, backoff=1) == 33
        assert saga_job_lifetime(attempts=1, timeout=10, backoff=1) == 10

    def test_default_window_outlasts_a_retrying_payment_job(self):
        assert RECONCILE_AFTER_SECONDS > saga_job_lifetime(attempts=3, timeout=10, backoff=1)

    def test_window_shorter_than_a_job_lifetime_is_rejected(self):
        with pytest.raises(ValueError, match="RECONCILE_AFTER_SECONDS"):
            check_reconcile_window(30, attempts=3, timeout=10, backoff=1, mail_timeout=15)

    def test_window_shorter_than_one_email_send_is_rejected(self):
        with pytest.raises(ValueError):
            check_reconcile_window(20, attempts=1, timeout=5, backoff=1, mail_timeout=30)

    def test_sufficient_window_passes(self):
        check_reconcile_window(60, attempts=3, timeout=10, backoff=1, mail_timeout=15)


class TestTicks:

    @pytest.mark.asyncio
    async def test_tick_is_skipped_while_a_sweep_is_running(self, dispatcher):
        started, release = asyncio.Event(), asyncio.Event()

        async def slow_sweep():
            started.set()
            await release.wait()
            return 0

        dispatcher.dispatch_pending = slow_sweep
        dispatcher.reconcile = AsyncMock(return_value=0)

        first = asyncio.create_task(dispatcher.tick())
        await started.wait()
        assert dispatcher.busy is True
        assert await dispatcher.tick() is False

        release.set()
        assert await first is True
        assert dispatcher.busy is False
        dispatcher.reconcile.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sweep_exception_does_not_wedge_the_dispatcher(self, dispatcher):
        dispatcher.dispatch_pending = AsyncMock(side_effect=ConnectionError("db gone"))

        assert await dispatcher.tick() is True
        assert dispatcher.busy is False

    @pytest.mark.asyncio
    async def test_timer_drains_the_outbox(self, dispatcher, broker):
        await _append(EventType.BOOKING_CREATED)

        await dispatcher.start()
        try:
            job = await asyncio.wait_for(broker.get(Queue.TICKET.value), timeout=2)
        finally:
            await dispatcher.stop()

        assert job.name == "booking.created"
