from datetime import datetime
import pytest

from ticketflow.consumers.notification_consumer import Delivery, NotificationConsumer, RETRY_HEADER
from ticketflow.core.exceptions import UnknownJobError
from ticketflow.events.domain_events import EventType, Queue
from ticketflow.messaging.broker import InMemoryBroker, WorkerPool
from ticketflow.testing.fakes import FakeMailSender
from helpers import sample

PAYLOAD = {
    "bookingId": "b-42",
    "userId": "user-1",
    "eventId": "evt-1",
    "ticketTypeId": "tt-1",
    "quantity": 2,
    "email": "fan@example.com",
}


def _pools(broker, consumer):
    return (
        WorkerPool(broker, Queue.EMAIL.value, consumer.process, concurrency=1),
        WorkerPool(broker, Queue.EMAIL_DEAD_LETTER.value, consumer.process, concurrency=1),
    )


async def _publish(broker, headers=None):
    return await broker.publish(
        Queue.EMAIL.value,
        EventType.BOOKING_CONFIRMED.value,
        PAYLOAD,
        headers={RETRY_HEADER: 0} if headers is None else headers,
    )


class TestNotificationDelivery:

    @pytest.mark.asyncio
    async def test_successful_send_is_done(self):
        broker, mailer = InMemoryBroker(), FakeMailSender()
        consumer = NotificationConsumer(broker, mailer, max_retries=3)
        job = await _publish(broker)
        broker.get_nowait(Queue.EMAIL.value)

        assert await consumer.handle_booking_confirmed(job) == Delivery.DONE
        assert mailer.sent[0]["to"] == "fan@example.com"
        assert mailer.sent[0]["subject"] == "Event Booked Success"
        assert broker.size(Queue.EMAIL.value) == 0

    @pytest.mark.asyncio
    async def test_failure_republishes_a_new_message_with_bumped_counter(self):
        broker = InMemoryBroker()
        consumer = NotificationConsumer(broker, FakeMailSender(fail_times=1), max_retries=3)
        job = await _publish(broker)
        broker.get_nowait(Queue.EMAIL.value)

        assert await consumer.handle_booking_confirmed(job) == Delivery.REQUEUED

        [retry] = broker.peek(Queue.EMAIL.value)
        assert retry.id != job.id
        assert retry.headers[RETRY_HEADER] == 1
        assert retry.data == PAYLOAD

    @pytest.mark.asyncio
    async def test_missing_counter_defaults_to_first_attempt(self):
        broker = InMemoryBroker()
        consumer = NotificationConsumer(broker, FakeMailSender(fail_times=1), max_retries=3)
        job = await _publish(broker, headers={})
        broker.get_nowait(Queue.EMAIL.value)

        await consumer.handle_booking_confirmed(job)

        assert broker.peek(Queue.EMAIL.value)[0].headers[RETRY_HEADER] == 1

    @pytest.mark.asyncio
    async def test_persistent_failure_is_attempted_four_times_then_dead_lettered(self):
        broker = InMemoryBroker()
        mailer = FakeMailSender(fail_times=-1)
        consumer = NotificationConsumer(broker, mailer, max_retries=3)
        email_pool, dead_letter_pool = _pools(broker, consumer)
        retries_before = sample("notification_retry_total")
        dead_before = sample("notification_dead_letter_total")
        await _publish(broker)

        assert await email_pool.process_available() == 4
        assert mailer.attempts == 4
        assert mailer.sent == []

        [dead] = broker.peek(Queue.EMAIL_DEAD_LETTER.value)
        assert dead.data["totalAttempts"] == 4
        assert dead.data["bookingId"] == "b-42"
        assert dead.data["failureReason"] == "SMTP relay refused the connection"
        assert datetime.fromisoformat(dead.data["failedAt"]).tzinfo is not None
        assert sample("notification_retry_total") == retries_before + 3

        assert await dead_letter_pool.process_available() == 1
        assert sample("notification_dead_letter_total") == dead_before + 1
        # The alert handler never retries.
        assert broker.size(Queue.EMAIL.value) == 0
        assert broker.size(Queue.EMAIL_DEAD_LETTER.value) == 0
        assert mailer.attempts == 4

    @pytest.mark.asyncio
    async def test_recovers_before_exhausting_retries(self):
        broker = InMemoryBroker()
        mailer = FakeMailSender(fail_times=2)
        consumer = NotificationConsumer(broker, mailer, max_retries=3)
        email_pool, _ = _pools(broker, consumer)
        await _publish(broker)

        assert await email_pool.process_available() == 3
        assert len(mailer.sent) == 1
        assert broker.size(Queue.EMAIL_DEAD_LETTER.value) == 0

    @pytest.mark.asyncio
    async def test_dead_letter_handler_raises_an_operator_alert(self, caplog):
        broker = InMemoryBroker()
        consumer = NotificationConsumer(broker, FakeMailSender(), max_retries=3)
        job = await broker.publish(
            Queue.EMAIL_DEAD_LETTER.value,
            EventType.BOOKING_CONFIRMED.value,
            {**PAYLOAD, "failureReason": "boom", "failedAt": "2026-01-01T00:00:00+00:00", "totalAttempts": 4},
        )

        await consumer.process(job)

        alerts = [r for r in caplog.records if r.levelname == "CRITICAL"]
        assert len(alerts) == 1
        assert "b-42" in alerts[0].getMessage()

    @pytest.mark.asyncio
    async def test_unknown_job_name_fails_loudly(self):
        broker, mailer = InMemoryBroker(), FakeMailSender()
        consumer = NotificationConsumer(broker, mailer, max_retries=3)
        job = await broker.publish(Queue.EMAIL.value, "booking.teleported", PAYLOAD)

        with pytest.raises(UnknownJobError):
            await consumer.process(job)
        assert mailer.attempts == 0
