"""
Booking-confirmed email delivery.

Each attempt is its own message. The attempt number travels in the
``x-retry-count`` header; a failed send re-publishes the payload with the
counter bumped, and the attempt after ``max_retries`` goes to the
dead-letter channel instead. Jobs on these channels are single-attempt, so
the broker never retries them on its own.

Jobs handed over by the booking saga carry their outbox event id in the
``x-correlation-id`` header. That row is marked PUBLISHED only once the email
is sent or its dead letter has raised the operator alert.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from ticketflow.core import metrics
from ticketflow.core.config import NOTIFICATION_MAX_RETRIES
from ticketflow.core.exceptions import UnknownJobError
from ticketflow.events.domain_events import EventType, Queue
from ticketflow.events.outbox_utility import mark_published, renew_dispatch_lease
from ticketflow.messaging.broker import CORRELATION_HEADER, InMemoryBroker, Job
from ticketflow.services.mail_service import MailSender, booking_success_email

log = logging.getLogger(__name__)

RETRY_HEADER = "x-retry-count"


class Delivery(str, Enum):
    DONE = "DONE"
    REQUEUED = "REQUEUED"
    DEAD_LETTERED = "DEAD_LETTERED"


def retry_count(job: Job) -> int:
    try:
        return int(job.headers.get(RETRY_HEADER, 0))
    except (TypeError, ValueError):
        return 0


def outbox_event_id(job: Job) -> Optional[str]:
    return job.headers.get(CORRELATION_HEADER)


class NotificationConsumer:

    def __init__(self, broker: InMemoryBroker, mail_sender: MailSender, max_retries: int = NOTIFICATION_MAX_RETRIES):
        self.broker = broker
        self.mail_sender = mail_sender
        self.max_retries = max_retries

    async def handle_booking_confirmed(self, job: Job) -> Delivery:
        attempt = retry_count(job)
        payload = job.data
        message = booking_success_email(payload)
        event_id = outbox_event_id(job)
        if event_id:
            await renew_dispatch_lease(event_id)

        try:
            await self.mail_sender.send(payload.get("email"), message["subject"], message["html"])
        except Exception as e:
            return await self._on_send_failure(job, attempt, e)

        log.info(f"Booking confirmation email sent for booking {payload.get('bookingId')} (attempt {attempt + 1}).")
        await self._settle(job)
        return Delivery.DONE

    async def _on_send_failure(self, job: Job, attempt: int, error: Exception) -> Delivery:
        payload = job.data
        booking_id = payload.get("bookingId")

        if attempt < self.max_retries:
            log.warning(
                f"Email for booking {booking_id} failed (Attempt {attempt + 1} of {self.max_retries + 1}). "
                f"Re-publishing: {error}"
            )
            await self.broker.publish(
                Queue.EMAIL.value,
                job.name,
                payload,
                headers={**job.headers, RETRY_HEADER: attempt + 1},
            )
            metrics.NOTIFICATION_RETRIES.inc()
            return Delivery.REQUEUED

        log.error(f"Email for booking {booking_id} failed after {attempt + 1} attempts; dead-lettering: {error}")
        await self.broker.publish(
            Queue.EMAIL_DEAD_LETTER.value,
            job.name,
            {
                **payload,
                "failureReason": str(error) or type(error).__name__,
                "failedAt": datetime.now(timezone.utc).isoformat(),
                "totalAttempts": attempt + 1,
            },
            headers=dict(job.headers),
        )
        return Delivery.DEAD_LETTERED

    async def handle_dead_letter(self, job: Job) -> None:
        """Operator alert for a notification that will never be delivered. No retry."""
        data: Dict[str, Any] = job.data
        metrics.NOTIFICATION_DEAD_LETTERS.inc()
        log.critical(
            f"ALERT: booking confirmation email permanently failed. "
            f"booking={data.get('bookingId')} user={data.get('userId')} email={data.get('email')} "
            f"attempts={data.get('totalAttempts')} failedAt={data.get('failedAt')} "
            f"reason={data.get('failureReason')}"
        )
        await self._settle(job)

    async def _settle(self, job: Job) -> None:
        """Ends reconciliation for the booking.confirmed row this delivery belongs to."""
        event_id = outbox_event_id(job)
        if event_id:
            await mark_published(event_id)

    async def process(self, job: Job) -> None:
        if job.queue == Queue.EMAIL_DEAD_LETTER.value:
            await self.handle_dead_letter(job)
        elif job.name == EventType.BOOKING_CONFIRMED.value:
            await self.handle_booking_confirmed(job)
        else:
            raise UnknownJobError("notification", job.name)
