"""
Worker runtime: one broker, a pool per queue, the outbox dispatcher and the
expired-booking reaper.

Run standalone with ``python -m ticketflow.workers`` (set ``RUN_WORKERS=false``
on the API processes), or let the API lifespan start it in-process.
"""
import asyncio
import logging
from typing import Dict, Optional
from ticketflow.consumers import booking_saga, payment_saga, ticket_saga
from ticketflow.consumers.booking_reaper import BookingReaper
from ticketflow.consumers.notification_consumer import NotificationConsumer
from ticketflow.consumers.outbox_dispatcher import OutboxDispatcher
from ticketflow.consumers.saga import SagaRouter
from ticketflow.core.config import (
    LOG_FORMAT,
    LOG_LEVEL,
    NOTIFICATION_MAX_RETRIES,
    PAYMENT_TIMEOUT_SECONDS,
    SAGA_JOB_ATTEMPTS,
    SAGA_RETRY_BACKOFF_SECONDS,
    WORKER_CONCURRENCY,
)
from ticketflow.core.db import close_db, init_db
from ticketflow.events.domain_events import Queue
from ticketflow.messaging.broker import InMemoryBroker, WorkerPool
from ticketflow.services.mail_service import MailSender, SmtpMailSender
from ticketflow.services.payment_gateway import PaymentGateway, StripePaymentGateway

log = logging.getLogger(__name__)


class Runtime:

    def __init__(
        self,
        gateway: PaymentGateway,
        mail_sender: MailSender,
        broker: Optional[InMemoryBroker] = None,
        concurrency: int = WORKER_CONCURRENCY,
        backoff: float = SAGA_RETRY_BACKOFF_SECONDS,
        attempts: int = SAGA_JOB_ATTEMPTS,
        max_notification_retries: int = NOTIFICATION_MAX_RETRIES,
        payment_timeout: float = PAYMENT_TIMEOUT_SECONDS,
    ):
        self.broker = broker or InMemoryBroker()
        self.gateway = gateway
        self.routers: Dict[Queue, SagaRouter] = {
            Queue.TICKET: ticket_saga.build_router(),
            Queue.BOOKING: booking_saga.build_router(self.broker),
            Queue.PAYMENT: payment_saga.build_router(gateway, payment_timeout),
        }
        self.notifications = NotificationConsumer(self.broker, mail_sender, max_notification_retries)

        self.pools: Dict[Queue, WorkerPool] = {
            queue: WorkerPool(
                self.broker,
                queue.value,
                router.process,
                concurrency=concurrency,
                on_failed=router.on_failed,
                on_completed=router.on_completed,
                backoff=backoff,
            )
            for queue, router in self.routers.items()
        }
        self.pools[Queue.EMAIL] = WorkerPool(
            self.broker, Queue.EMAIL.value, self.notifications.process, concurrency=concurrency
        )
        self.pools[Queue.EMAIL_DEAD_LETTER] = WorkerPool(
            self.broker, Queue.EMAIL_DEAD_LETTER.value, self.notifications.process, concurrency=1
        )

        self.dispatcher = OutboxDispatcher(self.broker, attempts=attempts)
        self.reaper = BookingReaper()

    async def start(self):
        for pool in self.pools.values():
            await pool.start()
        await self.dispatcher.start()
        await self.reaper.start()
        log.info("Worker runtime started.")

    async def stop(self):
        await self.reaper.stop()
        await self.dispatcher.stop()
        for pool in self.pools.values():
            await pool.stop()
        await self.broker.close()
        await self.gateway.aclose()
        log.info("Worker runtime stopped.")

    async def run_until_idle(self, max_rounds: int = 100) -> int:
        """
        Dispatches and processes synchronously until no outbox row is pending
        and every queue is empty. Used by tests and one-shot maintenance runs.
        Returns the number of jobs processed.
        """
        total = 0
        for _ in range(max_rounds):
            dispatched = await self.dispatcher.dispatch_pending()
            processed = 0
            for pool in self.pools.values():
                processed += await pool.process_available()
            total += processed
            if not dispatched and not processed:
                break
        return total


async def main():
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    await init_db()
    runtime = Runtime(StripePaymentGateway(), SmtpMailSender())
    await runtime.start()
    try:
        await asyncio.Event().wait()
    finally:
        await runtime.stop()
        await close_db()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log.info("Worker service stopped.")
