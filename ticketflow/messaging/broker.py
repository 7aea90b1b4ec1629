"""
In-process job broker and worker pools.

Named queues are ``asyncio.Queue`` instances. A job carries its own attempt
budget; a ``WorkerPool`` re-enqueues a failed job with exponential backoff
until the budget is spent, then hands it to the pool's ``on_failed`` hook.

The broker also counts unsettled jobs per correlation id (the job id unless an
``x-correlation-id`` header says otherwise). A job stays in flight from publish
until it completes or fails permanently, backoff included.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from ticketflow.core.config import SAGA_RETRY_BACKOFF_SECONDS, WORKER_CONCURRENCY

log = logging.getLogger(__name__)

CORRELATION_HEADER = "x-correlation-id"


@dataclass
class Job:
    name: str
    data: Dict[str, Any]
    queue: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempts: int = 1
    attempts_made: int = 0
    headers: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def correlation_id(self) -> str:
        return str(self.headers.get(CORRELATION_HEADER) or self.id)


class InMemoryBroker:
    """In-memory broker: one FIFO per queue name, shared by every pool in the process."""

    def __init__(self):
        self._queues: Dict[str, asyncio.Queue] = {}
        self._delayed: Set[asyncio.Task] = set()
        self._in_flight: Dict[str, int] = {}

    def _queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def publish(
        self,
        queue: str,
        name: str,
        data: Dict[str, Any],
        job_id: Optional[str] = None,
        attempts: int = 1,
        headers: Optional[Dict[str, Any]] = None,
    ) -> Job:
        job = Job(
            name=name,
            data=dict(data),
            queue=queue,
            id=job_id or str(uuid.uuid4()),
            attempts=attempts,
            headers=dict(headers or {}),
        )
        self._queue(queue).put_nowait(job)
        key = job.correlation_id
        self._in_flight[key] = self._in_flight.get(key, 0) + 1
        log.debug(f"Published job {job.id} ({name}) to {queue}")
        return job

    def settle(self, job: Job) -> None:
        """Drops a completed or permanently failed job from the in-flight count."""
        key = job.correlation_id
        remaining = self._in_flight.get(key, 0) - 1
        if remaining > 0:
            self._in_flight[key] = remaining
        else:
            self._in_flight.pop(key, None)

    def in_flight(self, correlation_id: str) -> bool:
        """True while a job for this id is queued, running or waiting out a backoff."""
        return self._in_flight.get(str(correlation_id), 0) > 0

    async def requeue(self, job: Job, delay: float = 0.0) -> None:
        """Puts a job back on its own queue, optionally after a delay."""
        if delay <= 0:
            self._queue(job.queue).put_nowait(job)
            return

        task = asyncio.create_task(self._requeue_later(job, delay))
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    async def _requeue_later(self, job: Job, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue(job.queue).put_nowait(job)

    async def get(self, queue: str) -> Job:
        return await self._queue(queue).get()

    def get_nowait(self, queue: str) -> Optional[Job]:
        try:
            return self._queue(queue).get_nowait()
        except asyncio.QueueEmpty:
            return None

    def size(self, queue: str) -> int:
        return self._queue(queue).qsize()

    def peek(self, queue: str) -> List[Job]:
        """Snapshot of waiting jobs, oldest first. For inspection only."""
        return list(self._queue(queue)._queue)

    async def close(self) -> None:
        for task in list(self._delayed):
            task.cancel()
        if self._delayed:
            await asyncio.gather(*self._delayed, return_exceptions=True)
        self._delayed.clear()


Processor = Callable[[Job], Awaitable[Any]]
FailureHook = Callable[[Job, BaseException], Awaitable[None]]
CompletionHook = Callable[[Job], Awaitable[None]]


class WorkerPool:
    """N concurrent consumers of one queue. Jobs run in parallel and out of order."""

    def __init__(
        self,
        broker: InMemoryBroker,
        queue: str,
        processor: Processor,
        concurrency: int = WORKER_CONCURRENCY,
        on_failed: Optional[FailureHook] = None,
        on_completed: Optional[CompletionHook] = None,
        backoff: float = SAGA_RETRY_BACKOFF_SECONDS,
    ):
        self.broker = broker
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency
        self.on_failed = on_failed
        self.on_completed = on_completed
        self.backoff = backoff
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._work(n), name=f"{self.queue}-worker-{n}")
            for n in range(self.concurrency)
        ]
        log.info(f"Worker pool '{self.queue}' started with {self.concurrency} workers")

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        log.info(f"Worker pool '{self.queue}' stopped")

    async def _work(self, n: int):
        while True:
            job = await self.broker.get(self.queue)
            try:
                await self.run_job(job)
            except Exception:
                log.exception(f"Worker {self.queue}-{n} crashed on job {job.id}; continuing")

    async def run_job(self, job: Job) -> bool:
        """Runs one attempt of ``job``. Returns True if the job completed."""
        job.attempts_made += 1
        try:
            await self.processor(job)
        except Exception as exc:
            if job.attempts_made < job.attempts:
                delay = self.backoff * (2 ** (job.attempts_made - 1))
                log.warning(
                    f"Job {job.id} ({job.name}) failed (Attempt {job.attempts_made} of {job.attempts}). "
                    f"Retrying in {delay:.1f}s: {exc}"
                )
                await self.broker.requeue(job, delay)
                return False

            log.error(
                f"Job {job.id} ({job.name}) failed permanently after {job.attempts_made} attempt(s): {exc}",
                exc_info=exc,
            )
            if self.on_failed:
                await self._run_hook(self.on_failed, job, exc)
            self.broker.settle(job)
            return False

        if self.on_completed:
            await self._run_hook(self.on_completed, job)
        self.broker.settle(job)
        return True

    async def process_available(self) -> int:
        """Runs every job currently waiting on the queue, one at a time. Returns the count."""
        processed = 0
        while (job := self.broker.get_nowait(self.queue)) is not None:
            await self.run_job(job)
            processed += 1
        return processed

    async def _run_hook(self, hook, *args):
        try:
            await hook(*args)
        except Exception:
            # The outbox row stays DISPATCHED; reconciliation will redeliver it.
            log.exception(f"Hook {getattr(hook, '__qualname__', hook)} failed for queue {self.queue}")
