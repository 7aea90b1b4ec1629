from typing import Any, Union
from uuid import UUID
from ticketflow.models.processed_event import ProcessedEvent


async def is_processed(event_id: Union[UUID, str], consumer: str) -> bool:
    return await ProcessedEvent.filter(event_id=str(event_id), consumer=consumer).exists()


async def mark_processed(event_id: Union[UUID, str], consumer: str, conn: Any = None) -> None:
    """
    Records the event for this consumer. Must run in the handler's transaction:
    a concurrent duplicate hits the unique constraint and rolls back its own effect.
    """
    await ProcessedEvent.create(event_id=str(event_id), consumer=consumer, using_db=conn)
