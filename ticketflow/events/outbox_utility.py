from datetime import datetime
from typing import Dict, Any, List, Optional, Union
from uuid import UUID
from tortoise import timezone
from ticketflow.events.domain_events import Aggregate, EventType
from ticketflow.models.outbox import OutboxEvent, OutboxStatus


async def create_outbox_event(
    aggregate_type: Union[Aggregate, str],
    aggregate_id: Union[UUID, str],
    event_type: Union[EventType, str],
    payload: Dict[str, Any],
    conn: Any = None
) -> UUID:
    """
    Creates a new Outbox event record using the provided database connection (transaction).

    CRITICAL: Passing 'conn' ensures the event is created atomically with the business data.
    """
    event = await OutboxEvent.create(
        aggregate_type=Aggregate(aggregate_type).value,
        aggregate_id=str(aggregate_id),
        event_type=EventType(event_type).value,
        payload=payload,
        status=OutboxStatus.PENDING,
        using_db=conn
    )
    return event.id


async def list_pending(limit: int) -> List[OutboxEvent]:
    """Oldest PENDING events first. Dispatched rows drop out, so repeated calls page forward."""
    return await OutboxEvent.filter(status=OutboxStatus.PENDING).order_by("created_at").limit(limit)


async def mark_dispatched(event_id: Union[UUID, str]) -> bool:
    """PENDING -> DISPATCHED. Returns False (and changes nothing) if the row already moved on."""
    updated = await OutboxEvent.filter(id=event_id, status=OutboxStatus.PENDING).update(
        status=OutboxStatus.DISPATCHED,
        dispatched_at=timezone.now(),
    )
    return updated == 1


async def mark_published(event_id: Union[UUID, str]) -> bool:
    """DISPATCHED -> PUBLISHED. No-op unless the row is currently DISPATCHED."""
    updated = await OutboxEvent.filter(id=event_id, status=OutboxStatus.DISPATCHED).update(
        status=OutboxStatus.PUBLISHED,
        published_at=timezone.now(),
    )
    return updated == 1


async def list_stale_dispatched(
    older_than: datetime,
    limit: int,
    event_types: Optional[List[str]] = None,
) -> List[OutboxEvent]:
    """DISPATCHED rows whose job never settled; candidates for redelivery."""
    query = OutboxEvent.filter(status=OutboxStatus.DISPATCHED, dispatched_at__lt=older_than)
    if event_types is not None:
        query = query.filter(event_type__in=event_types)
    return await query.order_by("dispatched_at").limit(limit)


async def claim_for_redelivery(event_id: Union[UUID, str], older_than: datetime) -> bool:
    """
    Renews the dispatch lease of a stale row. Only one reconciler wins the
    claim; the others see a fresh dispatched_at and skip the row.
    """
    updated = await OutboxEvent.filter(
        id=event_id,
        status=OutboxStatus.DISPATCHED,
        dispatched_at__lt=older_than,
    ).update(dispatched_at=timezone.now())
    return updated == 1


async def renew_dispatch_lease(event_id: Union[UUID, str]) -> bool:
    """Pushes back reconciliation of a DISPATCHED row whose job is still being worked."""
    updated = await OutboxEvent.filter(id=event_id, status=OutboxStatus.DISPATCHED).update(
        dispatched_at=timezone.now()
    )
    return updated == 1


async def get_event(event_id: Union[UUID, str]) -> Optional[OutboxEvent]:
    return await OutboxEvent.get_or_none(id=event_id)
