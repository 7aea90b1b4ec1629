"""
Operator-facing counters for the booking workflow.

Exposed in Prometheus text format at ``GET /metrics``.
"""
from prometheus_client import Counter

BOOKINGS_CREATED = Counter(
    "booking_created_total",
    "Bookings accepted and announced through the outbox",
)
BOOKINGS_CONFIRMED = Counter(
    "booking_confirmed_total",
    "Bookings that reached CONFIRMED",
)
BOOKINGS_FAILED = Counter(
    "booking_failed_total",
    "Bookings that ended FAILED or CANCELLED because of stock or payment failure",
    ["reason"],
)
BOOKINGS_CANCELLED = Counter(
    "booking_cancelled_total",
    "Bookings cancelled explicitly or by expiry",
    ["reason"],
)

NOTIFICATION_RETRIES = Counter(
    "notification_retry_total",
    "Notification deliveries re-published for another attempt",
)
NOTIFICATION_DEAD_LETTERS = Counter(
    "notification_dead_letter_total",
    "Notifications that exhausted their retries and were dead-lettered",
)

OUTBOX_DISPATCHED = Counter(
    "outbox_dispatched_total",
    "Outbox events handed to a saga queue",
    ["queue"],
)
OUTBOX_PUBLISH_FAILURES = Counter(
    "outbox_publish_failures_total",
    "Queue publish failures during dispatch or reconciliation",
)
OUTBOX_REDELIVERED = Counter(
    "outbox_redelivered_total",
    "DISPATCHED events re-published by the reconciliation sweep",
)
OUTBOX_UNROUTABLE = Counter(
    "outbox_unroutable_total",
    "Outbox events whose type has no queue route",
)
