import os

# Database Configuration
# Uses default credentials for local Docker Compose setup
DB_URL = os.getenv("DATABASE_URL", "postgres://user:password@db:5432/eventx_db")

# Application Metadata
PROJECT_NAME = "EventX Booking Saga"
VERSION = "1.0.0"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Outbox Dispatcher Configuration
POLLING_INTERVAL = float(os.getenv("POLLING_INTERVAL", 1)) # Dispatcher ticks every N seconds
BATCH_SIZE = int(os.getenv("BATCH_SIZE", 50)) # How many events to fetch per sweep
RECONCILE_AFTER_SECONDS = float(os.getenv("RECONCILE_AFTER_SECONDS", 60)) # DISPATCHED but never PUBLISHED

# Saga worker pools
SAGA_JOB_ATTEMPTS = int(os.getenv("SAGA_JOB_ATTEMPTS", 3))
SAGA_RETRY_BACKOFF_SECONDS = float(os.getenv("SAGA_RETRY_BACKOFF_SECONDS", 1)) # doubled per attempt
WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", 4))

# Bookings
BOOKING_TTL_SECONDS = int(os.getenv("BOOKING_TTL_SECONDS", 600)) # 10 minutes
REAPER_INTERVAL_SECONDS = float(os.getenv("REAPER_INTERVAL_SECONDS", 30))
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "PKR")

# Notifications
NOTIFICATION_MAX_RETRIES = int(os.getenv("NOTIFICATION_MAX_RETRIES", 3))

# Outbound collaborators
PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", 10))
MAIL_TIMEOUT_SECONDS = float(os.getenv("MAIL_TIMEOUT_SECONDS", 15))

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")

MAIL_HOST = os.getenv("MAIL_HOST", "localhost")
MAIL_PORT = int(os.getenv("MAIL_PORT", 587))
MAIL_USER = os.getenv("MAIL_USER", "")
MAIL_PASSWORD = os.getenv("MAIL_PASSWORD", "")
MAIL_FROM = os.getenv("MAIL_FROM", "no-reply@eventx.local")

# Run the dispatcher, saga pools and reaper inside the API process
RUN_WORKERS = os.getenv("RUN_WORKERS", "true").lower() in ("1", "true", "yes")


def saga_job_lifetime(attempts: int, timeout: float, backoff: float) -> float:
    """Longest a saga job can stay unsettled: every attempt times out and every backoff is waited."""
    return attempts * timeout + sum(backoff * 2 ** n for n in range(max(attempts - 1, 0)))


def check_reconcile_window(reconcile_after: float, attempts: int, timeout: float, backoff: float, mail_timeout: float) -> None:
    """
    Reconciliation must not fire on a row whose job is still retrying in another
    worker process. Email attempts renew the lease one send at a time.
    """
    lifetime = saga_job_lifetime(attempts, timeout, backoff)
    if reconcile_after <= max(lifetime, mail_timeout):
        raise ValueError(
            f"RECONCILE_AFTER_SECONDS={reconcile_after} must exceed the longest job lifetime "
            f"({lifetime}s for {attempts} saga attempts, {mail_timeout}s per email send)"
        )


check_reconcile_window(
    RECONCILE_AFTER_SECONDS,
    SAGA_JOB_ATTEMPTS,
    PAYMENT_TIMEOUT_SECONDS,
    SAGA_RETRY_BACKOFF_SECONDS,
    MAIL_TIMEOUT_SECONDS,
)
