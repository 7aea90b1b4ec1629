import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from ticketflow.core.db import init_db, close_db
from ticketflow.api.v1.bookings import router as bookings_router
from ticketflow.api.v1.inventory import router as inventory_router
from ticketflow.core.config import LOG_FORMAT, LOG_LEVEL, PROJECT_NAME, RUN_WORKERS, VERSION
from ticketflow.core.exception_handlers import setup_exception_handlers
from ticketflow.services.mail_service import SmtpMailSender
from ticketflow.services.payment_gateway import StripePaymentGateway
from ticketflow.workers import Runtime

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    log.info(f"Starting {PROJECT_NAME} v{VERSION}...")
    await init_db() # Connect to DB and generate schemas

    runtime = None
    if RUN_WORKERS:
        runtime = Runtime(StripePaymentGateway(), SmtpMailSender())
        await runtime.start()
    app.state.runtime = runtime

    yield

    if runtime:
        await runtime.stop()
    await close_db()
    log.info(f"{PROJECT_NAME} stopped.")

app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    # Configure API documentation and paths
    docs_url="/docs",
    redoc_url="/redoc"
)

# Include routers for modular API structure
app.include_router(bookings_router, prefix="/api/v1/bookings", tags=["Bookings"])
app.include_router(inventory_router, prefix="/api/v1/inventory", tags=["Inventory"])


setup_exception_handlers(app)

@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Simple health check endpoint."""
    return {"status": "ok", "app_name": PROJECT_NAME}


@app.get("/metrics", include_in_schema=False)
async def metrics_endpoint():
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
