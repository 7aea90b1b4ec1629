import logging
import uuid
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from ticketflow.core.exceptions import (
    BookingNotFound,
    InvalidBookingTransition,
    TicketTypeNotFound,
    TicketflowError,
)

log = logging.getLogger(__name__)


# Generate a clean request id for every response
def _rid():
    """Generates a unique request ID for tracing."""
    return uuid.uuid4().hex


def _error(status_code: int, code: str, message, **extra) -> JSONResponse:
    body = {
        "success": False,
        "error": {"code": code, "message": message, **extra},
        "request_id": _rid(),
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


# ----------- Exception Handlers (called by FastAPI) -----------

def http_exception_handler(request: Request, exc: HTTPException):
    """Handles exceptions raised by HTTPException (e.g., 404, 400)."""
    return _error(exc.status_code, "http_error", exc.detail)


def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handles Pydantic validation errors (422 Unprocessable Entity)."""
    return _error(422, "validation_error", "Invalid input data", details=exc.errors())


def booking_error_handler(request: Request, exc: TicketflowError):
    """Maps workflow errors that escape a router to their HTTP status."""
    if isinstance(exc, (BookingNotFound, TicketTypeNotFound)):
        return _error(404, "not_found", str(exc))
    if isinstance(exc, InvalidBookingTransition):
        return _error(409, "invalid_transition", str(exc))
    log.error(f"Workflow error on path {request.url.path}: {exc}")
    return _error(400, "booking_error", str(exc))


def generic_exception_handler(request: Request, exc: Exception):
    """Handles all unhandled exceptions (500 Internal Server Error)."""
    log.exception(f"Unhandled exception on path: {request.url.path}", exc_info=exc)
    return _error(500, "server_error", "Internal Server Error")


# ----------- Registration Function -----------

def setup_exception_handlers(app: FastAPI):
    """Registers all custom exception handlers with the FastAPI application."""
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(TicketflowError, booking_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
    return app
