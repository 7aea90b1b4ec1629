class TicketflowError(Exception):
    """Root of all errors raised by the booking workflow."""


# --- Programming / configuration errors: fail loudly ---

class UnknownJobError(TicketflowError):
    """A saga queue received a job name it has no handler for."""

    def __init__(self, router: str, job_name: str):
        self.router = router
        self.job_name = job_name
        super().__init__(f"Unknown job {job_name!r} for {router} saga")


# --- Business rejections: converted to compensating events or no-ops ---

class BookingNotFound(TicketflowError, ValueError):
    def __init__(self, booking_id):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} not found")


class TicketTypeNotFound(TicketflowError, ValueError):
    def __init__(self, ticket_type_id):
        self.ticket_type_id = ticket_type_id
        super().__init__(f"Ticket type {ticket_type_id} not found or inactive")


class InvalidBookingTransition(TicketflowError, ValueError):
    """Raised when a booking is asked to leave a terminal state."""


class PaymentDeclined(TicketflowError):
    """The gateway rejected the payment. Retrying the same request will not help."""


# --- Transient failures: bounded retry ---

class PaymentGatewayError(TicketflowError):
    """Transport or server-side failure talking to the payment gateway."""


class GatewayTimeout(PaymentGatewayError):
    pass


class MailDeliveryError(TicketflowError):
    pass


class InventoryCorrectionError(TicketflowError):
    """A commit or release found fewer reserved units than the hold claims."""
