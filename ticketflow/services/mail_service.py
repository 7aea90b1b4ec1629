import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Any, Dict
from ticketflow.core.config import MAIL_FROM, MAIL_HOST, MAIL_PASSWORD, MAIL_PORT, MAIL_TIMEOUT_SECONDS, MAIL_USER
from ticketflow.core.exceptions import MailDeliveryError

log = logging.getLogger(__name__)


class MailSender(ABC):

    @abstractmethod
    async def send(self, to: str, subject: str, html: str) -> None:
        """Delivers one message. Raises MailDeliveryError on failure."""


class SmtpMailSender(MailSender):
    """Sends through an SMTP relay with STARTTLS. The blocking client runs in a worker thread."""

    def __init__(
        self,
        host: str = MAIL_HOST,
        port: int = MAIL_PORT,
        user: str = MAIL_USER,
        password: str = MAIL_PASSWORD,
        sender: str = MAIL_FROM,
        timeout: float = MAIL_TIMEOUT_SECONDS,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout

    async def send(self, to: str, subject: str, html: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html, subtype="html")

        try:
            await asyncio.wait_for(asyncio.to_thread(self._deliver, message), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise MailDeliveryError(f"SMTP delivery to {to} timed out after {self.timeout}s") from e
        except (smtplib.SMTPException, OSError) as e:
            raise MailDeliveryError(f"SMTP delivery to {to} failed: {e}") from e

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password)
            smtp.send_message(message)


def booking_success_email(booking: Dict[str, Any]) -> Dict[str, str]:
    """Subject and body for a confirmed booking notification."""
    return {
        "subject": "Event Booked Success",
        "html": (
            f"<h2>Your booking is confirmed</h2>"
            f"<p>Booking <b>{booking.get('bookingId')}</b>: {booking.get('quantity')} ticket(s) "
            f"for event {booking.get('eventId')}.</p>"
        ),
    }
