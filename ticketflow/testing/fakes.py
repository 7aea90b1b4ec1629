"""
In-memory stand-ins for the outbound collaborators, for tests and local runs.
Both record every call and can be told to fail.
"""
import asyncio
import uuid
from typing import Any, Dict, List, Optional
from ticketflow.core.exceptions import MailDeliveryError, PaymentDeclined
from ticketflow.services.mail_service import MailSender
from ticketflow.services.payment_gateway import PaymentGateway, PaymentIntent, Refund


class FakePaymentGateway(PaymentGateway):

    def __init__(self, decline: bool = False, delay: float = 0.0, fail_times: int = 0):
        self.decline = decline
        self.delay = delay
        self.fail_times = fail_times
        self.intents: Dict[str, PaymentIntent] = {}
        self.refunds: List[Refund] = []
        self.calls: List[Dict[str, Any]] = []
        self._by_key: Dict[str, PaymentIntent] = {}

    async def create_payment_intent(self, amount, currency, metadata, idempotency_key=None) -> PaymentIntent:
        self.calls.append({"amount": amount, "currency": currency, "metadata": metadata, "key": idempotency_key})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("payment gateway unreachable")
        if self.decline:
            raise PaymentDeclined("Your card was declined.")
        if idempotency_key and idempotency_key in self._by_key:
            return self._by_key[idempotency_key]

        intent = PaymentIntent(
            id=f"pi_{uuid.uuid4().hex[:16]}",
            client_secret=f"secret_{uuid.uuid4().hex[:8]}",
            status="requires_confirmation",
            metadata=dict(metadata),
        )
        self.intents[intent.id] = intent
        if idempotency_key:
            self._by_key[idempotency_key] = intent
        return intent

    async def refund(self, payment_intent_id, idempotency_key=None) -> Refund:
        refund = Refund(id=f"re_{uuid.uuid4().hex[:16]}", payment_intent_id=payment_intent_id, status="succeeded")
        self.refunds.append(refund)
        return refund

    async def retrieve_intent(self, payment_intent_id) -> PaymentIntent:
        return self.intents[payment_intent_id]


class FakeMailSender(MailSender):
    """Fails the first ``fail_times`` sends; a negative value fails every send."""

    def __init__(self, fail_times: int = 0, error: Optional[Exception] = None):
        self.fail_times = fail_times
        self.error = error or MailDeliveryError("SMTP relay refused the connection")
        self.attempts = 0
        self.sent: List[Dict[str, str]] = []

    async def send(self, to: str, subject: str, html: str) -> None:
        self.attempts += 1
        if self.fail_times < 0 or self.attempts <= self.fail_times:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "html": html})
