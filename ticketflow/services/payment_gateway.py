"""
Payment gateway collaborator.

``PaymentGateway`` is the contract the payment saga depends on;
``StripePaymentGateway`` implements it against Stripe's REST API with httpx.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional
import httpx
from ticketflow.core.config import PAYMENT_TIMEOUT_SECONDS, STRIPE_API_BASE, STRIPE_SECRET_KEY
from ticketflow.core.exceptions import GatewayTimeout, PaymentDeclined, PaymentGatewayError

log = logging.getLogger(__name__)


@dataclass
class PaymentIntent:
    id: str
    client_secret: Optional[str] = None
    status: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class Refund:
    id: str
    payment_intent_id: str
    status: Optional[str] = None


def to_minor_units(amount: Decimal) -> int:
    """Major currency units -> integer minor units (cents, paisa)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentGateway(ABC):

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        """Creates an intent for ``amount`` minor units."""

    @abstractmethod
    async def refund(self, payment_intent_id: str, idempotency_key: Optional[str] = None) -> Refund:
        ...

    @abstractmethod
    async def retrieve_intent(self, payment_intent_id: str) -> PaymentIntent:
        ...

    async def aclose(self) -> None:
        return None


class StripePaymentGateway(PaymentGateway):

    def __init__(
        self,
        secret_key: str = STRIPE_SECRET_KEY,
        base_url: str = STRIPE_API_BASE,
        timeout: float = PAYMENT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not secret_key:
            raise ValueError("STRIPE_SECRET_KEY is not configured.")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=(secret_key, ""),
            timeout=timeout,
            transport=transport,
        )

    async def create_payment_intent(self, amount, currency, metadata, idempotency_key=None) -> PaymentIntent:
        form = {
            "amount": str(amount),
            "currency": currency.lower(),
            "payment_method_types[]": "card",
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = str(value)

        body = await self._request("POST", "/payment_intents", data=form, idempotency_key=idempotency_key)
        return PaymentIntent(
            id=body["id"],
            client_secret=body.get("client_secret"),
            status=body.get("status"),
            metadata=body.get("metadata") or {},
        )

    async def refund(self, payment_intent_id, idempotency_key=None) -> Refund:
        body = await self._request(
            "POST", "/refunds", data={"payment_intent": payment_intent_id}, idempotency_key=idempotency_key
        )
        return Refund(id=body["id"], payment_intent_id=payment_intent_id, status=body.get("status"))

    async def retrieve_intent(self, payment_intent_id) -> PaymentIntent:
        body = await self._request("GET", f"/payment_intents/{payment_intent_id}")
        return PaymentIntent(
            id=body["id"],
            client_secret=body.get("client_secret"),
            status=body.get("status"),
            metadata=body.get("metadata") or {},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = await self._client.request(method, path, data=data, headers=headers)
        except httpx.TimeoutException as e:
            raise GatewayTimeout(f"Stripe {method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Stripe {method} {path} failed: {e}") from e

        if response.status_code == 402 or (400 <= response.status_code < 500 and _is_card_error(response)):
            raise PaymentDeclined(_error_message(response))
        if response.status_code >= 400:
            raise PaymentGatewayError(
                f"Stripe {method} {path} returned {response.status_code}: {_error_message(response)}"
            )
        return response.json()


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        return response.json().get("error") or {}
    except ValueError:
        return {}


def _is_card_error(response: httpx.Response) -> bool:
    return _error_body(response).get("type") == "card_error"


def _error_message(response: httpx.Response) -> str:
    return _error_body(response).get("message") or response.text
