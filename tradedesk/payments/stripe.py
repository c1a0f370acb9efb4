"""
Stripe payment provider.

Escrow holds are manual-capture PaymentIntents: the card is authorized when the
payer confirms on the frontend, captured on release and cancelled on refund.
Talks to the Stripe REST API directly over httpx.
"""

from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from tradedesk.db.models import EscrowStatus
from tradedesk.errors import PaymentProviderError, ProviderTimeout
from tradedesk.payments.base import PaymentIntent, PaymentProvider, PaymentStatus, ProviderHold
from tradedesk.utils.logging import LoggerMixin


class StripeRateLimitError(PaymentProviderError):
    """Raised on HTTP 429; retried with backoff."""
    code = "provider_rate_limited"


# Stripe PaymentIntent.status -> our statuses
_INTENT_STATUS = {
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.REQUIRES_CAPTURE,
    "succeeded": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.CANCELLED,
}

_HOLD_STATUS = {
    PaymentStatus.REQUIRES_CAPTURE: EscrowStatus.FUNDED,
    PaymentStatus.SUCCEEDED: EscrowStatus.RELEASED,
    PaymentStatus.CANCELLED: EscrowStatus.REFUNDED,
}


class StripePaymentProvider(PaymentProvider, LoggerMixin):
    """Escrow through Stripe manual-capture PaymentIntents."""

    name = "stripe"

    def __init__(
        self,
        secret_key: Optional[str],
        api_url: str = "https://api.stripe.com",
        currency: str = "usd",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._secret_key = secret_key
        self._api_url = api_url.rstrip("/")
        self._currency = currency
        self._timeout = timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def initialize(self) -> None:
        if not self._secret_key:
            raise PaymentProviderError("STRIPE_SECRET_KEY is not configured", self.name, retryable=False)
        self._http_client = httpx.AsyncClient(
            base_url=self._api_url,
            headers={"Authorization": f"Bearer {self._secret_key}"},
            timeout=self._timeout,
            transport=self._transport,
        )
        self.log.info("Stripe provider initialized", api_url=self._api_url)

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(StripeRateLimitError),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """Make a form-encoded request to the Stripe API."""
        if not self._http_client:
            await self.initialize()

        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = await self._http_client.request(method, path, data=data, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"Stripe request timed out: {method} {path}", self.name) from e
        except httpx.TransportError as e:
            raise PaymentProviderError(f"Stripe unreachable: {e}", self.name) from e

        if response.status_code == 429:
            self.log.warning("Rate limited by Stripe, retrying", path=path)
            raise StripeRateLimitError("Rate limit exceeded", self.name)

        if response.is_error:
            detail = ""
            try:
                detail = response.json().get("error", {}).get("message", "")
            except ValueError:
                detail = response.text[:200]
            self.log.error("Stripe API error", status=response.status_code, path=path, detail=detail)
            raise PaymentProviderError(
                f"Stripe API {response.status_code}: {detail}" if detail else f"Stripe API error {response.status_code}",
                self.name,
                code="provider_not_found" if response.status_code == 404 else None,
                # 4xx means the request itself is wrong; retrying will not help
                retryable=response.status_code >= 500,
            )

        return response.json()

    # ===================
    # Payments
    # ===================

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        trade_id: str,
        payer_id: str,
        metadata: Optional[dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        meta = {"trade_id": trade_id, "payer_id": payer_id, **(metadata or {})}
        data: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "capture_method": "manual",
        }
        for key, value in meta.items():
            data[f"metadata[{key}]"] = value

        body = await self._request("POST", "/v1/payment_intents", data=data, idempotency_key=idempotency_key)
        self.log.info("Created PaymentIntent", intent_id=body["id"], amount=amount)
        return self._to_intent(body)

    async def capture_payment(self, payment_intent_id: str, amount: Optional[int] = None) -> None:
        data = {"amount_to_capture": amount} if amount is not None else None
        await self._request("POST", f"/v1/payment_intents/{payment_intent_id}/capture", data=data)
        self.log.info("Captured payment", intent_id=payment_intent_id, amount=amount)

    async def refund_payment(self, payment_intent_id: str, amount: Optional[int] = None) -> None:
        data: dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount is not None:
            data["amount"] = amount
        await self._request("POST", "/v1/refunds", data=data)
        self.log.info("Refunded payment", intent_id=payment_intent_id, amount=amount or "full")

    # ===================
    # Escrow
    # ===================

    async def hold_funds(
        self,
        hold_id: str,
        amount: int,
        trade_id: str,
        payer_id: str,
        recipient_id: str,
    ) -> ProviderHold:
        intent = await self.create_payment_intent(
            amount,
            self._currency,
            trade_id,
            payer_id,
            metadata={"recipient_id": recipient_id, "hold_id": hold_id},
            idempotency_key=f"hold-{hold_id}",
        )
        return ProviderHold(
            reference=intent.id,
            trade_id=trade_id,
            payer_id=payer_id,
            recipient_id=recipient_id,
            amount=amount,
            status=_HOLD_STATUS.get(intent.status, EscrowStatus.PENDING),
            client_secret=intent.client_secret,
        )

    async def release_funds(self, reference: str) -> None:
        await self.capture_payment(reference)

    async def refund_held_funds(self, reference: str, amount: Optional[int] = None) -> None:
        if amount is None:
            # Uncaptured authorization: cancelling returns everything
            await self._request("POST", f"/v1/payment_intents/{reference}/cancel")
            self.log.info("Cancelled escrow authorization", intent_id=reference)
            return

        body = await self._request("GET", f"/v1/payment_intents/{reference}")
        remainder = int(body["amount"]) - amount
        if remainder <= 0:
            await self._request("POST", f"/v1/payment_intents/{reference}/cancel")
        else:
            # Capturing less than authorized releases the rest back to the payer
            await self.capture_payment(reference, amount=remainder)
        self.log.info("Partially refunded escrow", intent_id=reference, amount=amount)

    async def get_escrow_hold(self, reference: str) -> Optional[ProviderHold]:
        try:
            body = await self._request("GET", f"/v1/payment_intents/{reference}")
        except PaymentProviderError as e:
            if e.code == "provider_not_found":
                return None
            raise
        return self._to_hold(body)

    async def get_escrow_hold_for_trade(self, trade_id: str) -> Optional[ProviderHold]:
        body = await self._request(
            "GET",
            "/v1/payment_intents/search",
            params={"query": f"metadata['trade_id']:'{trade_id}'", "limit": 1},
        )
        data = body.get("data") or []
        return self._to_hold(data[0]) if data else None

    # ===================
    # Mapping
    # ===================

    def _to_intent(self, body: dict) -> PaymentIntent:
        return PaymentIntent(
            id=body["id"],
            amount=int(body["amount"]),
            currency=body.get("currency", self._currency),
            status=_INTENT_STATUS.get(body.get("status", ""), PaymentStatus.PENDING),
            client_secret=body.get("client_secret"),
            provider_reference=body["id"],
            metadata=dict(body.get("metadata") or {}),
        )

    def _to_hold(self, body: dict) -> ProviderHold:
        intent = self._to_intent(body)
        return ProviderHold(
            reference=intent.id,
            trade_id=intent.metadata.get("trade_id", ""),
            payer_id=intent.metadata.get("payer_id", ""),
            recipient_id=intent.metadata.get("recipient_id", ""),
            amount=intent.amount,
            status=_HOLD_STATUS.get(intent.status, EscrowStatus.PENDING),
            client_secret=intent.client_secret,
        )
