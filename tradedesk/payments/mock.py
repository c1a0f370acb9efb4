"""
Mock payment provider.
Keeps an in-process ledger and funds holds instantly. Used for development,
tests and as the default backend until a real provider is configured.
"""

import uuid
from typing import Optional

from tradedesk.db.models import EscrowStatus
from tradedesk.errors import PaymentProviderError
from tradedesk.payments.base import PaymentIntent, PaymentProvider, PaymentStatus, ProviderHold
from tradedesk.utils.logging import LoggerMixin


def _ref(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class MockPaymentProvider(PaymentProvider, LoggerMixin):
    """Instant, in-memory escrow."""

    name = "mock"

    def __init__(self):
        self._holds: dict[str, ProviderHold] = {}
        self._holds_by_key: dict[str, str] = {}
        self._intents: dict[str, PaymentIntent] = {}

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        trade_id: str,
        payer_id: str,
        metadata: Optional[dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        # Mock payments succeed on creation
        intent = PaymentIntent(
            id=_ref("pi"),
            amount=amount,
            currency=currency,
            status=PaymentStatus.SUCCEEDED,
            client_secret=f"mock_secret_{_ref('cs')}",
            metadata={"trade_id": trade_id, "payer_id": payer_id, **(metadata or {})},
        )
        self._intents[intent.id] = intent
        self.log.info("Created payment intent", intent_id=intent.id, amount=amount)
        return intent

    async def capture_payment(self, payment_intent_id: str, amount: Optional[int] = None) -> None:
        self._intent(payment_intent_id)
        self.log.info("Captured payment", intent_id=payment_intent_id, amount=amount)

    async def refund_payment(self, payment_intent_id: str, amount: Optional[int] = None) -> None:
        intent = self._intent(payment_intent_id)
        if amount is None or amount >= intent.amount:
            intent.status = PaymentStatus.CANCELLED
        self.log.info("Refunded payment", intent_id=payment_intent_id, amount=amount or "full")

    async def hold_funds(
        self,
        hold_id: str,
        amount: int,
        trade_id: str,
        payer_id: str,
        recipient_id: str,
    ) -> ProviderHold:
        existing = self._holds_by_key.get(hold_id)
        if existing:
            return self._holds[existing]

        hold = ProviderHold(
            reference=_ref("escrow"),
            trade_id=trade_id,
            payer_id=payer_id,
            recipient_id=recipient_id,
            amount=amount,
            status=EscrowStatus.FUNDED,
        )
        self._holds[hold.reference] = hold
        self._holds_by_key[hold_id] = hold.reference
        self.log.info("Funds held in escrow", reference=hold.reference, amount=amount)
        return hold

    async def release_funds(self, reference: str) -> None:
        hold = self._hold(reference, EscrowStatus.FUNDED, EscrowStatus.DISPUTED)
        hold.status = EscrowStatus.RELEASED
        self.log.info("Funds released from escrow", reference=reference)

    async def refund_held_funds(self, reference: str, amount: Optional[int] = None) -> None:
        hold = self._hold(reference, EscrowStatus.FUNDED, EscrowStatus.DISPUTED, EscrowStatus.PENDING)
        if hold.status == EscrowStatus.PENDING:
            # Never collected; dropping the authorization is the whole refund
            hold.status = EscrowStatus.REFUNDED
            self.log.info("Pending escrow hold voided", reference=reference)
            return

        if amount is None or amount >= hold.amount:
            hold.status = EscrowStatus.REFUNDED
            hold.refunded_amount = hold.amount
        else:
            hold.status = EscrowStatus.PARTIALLY_REFUNDED
            hold.refunded_amount = amount
        self.log.info("Funds refunded from escrow", reference=reference, amount=hold.refunded_amount)

    async def get_escrow_hold(self, reference: str) -> Optional[ProviderHold]:
        return self._holds.get(reference)

    async def get_escrow_hold_for_trade(self, trade_id: str) -> Optional[ProviderHold]:
        matches = [h for h in self._holds.values() if h.trade_id == trade_id]
        return matches[-1] if matches else None

    def _intent(self, payment_intent_id: str) -> PaymentIntent:
        intent = self._intents.get(payment_intent_id)
        if intent is None:
            raise PaymentProviderError(f"Payment intent not found: {payment_intent_id}", self.name, retryable=False)
        return intent

    def _hold(self, reference: str, *allowed: EscrowStatus) -> ProviderHold:
        hold = self._holds.get(reference)
        if hold is None:
            raise PaymentProviderError(f"Escrow hold not found: {reference}", self.name, retryable=False)
        if hold.status not in allowed:
            raise PaymentProviderError(
                f"Escrow hold {reference} is {hold.status.value}",
                self.name,
                retryable=False,
            )
        return hold
