"""
Payment provider abstraction for escrow.
The escrow coordinator only ever talks to this interface, so the trade state
machine does not depend on which backend executes a hold.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from tradedesk.db.models import EscrowStatus


class PaymentStatus(str, Enum):
    """Payment intent status."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    REQUIRES_CAPTURE = "REQUIRES_CAPTURE"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass
class PaymentIntent:
    """A request to collect money from a payer."""
    id: str
    amount: int
    currency: str
    status: PaymentStatus

    # For frontend card confirmation (Stripe)
    client_secret: Optional[str] = None
    provider_reference: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class ProviderHold:
    """Provider-side view of an escrow hold."""
    reference: str
    trade_id: str
    payer_id: str
    recipient_id: str
    amount: int
    status: EscrowStatus

    refunded_amount: int = 0
    client_secret: Optional[str] = None

    @property
    def requires_confirmation(self) -> bool:
        return self.status == EscrowStatus.PENDING


class PaymentProvider(ABC):
    """Abstract base class for escrow payment backends.

    All amounts are integer cents. ``hold_id`` is the coordinator's own hold
    id and doubles as the idempotency key: calling ``hold_funds`` twice with
    the same ``hold_id`` must not hold money twice.
    """

    name: str

    async def initialize(self) -> None:
        """Open clients. Providers without connections need not override."""

    async def close(self) -> None:
        """Close connections and cleanup."""

    # ===================
    # Payments
    # ===================

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        trade_id: str,
        payer_id: str,
        metadata: Optional[dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        """Create a payment intent for funding escrow."""

    @abstractmethod
    async def capture_payment(self, payment_intent_id: str, amount: Optional[int] = None) -> None:
        """Capture an authorized payment, optionally only part of it."""

    @abstractmethod
    async def refund_payment(self, payment_intent_id: str, amount: Optional[int] = None) -> None:
        """Refund a captured payment; partial when ``amount`` is given."""

    # ===================
    # Escrow
    # ===================

    @abstractmethod
    async def hold_funds(
        self,
        hold_id: str,
        amount: int,
        trade_id: str,
        payer_id: str,
        recipient_id: str,
    ) -> ProviderHold:
        """Hold funds in escrow.

        Returns a FUNDED hold when money is secured immediately, or a PENDING
        one when the payer still has to confirm (card flows).
        """

    @abstractmethod
    async def release_funds(self, reference: str) -> None:
        """Release held funds to the recipient."""

    @abstractmethod
    async def refund_held_funds(self, reference: str, amount: Optional[int] = None) -> None:
        """Return held funds to the payer; partial when ``amount`` is given."""

    @abstractmethod
    async def get_escrow_hold(self, reference: str) -> Optional[ProviderHold]:
        """Provider's current view of a hold."""

    @abstractmethod
    async def get_escrow_hold_for_trade(self, trade_id: str) -> Optional[ProviderHold]:
        """Most recent hold the provider knows for a trade."""
