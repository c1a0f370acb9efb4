"""
SQLAlchemy database models for TradeDesk.
Trades, escrow holds, ratings and disputes for the item-trading marketplace.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Enum as SQLEnum,
    text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


# ===================
# Enums
# ===================

class TradeStatus(str, Enum):
    """Trade lifecycle states."""
    PROPOSED = "PROPOSED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    COUNTERED = "COUNTERED"  # Superseded by a counter-offer
    ESCROW_FUNDED = "ESCROW_FUNDED"
    COMPLETED_AWAITING_RATING = "COMPLETED_AWAITING_RATING"
    COMPLETED = "COMPLETED"
    DISPUTE_OPENED = "DISPUTE_OPENED"


TERMINAL_TRADE_STATUSES = frozenset({
    TradeStatus.REJECTED,
    TradeStatus.CANCELLED,
    TradeStatus.COUNTERED,
    TradeStatus.COMPLETED,
})


class TradeSide(str, Enum):
    """Which party offers an item in a trade."""
    PROPOSER = "PROPOSER"
    RECEIVER = "RECEIVER"


class EscrowStatus(str, Enum):
    """Escrow hold status."""
    PENDING = "PENDING"        # Awaiting provider confirmation
    FUNDED = "FUNDED"          # Funds held
    RELEASED = "RELEASED"      # Paid out to recipient
    REFUNDED = "REFUNDED"      # Returned to payer
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    DISPUTED = "DISPUTED"      # Frozen while a dispute is open


class DisputeStatus(str, Enum):
    """Dispute lifecycle states."""
    OPEN_AWAITING_RESPONSE = "OPEN_AWAITING_RESPONSE"
    IN_MEDIATION = "IN_MEDIATION"
    RESOLVED = "RESOLVED"


class DisputeType(str, Enum):
    """What the initiator is complaining about."""
    ITEM_NOT_AS_DESCRIBED = "ITEM_NOT_AS_DESCRIBED"
    ITEM_NOT_RECEIVED = "ITEM_NOT_RECEIVED"
    DAMAGED_IN_SHIPPING = "DAMAGED_IN_SHIPPING"
    COUNTERFEIT = "COUNTERFEIT"
    OTHER = "OTHER"


class DisputeResolution(str, Enum):
    """Mediator outcomes."""
    REFUND_INITIATOR = "REFUND_INITIATOR"
    MUTUALLY_RESOLVED = "MUTUALLY_RESOLVED"
    TRADE_UPHELD = "TRADE_UPHELD"


class NotificationType(str, Enum):
    """Persistent user notification kinds."""
    TRADE_PROPOSED = "TRADE_PROPOSED"
    TRADE_ACCEPTED = "TRADE_ACCEPTED"
    TRADE_REJECTED = "TRADE_REJECTED"
    TRADE_CANCELLED = "TRADE_CANCELLED"
    COUNTER_OFFER = "COUNTER_OFFER"
    ESCROW_FUNDED = "ESCROW_FUNDED"
    ESCROW_RELEASED = "ESCROW_RELEASED"
    ESCROW_REFUNDED = "ESCROW_REFUNDED"
    TRACKING_ADDED = "TRACKING_ADDED"
    ITEMS_VERIFIED = "ITEMS_VERIFIED"
    TRADE_COMPLETED = "TRADE_COMPLETED"
    RATING_RECEIVED = "RATING_RECEIVED"
    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_RESPONDED = "DISPUTE_RESPONDED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"


# ===================
# Models
# ===================

class User(Base):
    """Marketplace user holding a cash balance in cents."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    balance: Mapped[int] = mapped_column(BigInteger, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Item(Base):
    """A tradeable item, owned by exactly one user at a time."""

    __tablename__ = "items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    condition: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Sole input to differential math
    estimated_market_value: Mapped[int] = mapped_column(BigInteger, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Trade(Base):
    """A proposed or executed exchange of items and cash between two users."""

    __tablename__ = "trades"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    proposer_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"))
    receiver_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"))

    # Cash offered by each side, in cents
    proposer_cash: Mapped[int] = mapped_column(BigInteger, default=0)
    receiver_cash: Mapped[int] = mapped_column(BigInteger, default=0)

    status: Mapped[TradeStatus] = mapped_column(SQLEnum(TradeStatus), default=TradeStatus.PROPOSED)

    # Counter-offer lineage
    parent_trade_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("trades.id"), nullable=True)
    counter_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Shipping
    proposer_tracking_number: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    proposer_carrier: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    proposer_submitted_tracking: Mapped[bool] = mapped_column(Boolean, default=False)
    receiver_tracking_number: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    receiver_carrier: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    receiver_submitted_tracking: Mapped[bool] = mapped_column(Boolean, default=False)

    # Receipt verification
    proposer_verified_satisfaction: Mapped[bool] = mapped_column(Boolean, default=False)
    receiver_verified_satisfaction: Mapped[bool] = mapped_column(Boolean, default=False)

    # Settlement happened (items and balances moved)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Ratings
    proposer_rated: Mapped[bool] = mapped_column(Boolean, default=False)
    receiver_rated: Mapped[bool] = mapped_column(Boolean, default=False)
    rating_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    dispute_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    trade_items: Mapped[list["TradeItem"]] = relationship(
        back_populates="trade",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_trades_proposer", "proposer_id"),
        Index("ix_trades_receiver", "receiver_id"),
        Index("ix_trades_parent", "parent_trade_id"),
    )

    def item_ids(self, side: TradeSide) -> list[str]:
        return [ti.item_id for ti in self.trade_items if ti.side == side]

    @property
    def proposer_item_ids(self) -> list[str]:
        return self.item_ids(TradeSide.PROPOSER)

    @property
    def receiver_item_ids(self) -> list[str]:
        return self.item_ids(TradeSide.RECEIVER)

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.proposer_id, self.receiver_id)

    def side_of(self, user_id: str) -> TradeSide:
        return TradeSide.PROPOSER if user_id == self.proposer_id else TradeSide.RECEIVER

    def counterparty_of(self, user_id: str) -> str:
        return self.receiver_id if user_id == self.proposer_id else self.proposer_id


class TradeItem(Base):
    """Join table: which items each side puts into a trade."""

    __tablename__ = "trade_items"

    trade_id: Mapped[str] = mapped_column(String(36), ForeignKey("trades.id", ondelete="CASCADE"), primary_key=True)
    item_id: Mapped[str] = mapped_column(String(36), ForeignKey("items.id"), primary_key=True)
    side: Mapped[TradeSide] = mapped_column(SQLEnum(TradeSide))

    trade: Mapped["Trade"] = relationship(back_populates="trade_items")


class EscrowHold(Base):
    """Cash differential held by the payment provider pending completion."""

    __tablename__ = "escrow_holds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    trade_id: Mapped[str] = mapped_column(String(36), ForeignKey("trades.id"))
    payer_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"))
    recipient_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"))

    amount: Mapped[int] = mapped_column(BigInteger)
    refunded_amount: Mapped[int] = mapped_column(BigInteger, default=0)
    status: Mapped[EscrowStatus] = mapped_column(SQLEnum(EscrowStatus), default=EscrowStatus.PENDING)

    provider: Mapped[str] = mapped_column(String(32))
    provider_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Returned to the frontend for card confirmation, never logged
    client_secret: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Set while a hold_funds call for this hold is outstanding
    funding_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # One live hold per trade; refunded holds drop out of the index
    __table_args__ = (
        Index("ix_escrow_holds_trade", "trade_id"),
        Index(
            "uq_escrow_holds_active_trade",
            "trade_id",
            unique=True,
            postgresql_where=text("status NOT IN ('REFUNDED', 'PARTIALLY_REFUNDED')"),
            sqlite_where=text("status NOT IN ('REFUNDED', 'PARTIALLY_REFUNDED')"),
        ),
    )


class TradeRating(Base):
    """One party's rating of the other; hidden until both have rated."""

    __tablename__ = "trade_ratings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    trade_id: Mapped[str] = mapped_column(String(36), ForeignKey("trades.id"))
    rater_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"))
    ratee_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)

    overall_score: Mapped[int] = mapped_column(Integer)
    item_accuracy_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    communication_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    shipping_speed_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    public_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    private_feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_revealed: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("trade_id", "rater_id", name="uq_trade_ratings_trade_rater"),
        Index("ix_trade_ratings_trade", "trade_id"),
    )


class Dispute(Base):
    """Dispute raised by one party; authoritative over the trade's projection."""

    __tablename__ = "disputes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    trade_id: Mapped[str] = mapped_column(String(36), ForeignKey("trades.id"))
    initiator_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"))
    respondent_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"))

    dispute_type: Mapped[DisputeType] = mapped_column(SQLEnum(DisputeType))
    status: Mapped[DisputeStatus] = mapped_column(
        SQLEnum(DisputeStatus),
        default=DisputeStatus.OPEN_AWAITING_RESPONSE,
    )

    initiator_statement: Mapped[str] = mapped_column(Text)
    respondent_statement: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    resolution: Mapped[Optional[DisputeResolution]] = mapped_column(SQLEnum(DisputeResolution), nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Trade status when the dispute was opened, restored on an upheld outcome
    trade_status_before: Mapped[TradeStatus] = mapped_column(SQLEnum(TradeStatus))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_disputes_trade", "trade_id"),
        Index(
            "uq_disputes_open_trade",
            "trade_id",
            unique=True,
            postgresql_where=text("status != 'RESOLVED'"),
            sqlite_where=text("status != 'RESOLVED'"),
        ),
    )


class Notification(Base):
    """Persistent in-app notification."""

    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"))
    type: Mapped[NotificationType] = mapped_column(SQLEnum(NotificationType))
    trade_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "is_read"),
    )


class PriceSignal(Base):
    """Implied item value observed in a settled trade."""

    __tablename__ = "trade_price_signals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    trade_id: Mapped[str] = mapped_column(String(36), ForeignKey("trades.id"))
    item_id: Mapped[str] = mapped_column(String(36), ForeignKey("items.id"))
    item_name: Mapped[str] = mapped_column(String(255))
    condition: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    implied_value_cents: Mapped[int] = mapped_column(BigInteger)
    signal_confidence: Mapped[int] = mapped_column(Integer)  # 0-100
    trade_completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_price_signals_item", "item_id"),
    )
