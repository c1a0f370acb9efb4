"""
FastAPI routes for TradeDesk.
Exposes the trade lifecycle, escrow, ratings and disputes over REST.
"""

import time
import traceback
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.gzip import GZipMiddleware

from .rate_limit import limiter, rate_limit_handler
from ..config import Settings, get_settings
from ..db import database as db
from ..db.models import (
    DisputeResolution,
    DisputeStatus,
    DisputeType,
    EscrowHold,
    EscrowStatus,
    NotificationType,
    Trade,
    TradeStatus,
)
from ..errors import NotFound, TradeDeskError
from ..payments import PaymentProvider, create_payment_provider
from ..services.differential import CashDifferential
from ..services.disputes import DisputeService
from ..services.escrow import EscrowCoordinator
from ..services.notifications import Notifier
from ..services.price_signals import get_item_price_stats
from ..services.ratings import RatingService
from ..services.trades import TradeService
from ..utils.logging import get_logger

router = APIRouter(prefix="/api/v1", tags=["TradeDesk API"])
settings = get_settings()
logger = get_logger(__name__)


# ===================
# Pydantic Models
# ===================

class UserCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: Optional[str] = None
    balance: int = 0


class UserResponse(BaseModel):
    """User data response."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: Optional[str]
    balance: int
    created_at: datetime


class ItemCreateRequest(BaseModel):
    owner_id: str
    name: str = Field(min_length=1, max_length=255)
    estimated_market_value: int = 0
    description: Optional[str] = None
    condition: Optional[str] = None


class ItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    name: str
    description: Optional[str]
    condition: Optional[str]
    estimated_market_value: int


class ProposeTradeRequest(BaseModel):
    """New trade proposal. Cash amounts are integer cents."""
    proposer_id: str
    receiver_id: str
    proposer_item_ids: list[str] = Field(default_factory=list)
    receiver_item_ids: list[str] = Field(default_factory=list)
    proposer_cash: int = 0
    receiver_cash: int = 0


class CounterTradeRequest(BaseModel):
    """Counter-offer, expressed from the countering user's side."""
    user_id: str
    proposer_item_ids: list[str] = Field(default_factory=list)
    receiver_item_ids: list[str] = Field(default_factory=list)
    proposer_cash: int = 0
    receiver_cash: int = 0
    message: Optional[str] = None


class RespondTradeRequest(BaseModel):
    user_id: str
    action: str  # "accept" or "reject"


class ActorRequest(BaseModel):
    user_id: str


class TrackingRequest(BaseModel):
    user_id: str
    tracking_number: str
    carrier: Optional[str] = None


class TradeResponse(BaseModel):
    """Trade state as seen by either party."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    proposer_id: str
    receiver_id: str
    proposer_item_ids: list[str]
    receiver_item_ids: list[str]
    proposer_cash: int
    receiver_cash: int
    status: TradeStatus
    parent_trade_id: Optional[str]
    counter_message: Optional[str]
    proposer_submitted_tracking: bool
    receiver_submitted_tracking: bool
    proposer_verified_satisfaction: bool
    receiver_verified_satisfaction: bool
    proposer_rated: bool
    receiver_rated: bool
    settled_at: Optional[datetime]
    rating_deadline: Optional[datetime]
    dispute_id: Optional[str]
    created_at: datetime
    updated_at: datetime


class CashDifferentialResponse(BaseModel):
    payer_id: Optional[str]
    recipient_id: Optional[str]
    amount: int
    description: str
    requires_escrow: bool


class FundEscrowRequest(BaseModel):
    payer_id: str
    amount: Optional[int] = None


class ConfirmEscrowRequest(BaseModel):
    payer_id: str


class RefundEscrowRequest(BaseModel):
    amount: Optional[int] = None  # Omit for a full refund


class EscrowHoldResponse(BaseModel):
    id: str
    trade_id: str
    payer_id: str
    recipient_id: str
    amount: int
    refunded_amount: int
    status: EscrowStatus
    provider: str
    provider_reference: Optional[str]
    client_secret: Optional[str]
    requires_confirmation: bool
    created_at: datetime


class EscrowStatusResponse(BaseModel):
    has_escrow: bool
    escrow_hold: Optional[EscrowHoldResponse]
    holds: list[EscrowHoldResponse]
    cash_differential: CashDifferentialResponse


class RateTradeRequest(BaseModel):
    rater_id: str
    overall_score: int
    item_accuracy_score: Optional[int] = None
    communication_score: Optional[int] = None
    shipping_speed_score: Optional[int] = None
    public_comment: Optional[str] = None
    private_feedback: Optional[str] = None


class RatingResponse(BaseModel):
    """Rating as shown publicly; private feedback is never returned."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    trade_id: str
    rater_id: str
    ratee_id: str
    overall_score: int
    item_accuracy_score: Optional[int]
    communication_score: Optional[int]
    shipping_speed_score: Optional[int]
    public_comment: Optional[str]
    is_revealed: bool
    created_at: datetime


class OpenDisputeRequest(BaseModel):
    initiator_id: str
    dispute_type: str
    statement: str


class RespondDisputeRequest(BaseModel):
    respondent_id: str
    statement: str


class ResolveDisputeRequest(BaseModel):
    resolution: str
    notes: Optional[str] = None


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    trade_id: str
    initiator_id: str
    respondent_id: str
    dispute_type: DisputeType
    status: DisputeStatus
    initiator_statement: str
    respondent_statement: Optional[str]
    resolution: Optional[DisputeResolution]
    resolution_notes: Optional[str]
    created_at: datetime
    resolved_at: Optional[datetime]


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: NotificationType
    trade_id: Optional[str]
    title: str
    message: str
    is_read: bool
    created_at: datetime


class PriceSignalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    trade_id: str
    item_id: str
    item_name: str
    condition: Optional[str]
    implied_value_cents: int
    signal_confidence: int
    trade_completed_at: datetime


# ===================
# Helpers
# ===================

def get_trade_service(request: Request) -> TradeService:
    return request.app.state.trades


def get_escrow(request: Request) -> EscrowCoordinator:
    return request.app.state.escrow


def get_ratings(request: Request) -> RatingService:
    return request.app.state.ratings


def get_disputes(request: Request) -> DisputeService:
    return request.app.state.disputes


def _hold_response(hold: EscrowHold) -> EscrowHoldResponse:
    return EscrowHoldResponse(
        id=hold.id,
        trade_id=hold.trade_id,
        payer_id=hold.payer_id,
        recipient_id=hold.recipient_id,
        amount=hold.amount,
        refunded_amount=hold.refunded_amount,
        status=hold.status,
        provider=hold.provider,
        provider_reference=hold.provider_reference,
        client_secret=hold.client_secret,
        requires_confirmation=hold.status == EscrowStatus.PENDING,
        created_at=hold.created_at,
    )


def _differential_response(differential: CashDifferential) -> CashDifferentialResponse:
    return CashDifferentialResponse(**differential.to_dict())


def _trade_response(trade: Trade) -> TradeResponse:
    return TradeResponse.model_validate(trade)


# ===================
# Users & Items
# ===================

@router.post("/users", response_model=UserResponse, status_code=201)
async def create_user(body: UserCreateRequest):
    user = await db.create_user(body.name, email=body.email, balance=body.balance)
    return UserResponse.model_validate(user)


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(user_id: str):
    user = await db.get_user(user_id)
    if user is None:
        raise NotFound(f"User not found: {user_id}")
    return UserResponse.model_validate(user)


@router.post("/items", response_model=ItemResponse, status_code=201)
async def create_item(body: ItemCreateRequest):
    item = await db.create_item(
        body.owner_id,
        body.name,
        estimated_market_value=body.estimated_market_value,
        description=body.description,
        condition=body.condition,
    )
    return ItemResponse.model_validate(item)


@router.get("/users/{user_id}/items", response_model=list[ItemResponse])
async def get_user_items(user_id: str):
    items = await db.get_items_for_user(user_id)
    return [ItemResponse.model_validate(item) for item in items]


@router.get("/items/{item_id}/price-signals")
async def get_item_price_signals(item_id: str):
    """Trade-derived price history for an item."""
    if await db.get_item(item_id) is None:
        raise NotFound(f"Item not found: {item_id}")
    signals = await db.get_price_signals_for_item(item_id)
    stats = await get_item_price_stats(item_id)
    return {
        "item_id": item_id,
        "signals": [PriceSignalResponse.model_validate(s) for s in signals],
        "stats": stats.to_dict(),
    }


# ===================
# Trades
# ===================

@router.post("/trades", response_model=TradeResponse, status_code=201)
@limiter.limit(settings.rate_limit_write)
async def propose_trade(
    request: Request,
    body: ProposeTradeRequest,
    trades: TradeService = Depends(get_trade_service),
):
    trade = await trades.propose(
        body.proposer_id,
        body.receiver_id,
        body.proposer_item_ids,
        body.receiver_item_ids,
        proposer_cash=body.proposer_cash,
        receiver_cash=body.receiver_cash,
    )
    return _trade_response(trade)


@router.get("/trades", response_model=list[TradeResponse])
async def list_trades(
    user_id: str = Query(..., description="Trades where this user is proposer or receiver"),
    trades: TradeService = Depends(get_trade_service),
):
    return [_trade_response(t) for t in await trades.list_trades(user_id)]


@router.get("/trades/{trade_id}", response_model=TradeResponse)
async def get_trade(trade_id: str, trades: TradeService = Depends(get_trade_service)):
    return _trade_response(await trades.get_trade(trade_id))


@router.post("/trades/{trade_id}/respond", response_model=TradeResponse)
async def respond_to_trade(
    trade_id: str,
    body: RespondTradeRequest,
    trades: TradeService = Depends(get_trade_service),
):
    """Accept or reject a proposal (receiver only)."""
    trade = await trades.respond(trade_id, body.user_id, body.action)
    return _trade_response(trade)


@router.post("/trades/{trade_id}/cancel", response_model=TradeResponse)
async def cancel_trade(
    trade_id: str,
    body: ActorRequest,
    trades: TradeService = Depends(get_trade_service),
):
    return _trade_response(await trades.cancel(trade_id, body.user_id))


@router.post("/trades/{trade_id}/counter", response_model=TradeResponse, status_code=201)
@limiter.limit(settings.rate_limit_write)
async def counter_trade(
    request: Request,
    trade_id: str,
    body: CounterTradeRequest,
    trades: TradeService = Depends(get_trade_service),
):
    """Returns the new counter-offer trade."""
    trade = await trades.counter(
        trade_id,
        body.user_id,
        body.proposer_item_ids,
        body.receiver_item_ids,
        proposer_cash=body.proposer_cash,
        receiver_cash=body.receiver_cash,
        message=body.message,
    )
    return _trade_response(trade)


@router.get("/trades/{trade_id}/cash-differential", response_model=CashDifferentialResponse)
async def get_cash_differential(trade_id: str, trades: TradeService = Depends(get_trade_service)):
    return _differential_response(await trades.get_cash_differential(trade_id))


# ===================
# Escrow
# ===================

@router.post("/trades/{trade_id}/fund-escrow", response_model=EscrowHoldResponse)
@limiter.limit(settings.rate_limit_write)
async def fund_escrow(
    request: Request,
    trade_id: str,
    body: FundEscrowRequest,
    escrow: EscrowCoordinator = Depends(get_escrow),
):
    hold = await escrow.fund_escrow(trade_id, body.payer_id, body.amount)
    return _hold_response(hold)


@router.post("/trades/{trade_id}/confirm-escrow", response_model=EscrowHoldResponse)
async def confirm_escrow(
    trade_id: str,
    body: ConfirmEscrowRequest,
    escrow: EscrowCoordinator = Depends(get_escrow),
):
    """Mark escrow funded after the payer confirmed the payment with the provider."""
    hold = await escrow.confirm_escrow(trade_id, body.payer_id)
    return _hold_response(hold)


@router.get("/trades/{trade_id}/escrow", response_model=EscrowStatusResponse)
async def get_escrow_status(trade_id: str, escrow: EscrowCoordinator = Depends(get_escrow)):
    status = await escrow.get_escrow_status(trade_id)
    current = status["escrow_hold"]
    return EscrowStatusResponse(
        has_escrow=status["has_escrow"],
        escrow_hold=_hold_response(current) if current else None,
        holds=[_hold_response(h) for h in status["holds"]],
        cash_differential=_differential_response(status["cash_differential"]),
    )


@router.post("/trades/{trade_id}/release-escrow", response_model=EscrowHoldResponse)
async def release_escrow(trade_id: str, trades: TradeService = Depends(get_trade_service)):
    return _hold_response(await trades.release_escrow(trade_id))


@router.post("/trades/{trade_id}/refund-escrow", response_model=EscrowHoldResponse)
async def refund_escrow(
    trade_id: str,
    body: Optional[RefundEscrowRequest] = None,
    escrow: EscrowCoordinator = Depends(get_escrow),
):
    amount = body.amount if body else None
    return _hold_response(await escrow.refund_escrow(trade_id, amount))


# ===================
# Shipping & Verification
# ===================

@router.post("/trades/{trade_id}/submit-tracking", response_model=TradeResponse)
async def submit_tracking(
    trade_id: str,
    body: TrackingRequest,
    trades: TradeService = Depends(get_trade_service),
):
    trade = await trades.submit_tracking(trade_id, body.user_id, body.tracking_number, body.carrier)
    return _trade_response(trade)


@router.get("/trades/{trade_id}/tracking")
async def get_tracking(trade_id: str, trades: TradeService = Depends(get_trade_service)):
    return await trades.get_tracking(trade_id)


@router.post("/trades/{trade_id}/verify", response_model=TradeResponse)
async def verify_satisfaction(
    trade_id: str,
    body: ActorRequest,
    trades: TradeService = Depends(get_trade_service),
):
    """Confirm receipt; the second confirmation settles the trade."""
    return _trade_response(await trades.verify_satisfaction(trade_id, body.user_id))


# ===================
# Ratings
# ===================

@router.post("/trades/{trade_id}/rate", response_model=RatingResponse, status_code=201)
async def rate_trade(
    trade_id: str,
    body: RateTradeRequest,
    ratings: RatingService = Depends(get_ratings),
):
    rating = await ratings.rate(
        trade_id,
        body.rater_id,
        body.overall_score,
        item_accuracy_score=body.item_accuracy_score,
        communication_score=body.communication_score,
        shipping_speed_score=body.shipping_speed_score,
        public_comment=body.public_comment,
        private_feedback=body.private_feedback,
    )
    return RatingResponse.model_validate(rating)


@router.get("/users/{user_id}/ratings")
async def get_user_ratings(user_id: str, ratings: RatingService = Depends(get_ratings)):
    received = await ratings.get_ratings_for_user(user_id)
    average = round(sum(r.overall_score for r in received) / len(received), 2) if received else None
    return {
        "user_id": user_id,
        "count": len(received),
        "average_score": average,
        "ratings": [RatingResponse.model_validate(r) for r in received],
    }


# ===================
# Disputes
# ===================

@router.post("/trades/{trade_id}/open-dispute", response_model=DisputeResponse, status_code=201)
async def open_dispute(
    trade_id: str,
    body: OpenDisputeRequest,
    disputes: DisputeService = Depends(get_disputes),
):
    dispute = await disputes.open_dispute(trade_id, body.initiator_id, body.dispute_type, body.statement)
    return DisputeResponse.model_validate(dispute)


@router.get("/disputes/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(dispute_id: str, disputes: DisputeService = Depends(get_disputes)):
    return DisputeResponse.model_validate(await disputes.get_dispute(dispute_id))


@router.post("/disputes/{dispute_id}/respond", response_model=DisputeResponse)
async def respond_to_dispute(
    dispute_id: str,
    body: RespondDisputeRequest,
    disputes: DisputeService = Depends(get_disputes),
):
    dispute = await disputes.respond_dispute(dispute_id, body.respondent_id, body.statement)
    return DisputeResponse.model_validate(dispute)


@router.post("/disputes/{dispute_id}/resolve", response_model=DisputeResponse)
async def resolve_dispute(
    dispute_id: str,
    body: ResolveDisputeRequest,
    disputes: DisputeService = Depends(get_disputes),
):
    dispute = await disputes.resolve_dispute(dispute_id, body.resolution, body.notes)
    return DisputeResponse.model_validate(dispute)


# ===================
# Notifications
# ===================

@router.get("/notifications", response_model=list[NotificationResponse])
async def list_notifications(
    user_id: str = Query(...),
    limit: int = Query(default=50, ge=1, le=200),
):
    notifications = await db.get_notifications_for_user(user_id, limit=limit)
    return [NotificationResponse.model_validate(n) for n in notifications]


@router.get("/notifications/unread-count")
async def unread_count(user_id: str = Query(...)):
    return {"user_id": user_id, "unread": await db.get_unread_count(user_id)}


@router.post("/notifications/read-all")
async def mark_all_read(body: ActorRequest):
    updated = await db.mark_all_notifications_read(body.user_id)
    return {"updated": updated}


@router.post("/notifications/{notification_id}/read")
async def mark_read(notification_id: str):
    if not await db.mark_notification_read(notification_id):
        raise NotFound(f"Notification not found: {notification_id}")
    return {"id": notification_id, "is_read": True}


# ===================
# App Factory
# ===================

def create_api_app(
    provider: Optional[PaymentProvider] = None,
    app_settings: Optional[Settings] = None,
) -> FastAPI:
    """Create the FastAPI application.

    The payment provider is built once from settings unless one is passed in,
    and shared by every request through ``app.state``.
    """
    app_settings = app_settings or get_settings()
    provider = provider or create_payment_provider(app_settings)

    app = FastAPI(
        title="TradeDesk API",
        description="Peer-to-peer item trading with escrowed cash differentials",
        version="1.0.0",
    )

    notifier = Notifier()
    escrow = EscrowCoordinator(provider, notifier)
    trades = TradeService(escrow, notifier, rating_window_days=app_settings.rating_window_days)
    app.state.provider = provider
    app.state.escrow = escrow
    app.state.trades = trades
    app.state.ratings = RatingService(notifier)
    app.state.disputes = DisputeService(trades, escrow)

    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Global default limit via middleware; decorators tighten money-moving routes
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(elapsed_ms, 1),
        )
        return response

    @app.exception_handler(TradeDeskError)
    async def domain_error_handler(request: Request, exc: TradeDeskError):
        log = logger.warning if exc.status_code >= 500 else logger.info
        log(
            "request_rejected",
            path=request.url.path,
            error=exc.code,
            detail=exc.message,
            status=exc.status_code,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "detail": exc.message, "retryable": exc.retryable},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        if isinstance(exc, HTTPException):
            raise exc
        logger.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
            traceback=traceback.format_exc(),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "detail": "An unexpected error occurred. Please try again.",
                "retryable": True,
            },
        )

    app.include_router(router)

    @app.on_event("startup")
    async def startup():
        await db.init_db(app_settings.database_url)
        await db.create_tables()
        await provider.initialize()
        logger.info("TradeDesk API started", provider=provider.name)

    @app.on_event("shutdown")
    async def shutdown():
        await provider.close()
        await db.close_db()

    @app.get("/health")
    @limiter.exempt
    async def health_check():
        return {"status": "healthy", "service": "tradedesk-api", "payment_provider": provider.name}

    return app
