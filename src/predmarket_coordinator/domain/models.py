from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class MarketStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class OrderSide(StrEnum):
    BUY = "buy"
    SELL = "sell"


class OrderStatus(StrEnum):
    OPEN = "open"
    PARTIAL = "partial"
    FILLED = "filled"
    CANCELLED = "cancelled"


class ActionKind(StrEnum):
    APPROVE = "approve"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    MINT = "mint"
    PLACE = "place"
    CANCEL = "cancel"


class ActionState(StrEnum):
    PENDING = "pending"
    CONFIRMING = "confirming"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ActionPhase(StrEnum):
    IDLE = "idle"
    CHECKING = "checking"
    APPROVING = "approving"
    DEPOSITING = "depositing"
    WITHDRAWING = "withdrawing"
    MINTING = "minting"
    SUBMITTING = "submitting"
    CANCELLING = "cancelling"
    REFRESHING = "refreshing"
    SUCCEEDED = "succeeded"
    ERROR = "error"


class Market(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    question: str
    description: str = ""
    outcomes: list[str] = Field(default_factory=list)
    end_time: datetime | None = None
    resolution_time: datetime | None = None
    resolved_outcome: int | None = None
    status: MarketStatus = MarketStatus.PENDING

    @property
    def outcome_count(self) -> int:
        return len(self.outcomes)


class Order(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    market_id: int
    user_address: str = ""
    outcome: int
    side: OrderSide
    price: Decimal
    quantity: Decimal
    filled_quantity: Decimal = Decimal(0)
    status: OrderStatus = OrderStatus.OPEN
    created_at: datetime | None = None

    @model_validator(mode="after")
    def _check_fill(self) -> Order:
        if self.quantity <= 0:
            raise ValueError("quantity must be positive")
        if not (0 <= self.filled_quantity <= self.quantity):
            raise ValueError("filled_quantity must be within [0, quantity]")
        return self

    @property
    def remaining_quantity(self) -> Decimal:
        return self.quantity - self.filled_quantity

    @property
    def is_active(self) -> bool:
        return self.status in {OrderStatus.OPEN, OrderStatus.PARTIAL}


class Trade(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    market_id: int
    outcome: int = 1
    price: Decimal
    quantity: Decimal
    created_at: datetime | None = None


class PlacedOrder(BaseModel):
    model_config = ConfigDict(frozen=True)

    order: Order
    trades: list[Trade] = Field(default_factory=list)


class PriceLevel(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: Decimal
    quantity: Decimal


class OrderBook(BaseModel):
    """Depth for one market outcome; buys best-first descending, sells ascending."""

    model_config = ConfigDict(frozen=True)

    market_id: int
    outcome: int
    buys: list[PriceLevel] = Field(default_factory=list)
    sells: list[PriceLevel] = Field(default_factory=list)
    fetched_at_ms: int = 0

    @property
    def best_bid(self) -> Decimal | None:
        return self.buys[0].price if self.buys else None

    @property
    def best_ask(self) -> Decimal | None:
        return self.sells[0].price if self.sells else None


class BalanceSnapshot(BaseModel):
    """Wallet, escrow and allowance read together, in 6-decimal units."""

    model_config = ConfigDict(frozen=True)

    owner: str
    wallet_balance: int
    platform_balance: int
    allowance: int
    taken_at_ms: int
    read_seq: int = 0


class PendingAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    action_id: str
    kind: ActionKind
    state: ActionState = ActionState.PENDING
    amount: int | None = None
    order_id: int | None = None
    tx_id: str | None = None
    reason: str | None = None
    created_ms: int
    updated_ms: int

    @property
    def is_terminal(self) -> bool:
        return self.state in {ActionState.SUCCEEDED, ActionState.FAILED}

    def advance(self, state: ActionState, now_ms: int, **changes: object) -> PendingAction:
        return self.model_copy(update={"state": state, "updated_ms": now_ms, **changes})


class ActionStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: ActionPhase = ActionPhase.IDLE
    action: PendingAction | None = None
    in_flight: tuple[PendingAction, ...] = ()
    error: str | None = None
    error_code: str | None = None
