from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

OrderSide = Literal["buy", "sell"]
PositionSide = Literal["long", "short"]
OrderStatus = Literal["open", "filled", "canceled"]
OffsetUnit = Literal["percent", "price"]
OrderType = Literal[
    "market",
    "limit",
    "stop-loss",
    "stop-loss-limit",
    "take-profit",
    "take-profit-limit",
    "trailing-stop",
    "trailing-stop-limit",
]
EventKind = Literal[
    "trigger_fired",
    "order_created",
    "order_modified",
    "order_filled",
    "order_canceled",
    "position_opened",
    "position_closed",
    "liquidation",
    "warning",
    "error",
]

ENTRY_ORDER_TYPES = frozenset({"market", "limit"})
EXIT_ORDER_TYPES = frozenset(
    {
        "stop-loss",
        "stop-loss-limit",
        "take-profit",
        "take-profit-limit",
        "trailing-stop",
        "trailing-stop-limit",
    }
)
STOP_ORDER_TYPES = frozenset({"stop-loss", "stop-loss-limit"})
TAKE_PROFIT_ORDER_TYPES = frozenset({"take-profit", "take-profit-limit"})
TRAILING_ORDER_TYPES = frozenset({"trailing-stop", "trailing-stop-limit"})
LIMIT_EXIT_ORDER_TYPES = frozenset({"stop-loss-limit", "take-profit-limit", "trailing-stop-limit"})


class RejectReason(str, Enum):
    INSUFFICIENT_BALANCE = "insufficient_balance"
    MARGIN_LEVEL_TOO_LOW = "margin_level_too_low"
    UNKNOWN_POSITION = "unknown_position"
    UNKNOWN_ORDER = "unknown_order"
    ORDER_NOT_OPEN = "order_not_open"
    INVALID_PERCENT = "invalid_percent"
    INVALID_PARAMETER = "invalid_parameter"
    NON_FINITE_INPUT = "non_finite_input"
    NO_MARKET_PRICE = "no_market_price"
    NO_ACCOUNT = "no_account"
    DUPLICATE_REQUEST = "duplicate_request"


class LedgerModel(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True, extra="ignore")


class SlippageConfig(LedgerModel):
    enabled: bool = True
    model: Literal["percentage"] = "percentage"
    percent_bps: float = 2.0


class Order(LedgerModel):
    id: str
    symbol: str
    side: OrderSide
    type: OrderType
    price: float | None = None
    price2: float | None = None
    amount: float = 0.0
    created_at: int
    status: OrderStatus = "open"
    filled_at: int | None = None
    filled_price: float | None = None
    canceled_at: int | None = None
    leverage: int | None = None
    oco_group_id: str | None = None
    position_id: str | None = None
    close_percent: float | None = None
    trailing_offset: float | None = None
    trailing_offset_unit: OffsetUnit | None = None
    trail_ref_price: float | None = None
    limit_offset: float | None = None
    triggered_at: int | None = None
    warning: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    @property
    def is_exit(self) -> bool:
        return self.position_id is not None

    @property
    def is_trailing(self) -> bool:
        return self.type in TRAILING_ORDER_TYPES


class Position(LedgerModel):
    id: str
    symbol: str
    side: PositionSide
    amount: float
    entry_price: float
    opened_at: int
    leverage: int | None = None
    margin_used_usd: float | None = None
    reserved_usd: float | None = None
    initial_amount: float | None = None
    realized_pnl: float = 0.0

    @property
    def exit_side(self) -> OrderSide:
        return "sell" if self.side == "long" else "buy"


class PositionHistoryItem(LedgerModel):
    id: str
    position_id: str
    symbol: str
    side: PositionSide
    amount: float
    entry_price: float
    exit_price: float
    opened_at: int
    closed_at: int
    realized_pnl: float


class ExecutionEvent(LedgerModel):
    id: str
    timestamp: int
    kind: EventKind
    message: str | None = None
    symbol: str | None = None
    order_id: str | None = None
    position_id: str | None = None


class PaperAccount(LedgerModel):
    version: Literal[1] = 1
    currency: Literal["USD"] = "USD"
    balances: dict[str, float]
    open_orders: tuple[Order, ...] = ()
    order_history: tuple[Order, ...] = ()
    open_positions: tuple[Position, ...] = ()
    position_history: tuple[PositionHistoryItem, ...] = ()
    execution_events: tuple[ExecutionEvent, ...] = ()
    slippage_config: SlippageConfig = Field(default_factory=SlippageConfig)
    created_at: int
    updated_at: int

    @property
    def usd(self) -> float:
        return float(self.balances.get("USD", 0.0))

    def find_position(self, position_id: str | None) -> Position | None:
        return next((p for p in self.open_positions if p.id == position_id), None)

    def find_open_order(self, order_id: str) -> Order | None:
        return next((o for o in self.open_orders if o.id == order_id and o.is_open), None)

    def find_order(self, order_id: str) -> Order | None:
        found = self.find_open_order(order_id)
        if found:
            return found
        return next((o for o in self.order_history if o.id == order_id), None)


@dataclass(frozen=True)
class Tick:
    symbol: str
    price: float
    timestamp: int


@dataclass(frozen=True)
class PricePoint:
    timestamp: int
    price: float


@dataclass(frozen=True)
class Fill:
    order_id: str | None
    position_id: str | None
    symbol: str
    side: OrderSide
    amount: float
    price: float
    timestamp: int


@dataclass(frozen=True)
class Rejection:
    reason: RejectReason
    message: str


@dataclass(frozen=True)
class Transition:
    account: PaperAccount
    events: tuple[ExecutionEvent, ...] = ()
    fills: tuple[Fill, ...] = ()
    rejection: Rejection | None = None
    warnings: tuple[str, ...] = ()
    order_id: str | None = None
    position_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.rejection is None


@dataclass(frozen=True)
class TickOutcome:
    account: PaperAccount
    fills: tuple[Fill, ...] = ()
    events: tuple[ExecutionEvent, ...] = ()
    changed: bool = False


@dataclass
class PositionView:
    id: str
    symbol: str
    side: PositionSide
    amount: float
    entry_price: float
    last_price: float | None
    pnl_usd: float | None
    pnl_pct: float | None
    leverage: int | None
    margin_used_usd: float | None
    exit_orders: list[str] = field(default_factory=list)


@dataclass
class TrailingLevel:
    order_id: str
    symbol: str
    side: OrderSide
    trail_ref_price: float | None
    trigger_price: float | None
    limit_price: float | None
