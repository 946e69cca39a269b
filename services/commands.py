from __future__ import annotations

import math
from dataclasses import dataclass, fields
from typing import Callable, Union

from loguru import logger

from engine import ledger
from engine.core import PaperTradingEngine, now_ms
from engine.idempotency import Idempotency
from engine.models import (
    OffsetUnit,
    OrderSide,
    OrderType,
    PositionSide,
    RejectReason,
    SlippageConfig,
    Transition,
)
from engine.slippage import apply_slippage


@dataclass(frozen=True)
class OpenPosition:
    symbol: str
    side: PositionSide
    amount: float
    entry_price: float | None = None
    leverage: float = 1
    request_id: str | None = None


@dataclass(frozen=True)
class PlaceEntryOrder:
    symbol: str
    side: OrderSide
    order_type: OrderType
    amount: float
    price: float | None = None
    leverage: float = 1
    oco_group_id: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class PlaceExitOrder:
    position_id: str
    order_type: OrderType
    price: float | None = None
    price2: float | None = None
    close_percent: float = 100.0
    trailing_offset: float | None = None
    trailing_offset_unit: OffsetUnit = "percent"
    limit_offset: float | None = None
    oco_group_id: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class ModifyExitOrder:
    order_id: str
    price: float | None = None
    price2: float | None = None
    close_percent: float | None = None
    trailing_offset: float | None = None
    trailing_offset_unit: OffsetUnit | None = None
    limit_offset: float | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class CancelOrder:
    order_id: str
    request_id: str | None = None


@dataclass(frozen=True)
class ClosePosition:
    position_id: str
    percent: float = 100.0
    request_id: str | None = None


@dataclass(frozen=True)
class SetSlippage:
    enabled: bool
    percent_bps: float
    request_id: str | None = None


@dataclass(frozen=True)
class ResetAccount:
    initial_usd: float | None = None
    request_id: str | None = None


Command = Union[
    OpenPosition,
    PlaceEntryOrder,
    PlaceExitOrder,
    ModifyExitOrder,
    CancelOrder,
    ClosePosition,
    SetSlippage,
    ResetAccount,
]


@dataclass
class CommandResult:
    ok: bool
    reason: RejectReason | None = None
    message: str | None = None
    warnings: tuple[str, ...] = ()
    order_id: str | None = None
    position_id: str | None = None

    @classmethod
    def rejected(cls, reason: RejectReason, message: str) -> CommandResult:
        return cls(ok=False, reason=reason, message=message)

    @classmethod
    def from_transition(cls, transition: Transition) -> CommandResult:
        rejection = transition.rejection
        return cls(
            ok=rejection is None,
            reason=rejection.reason if rejection else None,
            message=rejection.message if rejection else None,
            warnings=transition.warnings,
            order_id=transition.order_id,
            position_id=transition.position_id,
        )


def first_non_finite(command: Command) -> str | None:
    for f in fields(command):
        value = getattr(command, f.name)
        if isinstance(value, float) and not math.isfinite(value):
            return f.name
    return None


class CommandSurface:
    def __init__(
        self,
        engine: PaperTradingEngine,
        idempotency: Idempotency | None = None,
        initial_usd: float = 10000.0,
        default_slippage: SlippageConfig | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.engine = engine
        self.idempotency = idempotency
        self.initial_usd = initial_usd
        self.default_slippage = default_slippage
        self.clock = clock

    def dispatch(self, command: Command) -> CommandResult:
        name = type(command).__name__
        if command.request_id and self.idempotency and self.idempotency.seen(command.request_id):
            logger.info("Duplicate request {} ignored", command.request_id)
            return CommandResult.rejected(RejectReason.DUPLICATE_REQUEST, f"Request {command.request_id} already handled")

        bad_field = first_non_finite(command)
        if bad_field:
            return CommandResult.rejected(RejectReason.NON_FINITE_INPUT, f"{bad_field} must be a finite number")
        if self.engine.account is None and not isinstance(command, ResetAccount):
            return CommandResult.rejected(RejectReason.NO_ACCOUNT, "No paper account, use /reset to create one")

        handler = getattr(self, f"_handle_{type(command).__name__.lower()}", None)
        if handler is None:
            raise TypeError(f"Unsupported command: {name}")
        outcome = handler(command, self.clock())
        if isinstance(outcome, CommandResult):
            return outcome

        self.engine.commit(outcome)
        result = CommandResult.from_transition(outcome)
        if result.ok and command.request_id and self.idempotency:
            self.idempotency.remember(command.request_id)
        logger.info("Command {} -> {}", name, "ok" if result.ok else result.reason.value)
        return result

    def _market_price(self, symbol: str) -> float | None:
        return self.engine.prices.last_price(symbol)

    def _handle_openposition(self, cmd: OpenPosition, now: int) -> Transition | CommandResult:
        account = self.engine.account
        entry = cmd.entry_price
        if entry is None:
            market = self._market_price(cmd.symbol)
            if market is None:
                return CommandResult.rejected(RejectReason.NO_MARKET_PRICE, f"No market price for {cmd.symbol} yet")
            side = "buy" if cmd.side == "long" else "sell"
            entry = apply_slippage(market, side, cmd.amount, account.slippage_config, self.engine.rng)
        return ledger.open_position(
            account, cmd.symbol, cmd.side, cmd.amount, entry, now, cmd.leverage, self.engine.policy
        )

    def _handle_placeentryorder(self, cmd: PlaceEntryOrder, now: int) -> Transition:
        return ledger.place_entry_order(
            self.engine.account,
            cmd.symbol,
            cmd.side,
            cmd.order_type,
            cmd.amount,
            now,
            price=cmd.price,
            leverage=cmd.leverage,
            oco_group_id=cmd.oco_group_id,
            policy=self.engine.policy,
        )

    def _handle_placeexitorder(self, cmd: PlaceExitOrder, now: int) -> Transition:
        account = self.engine.account
        position = account.find_position(cmd.position_id)
        market = self._market_price(position.symbol) if position else None
        return ledger.place_exit_order(
            account,
            cmd.position_id,
            cmd.order_type,
            now,
            price=cmd.price,
            price2=cmd.price2,
            close_percent=cmd.close_percent,
            trailing_offset=cmd.trailing_offset,
            trailing_offset_unit=cmd.trailing_offset_unit,
            limit_offset=cmd.limit_offset,
            oco_group_id=cmd.oco_group_id,
            market_price=market,
        )

    def _handle_modifyexitorder(self, cmd: ModifyExitOrder, now: int) -> Transition:
        account = self.engine.account
        order = account.find_order(cmd.order_id)
        market = self._market_price(order.symbol) if order else None
        return ledger.modify_exit_order(
            account,
            cmd.order_id,
            now,
            price=cmd.price,
            price2=cmd.price2,
            close_percent=cmd.close_percent,
            trailing_offset=cmd.trailing_offset,
            trailing_offset_unit=cmd.trailing_offset_unit,
            limit_offset=cmd.limit_offset,
            market_price=market,
        )

    def _handle_cancelorder(self, cmd: CancelOrder, now: int) -> Transition:
        return ledger.cancel_order(self.engine.account, cmd.order_id, now)

    def _handle_closeposition(self, cmd: ClosePosition, now: int) -> Transition | CommandResult:
        account = self.engine.account
        position = account.find_position(cmd.position_id)
        if position is None:
            return CommandResult.rejected(RejectReason.UNKNOWN_POSITION, f"Position {cmd.position_id} is not open")
        if not 0 < cmd.percent <= 100:
            return CommandResult.rejected(RejectReason.INVALID_PERCENT, f"Close percent must be within (0, 100], got {cmd.percent}")
        market = self._market_price(position.symbol)
        if market is None:
            return CommandResult.rejected(RejectReason.NO_MARKET_PRICE, f"No market price for {position.symbol} yet")
        return ledger.close_position_manually(account, position.id, cmd.percent / 100.0, market, now, self.engine.rng)

    def _handle_setslippage(self, cmd: SetSlippage, now: int) -> Transition:
        config = SlippageConfig(enabled=cmd.enabled, percent_bps=cmd.percent_bps)
        return ledger.set_slippage_config(self.engine.account, config, now)

    def _handle_resetaccount(self, cmd: ResetAccount, now: int) -> Transition | CommandResult:
        initial = self.initial_usd if cmd.initial_usd is None else cmd.initial_usd
        if initial < 0:
            return CommandResult.rejected(RejectReason.INVALID_PARAMETER, "Initial balance cannot be negative")
        return ledger.reset_account(initial, now, self.default_slippage)
