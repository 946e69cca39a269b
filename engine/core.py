from __future__ import annotations

import random
import time

from loguru import logger

from data.store import BaseStore
from engine.evaluator import evaluate_tick
from engine.ledger import make_account
from engine.market import PriceBook
from engine.models import (
    Fill,
    Order,
    PaperAccount,
    PositionHistoryItem,
    PositionView,
    SlippageConfig,
    Tick,
    TickOutcome,
    TrailingLevel,
    Transition,
)
from engine.persistence import PaperAccountGateway
from risk.manager import DEFAULT_POLICY, MarginPolicy, margin_snapshot, unrealized_pnl_usd


def now_ms() -> int:
    return int(time.time() * 1000)


class PaperTradingEngine:
    def __init__(
        self,
        store: BaseStore,
        user_id: int,
        gateway: PaperAccountGateway | None = None,
        price_book: PriceBook | None = None,
        policy: MarginPolicy = DEFAULT_POLICY,
        rng: random.Random | None = None,
        autoflush: bool = True,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.gateway = gateway or PaperAccountGateway(store, user_id)
        self.prices = price_book or PriceBook()
        self.policy = policy
        self.rng = rng or random.Random()
        self.autoflush = autoflush
        self.account: PaperAccount | None = None
        self.last_persist_error: str | None = None
        self._dirty = False

    def hydrate(self) -> PaperAccount | None:
        self.account = self.gateway.read()
        self._dirty = False
        if self.account is None:
            logger.info("No paper account stored for user {}", self.user_id)
        else:
            logger.info(
                "Paper account loaded for user {}: {} positions, {} open orders",
                self.user_id,
                len(self.account.open_positions),
                len(self.account.open_orders),
            )
        return self.account

    def ensure_account(self, initial_usd: float, slippage: SlippageConfig | None = None) -> PaperAccount:
        if self.account is None:
            self.account = make_account(initial_usd, now_ms(), slippage)
            self._mark_dirty()
        return self.account

    def commit(self, transition: Transition) -> Transition:
        if transition.account is not self.account:
            self.account = transition.account
            self._mark_dirty()
        self._journal(transition.fills)
        return transition

    def on_tick(self, tick: Tick) -> TickOutcome:
        self.prices.record(tick)
        if self.account is None:
            return TickOutcome(account=self.account)
        outcome = evaluate_tick(self.account, tick, self.rng, self.policy)
        if outcome.changed:
            self.account = outcome.account
            self._mark_dirty()
        self._journal(outcome.fills)
        return outcome

    def flush(self) -> bool:
        if not self._dirty:
            return True
        if self.gateway.write(self.account):
            self._dirty = False
            self.last_persist_error = None
            return True
        self.last_persist_error = f"Failed to persist paper account at {now_ms()}"
        return False

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self.autoflush:
            self.flush()

    def _journal(self, fills: tuple[Fill, ...]) -> None:
        for fill in fills:
            try:
                self.store.add_fill(
                    self.user_id,
                    symbol=fill.symbol,
                    side=fill.side,
                    amount=fill.amount,
                    price=fill.price,
                    order_id=fill.order_id,
                    position_id=fill.position_id,
                    filled_at=fill.timestamp,
                )
            except Exception:
                logger.exception("Failed to journal fill {} for user {}", fill.order_id, self.user_id)

    def balances(self) -> dict[str, float]:
        if self.account is None:
            return {}
        return dict(self.account.balances)

    def margin_level(self, symbol: str | None = None) -> float | None:
        if self.account is None:
            return None
        mark = self.prices.last_price(symbol) if symbol else None
        return margin_snapshot(self.account, mark, symbol).margin_level_pct

    def position_views(self) -> list[PositionView]:
        if self.account is None:
            return []
        views = []
        for pos in self.account.open_positions:
            last = self.prices.last_price(pos.symbol)
            pnl_usd = None
            pnl_pct = None
            if last is not None:
                pnl_usd = unrealized_pnl_usd(pos, last)
                diff = last - pos.entry_price if pos.side == "long" else pos.entry_price - last
                pnl_pct = diff * 100.0 / pos.entry_price
            views.append(
                PositionView(
                    id=pos.id,
                    symbol=pos.symbol,
                    side=pos.side,
                    amount=pos.amount,
                    entry_price=pos.entry_price,
                    last_price=last,
                    pnl_usd=pnl_usd,
                    pnl_pct=pnl_pct,
                    leverage=pos.leverage,
                    margin_used_usd=pos.margin_used_usd,
                    exit_orders=[o.id for o in self.account.open_orders if o.position_id == pos.id],
                )
            )
        return views

    def open_orders(self, symbol: str | None = None) -> list[Order]:
        if self.account is None:
            return []
        return [o for o in self.account.open_orders if symbol is None or o.symbol == symbol]

    def order_history(self, limit: int = 20) -> list[Order]:
        if self.account is None:
            return []
        return list(self.account.order_history[:limit])

    def position_history(self, limit: int = 20) -> list[PositionHistoryItem]:
        if self.account is None:
            return []
        return list(self.account.position_history[:limit])

    def trailing_levels(self) -> list[TrailingLevel]:
        return [
            TrailingLevel(
                order_id=o.id,
                symbol=o.symbol,
                side=o.side,
                trail_ref_price=o.trail_ref_price,
                trigger_price=o.price,
                limit_price=o.price2,
            )
            for o in self.open_orders()
            if o.is_trailing
        ]
