from __future__ import annotations

import random

from loguru import logger

from engine.ledger import enforce_liquidation, fill_order, is_finite_number, mark_triggered
from engine.models import (
    LIMIT_EXIT_ORDER_TYPES,
    STOP_ORDER_TYPES,
    TAKE_PROFIT_ORDER_TYPES,
    TRAILING_ORDER_TYPES,
    ExecutionEvent,
    Fill,
    Order,
    PaperAccount,
    SlippageConfig,
    Tick,
    TickOutcome,
)
from engine.slippage import apply_slippage
from engine.trailing import ratchet_trailing_orders
from risk.manager import DEFAULT_POLICY, MarginPolicy


def should_fire(order: Order, price: float) -> bool:
    if order.type == "market":
        return True
    if order.type == "limit":
        if order.price is None:
            return False
        return price <= order.price if order.side == "buy" else price >= order.price
    if order.triggered_at is not None:
        return True
    if order.price is None:
        return False
    if order.type in STOP_ORDER_TYPES or order.type in TRAILING_ORDER_TYPES:
        return price <= order.price if order.side == "sell" else price >= order.price
    if order.type in TAKE_PROFIT_ORDER_TYPES:
        return price >= order.price if order.side == "sell" else price <= order.price
    return False


def limit_price_of(order: Order) -> float | None:
    if order.type == "limit":
        return order.price
    if order.type in LIMIT_EXIT_ORDER_TYPES:
        return order.price2
    return None


def fill_price_for(
    order: Order,
    tick_price: float,
    amount: float,
    slippage: SlippageConfig | None,
    rng: random.Random | None = None,
) -> float | None:
    """Price the order fills at on this tick, or ``None`` when its limit is not marketable."""
    limit = limit_price_of(order)
    if order.type == "limit" or order.type in LIMIT_EXIT_ORDER_TYPES:
        if limit is None:
            return None
        marketable = tick_price >= limit if order.side == "sell" else tick_price <= limit
        return limit if marketable else None
    return apply_slippage(tick_price, order.side, amount, slippage, rng)


def _fill_amount(account: PaperAccount, order: Order) -> float:
    if not order.is_exit:
        return order.amount
    position = account.find_position(order.position_id)
    if position is None:
        return 0.0
    return position.amount * (order.close_percent or 100.0) / 100.0


def evaluate_tick(
    account: PaperAccount,
    tick: Tick,
    rng: random.Random | None = None,
    policy: MarginPolicy = DEFAULT_POLICY,
) -> TickOutcome:
    if not is_finite_number(tick.price) or tick.price <= 0 or not tick.symbol:
        logger.debug("Discarding tick {} {}", tick.symbol, tick.price)
        return TickOutcome(account=account)

    fills: list[Fill] = []
    events: list[ExecutionEvent] = []
    start = account
    account, _ = ratchet_trailing_orders(account, tick.symbol, tick.price)

    candidates = sorted(
        (o for o in account.open_orders if o.symbol == tick.symbol and o.is_open),
        key=lambda o: (o.created_at, o.id),
    )
    for candidate in candidates:
        order = account.find_open_order(candidate.id)
        if order is None or not order.is_open:
            continue
        if order.is_exit and account.find_position(order.position_id) is None:
            continue
        if not should_fire(order, tick.price):
            continue

        price = fill_price_for(order, tick.price, _fill_amount(account, order), account.slippage_config, rng)
        if price is None:
            if order.triggered_at is None:
                marked = mark_triggered(account, order.id, tick.timestamp)
                account = marked.account
                events.extend(marked.events)
                logger.info("Order {} triggered at {}, resting at limit {}", order.id, tick.price, limit_price_of(order))
            continue

        result = fill_order(account, order.id, price, tick.timestamp, policy=policy)
        account = result.account
        fills.extend(result.fills)
        events.extend(result.events)

    liquidation = enforce_liquidation(account, tick.price, tick.symbol, tick.timestamp, policy)
    account = liquidation.account
    fills.extend(liquidation.fills)
    events.extend(liquidation.events)

    return TickOutcome(account=account, fills=tuple(fills), events=tuple(events), changed=account is not start)
