"""Account ledger transitions.

Every function here is total: it takes a ``PaperAccount`` snapshot plus inputs
and returns a ``Transition`` holding the next snapshot. Snapshots are frozen, so
the caller's account is never touched. A rejected command returns the input
account unchanged together with a ``Rejection``, except that a refused open
records an ``error`` event in the account's audit log.
"""

from __future__ import annotations

import math
import random
import uuid

from loguru import logger

from engine.models import (
    ENTRY_ORDER_TYPES,
    EXIT_ORDER_TYPES,
    LIMIT_EXIT_ORDER_TYPES,
    STOP_ORDER_TYPES,
    TAKE_PROFIT_ORDER_TYPES,
    TRAILING_ORDER_TYPES,
    EventKind,
    ExecutionEvent,
    Fill,
    OffsetUnit,
    Order,
    OrderSide,
    OrderType,
    PaperAccount,
    Position,
    PositionHistoryItem,
    PositionSide,
    Rejection,
    RejectReason,
    SlippageConfig,
    Transition,
)
from engine.slippage import DEFAULT_SLIPPAGE_CONFIG, apply_slippage
from engine.trailing import reseed_trailing_order
from risk.manager import DEFAULT_POLICY, MarginPolicy, RiskManager, margin_snapshot, position_margin_usd, sanitize_leverage

ORDER_HISTORY_LIMIT = 500
EVENT_RETENTION = 500
DUST_AMOUNT = 1e-12


def new_id(prefix: str, now: int) -> str:
    return f"{prefix}_{now}_{uuid.uuid4().hex[:12]}"


def is_finite_number(*values: object) -> bool:
    return all(
        isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v) for v in values
    )


def make_account(initial_usd: float, now: int, slippage_config: SlippageConfig | None = None) -> PaperAccount:
    usd = float(initial_usd) if is_finite_number(initial_usd) and initial_usd >= 0 else 0.0
    return PaperAccount(
        balances={"USD": usd},
        slippage_config=slippage_config or DEFAULT_SLIPPAGE_CONFIG,
        created_at=now,
        updated_at=now,
    )


def reset_account(initial_usd: float, now: int, slippage_config: SlippageConfig | None = None) -> Transition:
    account = make_account(initial_usd, now, slippage_config)
    logger.info("Paper account reset with {} USD", account.usd)
    return Transition(account=account)


def _with_event(account: PaperAccount, now: int, kind: EventKind, events: list[ExecutionEvent], **fields) -> PaperAccount:
    event = ExecutionEvent(id=new_id("evt", now), timestamp=now, kind=kind, **fields)
    events.append(event)
    return account.model_copy(update={"execution_events": (event, *account.execution_events)[:EVENT_RETENTION]})


def _reject(account: PaperAccount, reason: RejectReason, message: str, events: list[ExecutionEvent] | None = None) -> Transition:
    logger.info("Rejected ({}): {}", reason.value, message)
    return Transition(account=account, events=tuple(events or ()), rejection=Rejection(reason, message))


def _set_usd(account: PaperAccount, usd: float) -> PaperAccount:
    return account.model_copy(update={"balances": {**account.balances, "USD": usd}})


def _replace_order(account: PaperAccount, order: Order) -> PaperAccount:
    return account.model_copy(update={"open_orders": tuple(order if o.id == order.id else o for o in account.open_orders)})


def _cancel(order: Order, now: int) -> Order:
    return order.model_copy(update={"status": "canceled", "canceled_at": now})


def _sweep(account: PaperAccount, now: int) -> PaperAccount:
    keep = tuple(o for o in account.open_orders if o.is_open)
    moved = tuple(o for o in account.open_orders if not o.is_open)
    if not moved:
        return account.model_copy(update={"updated_at": now})
    history = (*moved, *account.order_history)[:ORDER_HISTORY_LIMIT]
    return account.model_copy(update={"open_orders": keep, "order_history": history, "updated_at": now})


def open_position(
    account: PaperAccount,
    symbol: str,
    side: PositionSide,
    amount: float,
    entry_price: float,
    now: int,
    leverage: float | None = 1,
    policy: MarginPolicy = DEFAULT_POLICY,
    order_id: str | None = None,
) -> Transition:
    if not is_finite_number(amount, entry_price):
        return _reject(account, RejectReason.NON_FINITE_INPUT, "Amount and entry price must be finite")
    if amount <= 0 or entry_price <= 0:
        return _reject(account, RejectReason.INVALID_PARAMETER, "Amount and entry price must be positive")
    if side not in ("long", "short") or not symbol:
        return _reject(account, RejectReason.INVALID_PARAMETER, f"Invalid position request: {side} {symbol!r}")

    lev = sanitize_leverage(leverage, policy)
    margin = amount * entry_price / lev
    decision = RiskManager(policy).evaluate_open(account, margin, entry_price, symbol)
    if not decision.allowed:
        events: list[ExecutionEvent] = []
        nxt = _with_event(account, now, "error", events, message=decision.message, symbol=symbol, order_id=order_id)
        return _reject(nxt, decision.reason, decision.message or "Open rejected", events)

    events = []
    position = Position(
        id=new_id("pos", now),
        symbol=symbol,
        side=side,
        amount=amount,
        entry_price=entry_price,
        opened_at=now,
        leverage=lev,
        margin_used_usd=margin,
        initial_amount=amount,
    )
    nxt = _set_usd(account, account.usd - margin)
    nxt = nxt.model_copy(update={"open_positions": (*nxt.open_positions, position), "updated_at": now})
    nxt = _with_event(
        nxt,
        now,
        "position_opened",
        events,
        symbol=symbol,
        position_id=position.id,
        order_id=order_id,
        message=f"{side} {amount} @ {entry_price}",
    )
    logger.info("Opened {} {} {} @ {} (leverage {}, margin {:.2f})", side, amount, symbol, entry_price, lev, margin)
    return Transition(account=nxt, events=tuple(events), position_id=position.id)


def place_entry_order(
    account: PaperAccount,
    symbol: str,
    side: OrderSide,
    order_type: OrderType,
    amount: float,
    now: int,
    price: float | None = None,
    leverage: float | None = 1,
    oco_group_id: str | None = None,
    policy: MarginPolicy = DEFAULT_POLICY,
) -> Transition:
    if order_type not in ENTRY_ORDER_TYPES:
        return _reject(account, RejectReason.INVALID_PARAMETER, f"Unsupported entry order type: {order_type}")
    if not is_finite_number(amount) or (price is not None and not is_finite_number(price)):
        return _reject(account, RejectReason.NON_FINITE_INPUT, "Amount and price must be finite")
    if amount <= 0 or side not in ("buy", "sell") or not symbol:
        return _reject(account, RejectReason.INVALID_PARAMETER, "Entry order needs a symbol, a side and a positive amount")
    if order_type == "limit" and (price is None or price <= 0):
        return _reject(account, RejectReason.INVALID_PARAMETER, "Limit order needs a positive limit price")

    events: list[ExecutionEvent] = []
    order = Order(
        id=new_id("ord", now),
        symbol=symbol,
        side=side,
        type=order_type,
        price=price if order_type == "limit" else None,
        amount=amount,
        created_at=now,
        leverage=sanitize_leverage(leverage, policy),
        oco_group_id=oco_group_id,
    )
    nxt = account.model_copy(update={"open_orders": (order, *account.open_orders), "updated_at": now})
    nxt = _with_event(nxt, now, "order_created", events, symbol=symbol, order_id=order.id)
    logger.info("Entry order {} placed: {} {} {} @ {}", order.id, order_type, side, amount, price)
    return Transition(account=nxt, events=tuple(events), order_id=order.id)


def check_exit_params(
    order_type: str,
    *,
    price: float | None,
    price2: float | None,
    close_percent: float | None,
    trailing_offset: float | None,
    trailing_offset_unit: str | None,
    limit_offset: float | None,
) -> Rejection | None:
    if order_type not in EXIT_ORDER_TYPES:
        return Rejection(RejectReason.INVALID_PARAMETER, f"Unsupported exit order type: {order_type}")
    for value in (price, price2, close_percent, trailing_offset, limit_offset):
        if value is not None and not is_finite_number(value):
            return Rejection(RejectReason.NON_FINITE_INPUT, "Order parameters must be finite numbers")
    if close_percent is None or not 1 <= close_percent <= 100:
        return Rejection(RejectReason.INVALID_PERCENT, f"closePercent must be within 1..100, got {close_percent}")

    if order_type in TRAILING_ORDER_TYPES:
        if trailing_offset is None or trailing_offset <= 0:
            return Rejection(RejectReason.INVALID_PARAMETER, "Trailing offset must be positive")
        if trailing_offset_unit not in ("percent", "price"):
            return Rejection(RejectReason.INVALID_PARAMETER, f"Unknown trailing offset unit: {trailing_offset_unit}")
        if trailing_offset_unit == "percent" and trailing_offset >= 100:
            return Rejection(RejectReason.INVALID_PARAMETER, "Percent trailing offset must be below 100")
        if limit_offset is not None and limit_offset < 0:
            return Rejection(RejectReason.INVALID_PARAMETER, "Limit offset cannot be negative")
        return None

    if price is None or price <= 0:
        return Rejection(RejectReason.INVALID_PARAMETER, "Trigger price must be positive")
    if order_type in LIMIT_EXIT_ORDER_TYPES and (price2 is None or price2 <= 0):
        return Rejection(RejectReason.INVALID_PARAMETER, "Limit price must be positive")
    return None


def side_warning(order: Order, market_price: float | None) -> str | None:
    if market_price is None or not is_finite_number(market_price) or market_price <= 0 or order.price is None:
        return None
    if order.type in STOP_ORDER_TYPES:
        if order.side == "sell" and order.price >= market_price:
            return f"Stop-loss {order.price} is not below market {market_price} for a long position"
        if order.side == "buy" and order.price <= market_price:
            return f"Stop-loss {order.price} is not above market {market_price} for a short position"
    if order.type in TAKE_PROFIT_ORDER_TYPES:
        if order.side == "sell" and order.price <= market_price:
            return f"Take-profit {order.price} is not above market {market_price} for a long position"
        if order.side == "buy" and order.price >= market_price:
            return f"Take-profit {order.price} is not below market {market_price} for a short position"
    return None


def place_exit_order(
    account: PaperAccount,
    position_id: str,
    order_type: OrderType,
    now: int,
    *,
    price: float | None = None,
    price2: float | None = None,
    close_percent: float = 100.0,
    trailing_offset: float | None = None,
    trailing_offset_unit: OffsetUnit = "percent",
    limit_offset: float | None = None,
    oco_group_id: str | None = None,
    market_price: float | None = None,
) -> Transition:
    position = account.find_position(position_id)
    if position is None:
        return _reject(account, RejectReason.UNKNOWN_POSITION, f"Position {position_id} is not open")
    rejection = check_exit_params(
        order_type,
        price=price,
        price2=price2,
        close_percent=close_percent,
        trailing_offset=trailing_offset,
        trailing_offset_unit=trailing_offset_unit,
        limit_offset=limit_offset,
    )
    if rejection:
        return _reject(account, rejection.reason, rejection.message)

    trailing = order_type in TRAILING_ORDER_TYPES
    order = Order(
        id=new_id("ord", now),
        symbol=position.symbol,
        side=position.exit_side,
        type=order_type,
        price=None if trailing else price,
        price2=price2 if order_type in ("stop-loss-limit", "take-profit-limit") else None,
        created_at=now,
        oco_group_id=oco_group_id,
        position_id=position.id,
        close_percent=close_percent,
        trailing_offset=trailing_offset if trailing else None,
        trailing_offset_unit=trailing_offset_unit if trailing else None,
        limit_offset=(limit_offset or 0.0) if order_type == "trailing-stop-limit" else None,
    )
    if trailing:
        order = reseed_trailing_order(order, market_price)
    warning = side_warning(order, market_price)
    if warning:
        order = order.model_copy(update={"warning": warning})

    events: list[ExecutionEvent] = []
    nxt = account.model_copy(update={"open_orders": (order, *account.open_orders), "updated_at": now})
    nxt = _with_event(nxt, now, "order_created", events, symbol=order.symbol, order_id=order.id, position_id=position.id)
    if warning:
        logger.warning("Order {} placed with warning: {}", order.id, warning)
        nxt = _with_event(nxt, now, "warning", events, message=warning, symbol=order.symbol, order_id=order.id, position_id=position.id)
    logger.info("Exit order {} placed: {} {} {}% of {}", order.id, order_type, order.side, close_percent, position.id)
    return Transition(
        account=nxt,
        events=tuple(events),
        warnings=(warning,) if warning else (),
        order_id=order.id,
        position_id=position.id,
    )


def modify_exit_order(
    account: PaperAccount,
    order_id: str,
    now: int,
    *,
    price: float | None = None,
    price2: float | None = None,
    close_percent: float | None = None,
    trailing_offset: float | None = None,
    trailing_offset_unit: OffsetUnit | None = None,
    limit_offset: float | None = None,
    market_price: float | None = None,
) -> Transition:
    order = account.find_open_order(order_id)
    if order is None:
        if account.find_order(order_id):
            return _reject(account, RejectReason.ORDER_NOT_OPEN, f"Order {order_id} is no longer open")
        return _reject(account, RejectReason.UNKNOWN_ORDER, f"Order {order_id} not found")
    if not order.is_exit:
        return _reject(account, RejectReason.INVALID_PARAMETER, "Only exit orders can be modified")

    trailing = order.is_trailing
    if trailing and (price is not None or price2 is not None):
        return _reject(account, RejectReason.INVALID_PARAMETER, "Trailing trigger and limit prices are derived from the offset")
    if price2 is not None and order.type not in LIMIT_EXIT_ORDER_TYPES:
        return _reject(account, RejectReason.INVALID_PARAMETER, f"{order.type} has no limit price")
    reshaped = any(v is not None for v in (trailing_offset, trailing_offset_unit, limit_offset))
    if reshaped and not trailing:
        return _reject(account, RejectReason.INVALID_PARAMETER, f"{order.type} has no trailing offset")
    if limit_offset is not None and order.type != "trailing-stop-limit":
        return _reject(account, RejectReason.INVALID_PARAMETER, f"{order.type} has no limit offset")
    if trailing and reshaped and order.triggered_at is not None:
        return _reject(account, RejectReason.INVALID_PARAMETER, "Trailing order already triggered")

    update = {
        "price": order.price if price is None else price,
        "price2": order.price2 if price2 is None else price2,
        "close_percent": order.close_percent if close_percent is None else close_percent,
        "trailing_offset": order.trailing_offset if trailing_offset is None else trailing_offset,
        "trailing_offset_unit": order.trailing_offset_unit if trailing_offset_unit is None else trailing_offset_unit,
        "limit_offset": order.limit_offset if limit_offset is None else limit_offset,
        "warning": None,
    }
    rejection = check_exit_params(
        order.type,
        price=update["price"],
        price2=update["price2"],
        close_percent=update["close_percent"],
        trailing_offset=update["trailing_offset"],
        trailing_offset_unit=update["trailing_offset_unit"],
        limit_offset=update["limit_offset"],
    )
    if rejection:
        return _reject(account, rejection.reason, rejection.message)

    modified = order.model_copy(update=update)
    if trailing and reshaped:
        ref = order.trail_ref_price if order.trail_ref_price is not None else market_price
        modified = reseed_trailing_order(modified, ref)
    warning = side_warning(modified, market_price)
    if warning:
        modified = modified.model_copy(update={"warning": warning})

    events: list[ExecutionEvent] = []
    nxt = _replace_order(account, modified).model_copy(update={"updated_at": now})
    nxt = _with_event(nxt, now, "order_modified", events, symbol=order.symbol, order_id=order.id, position_id=order.position_id)
    if warning:
        logger.warning("Order {} modified with warning: {}", order.id, warning)
        nxt = _with_event(nxt, now, "warning", events, message=warning, symbol=order.symbol, order_id=order.id)
    return Transition(
        account=nxt,
        events=tuple(events),
        warnings=(warning,) if warning else (),
        order_id=order.id,
        position_id=order.position_id,
    )


def cancel_order(account: PaperAccount, order_id: str, now: int) -> Transition:
    order = account.find_open_order(order_id)
    if order is None:
        if account.find_order(order_id):
            return _reject(account, RejectReason.ORDER_NOT_OPEN, f"Order {order_id} is no longer open")
        return _reject(account, RejectReason.UNKNOWN_ORDER, f"Order {order_id} not found")

    events: list[ExecutionEvent] = []
    nxt = _replace_order(account, _cancel(order, now))
    nxt = _with_event(nxt, now, "order_canceled", events, symbol=order.symbol, order_id=order.id, position_id=order.position_id)
    logger.info("Order {} canceled", order.id)
    return Transition(account=_sweep(nxt, now), events=tuple(events), order_id=order.id, position_id=order.position_id)


def _close_position(
    account: PaperAccount,
    position: Position,
    fraction: float,
    fill_price: float,
    now: int,
    events: list[ExecutionEvent],
    fills: list[Fill],
    order_id: str | None = None,
) -> PaperAccount:
    closing = position.amount * min(1.0, fraction)
    total_margin = position_margin_usd(position)
    released = total_margin * (closing / position.amount)
    sign = 1.0 if position.side == "long" else -1.0
    pnl = sign * (fill_price - position.entry_price) * closing
    # a position can lose at most the margin it holds
    credit = max(0.0, released + pnl)
    realized = position.realized_pnl + pnl

    nxt = _set_usd(account, account.usd + credit)
    fills.append(
        Fill(
            order_id=order_id,
            position_id=position.id,
            symbol=position.symbol,
            side=position.exit_side,
            amount=closing,
            price=fill_price,
            timestamp=now,
        )
    )

    remaining = position.amount - closing
    if remaining > DUST_AMOUNT:
        shrunk = position.model_copy(
            update={"amount": remaining, "margin_used_usd": total_margin - released, "realized_pnl": realized}
        )
        logger.info("Closed {} of {} @ {} (pnl {:.2f}, remaining {})", closing, position.id, fill_price, pnl, remaining)
        return nxt.model_copy(
            update={"open_positions": tuple(shrunk if p.id == position.id else p for p in nxt.open_positions)}
        )

    orphans = [o for o in nxt.open_orders if o.is_open and o.position_id == position.id]
    orders = tuple(_cancel(o, now) if o in orphans else o for o in nxt.open_orders)
    item = PositionHistoryItem(
        id=new_id("hist", now),
        position_id=position.id,
        symbol=position.symbol,
        side=position.side,
        amount=position.initial_amount if position.initial_amount is not None else position.amount,
        entry_price=position.entry_price,
        exit_price=fill_price,
        opened_at=position.opened_at,
        closed_at=now,
        realized_pnl=realized,
    )
    nxt = nxt.model_copy(
        update={
            "open_positions": tuple(p for p in nxt.open_positions if p.id != position.id),
            "open_orders": orders,
            "position_history": (item, *nxt.position_history),
        }
    )
    for orphan in orphans:
        nxt = _with_event(nxt, now, "order_canceled", events, symbol=orphan.symbol, order_id=orphan.id, position_id=position.id)
    nxt = _with_event(
        nxt,
        now,
        "position_closed",
        events,
        symbol=position.symbol,
        position_id=position.id,
        order_id=order_id,
        message=f"realized {realized:.2f}",
    )
    logger.info("Position {} closed @ {} (realized pnl {:.2f})", position.id, fill_price, realized)
    return nxt


def _cancel_oco_siblings(account: PaperAccount, filled: Order, now: int, events: list[ExecutionEvent]) -> PaperAccount:
    group = filled.oco_group_id
    if not group:
        return account
    siblings = [o for o in account.open_orders if o.is_open and o.oco_group_id == group and o.id != filled.id]
    if not siblings:
        return account
    nxt = account.model_copy(
        update={"open_orders": tuple(_cancel(o, now) if o in siblings else o for o in account.open_orders)}
    )
    for sibling in siblings:
        nxt = _with_event(
            nxt,
            now,
            "order_canceled",
            events,
            symbol=sibling.symbol,
            order_id=sibling.id,
            position_id=sibling.position_id,
            message=f"OCO sibling of {filled.id}",
        )
    return nxt


def fill_order(
    account: PaperAccount,
    order_id: str,
    fill_price: float,
    now: int,
    fraction: float | None = None,
    policy: MarginPolicy = DEFAULT_POLICY,
) -> Transition:
    order = account.find_open_order(order_id)
    if order is None:
        logger.debug("Fill for {} ignored: order not open", order_id)
        return Transition(account=account, rejection=Rejection(RejectReason.ORDER_NOT_OPEN, f"Order {order_id} is not open"))
    if not is_finite_number(fill_price) or fill_price <= 0:
        return _reject(account, RejectReason.NON_FINITE_INPUT, f"Invalid fill price for {order_id}: {fill_price}")

    events: list[ExecutionEvent] = []
    fills: list[Fill] = []

    if order.is_exit:
        position = account.find_position(order.position_id)
        if position is None:
            nxt = _replace_order(account, _cancel(order, now))
            nxt = _with_event(nxt, now, "error", events, message="Position not found", symbol=order.symbol, order_id=order.id)
            return Transition(account=_sweep(nxt, now), events=tuple(events), order_id=order.id)

        frac = fraction if fraction is not None else (order.close_percent or 100.0) / 100.0
        if not is_finite_number(frac) or frac <= 0 or frac > 1:
            return _reject(account, RejectReason.INVALID_PERCENT, f"Fill fraction must be within (0, 1], got {frac}")

        filled = order.model_copy(
            update={"status": "filled", "filled_at": now, "filled_price": fill_price, "amount": position.amount * frac}
        )
        nxt = _replace_order(account, filled)
        nxt = _with_event(nxt, now, "order_filled", events, symbol=order.symbol, order_id=order.id, position_id=position.id)
        nxt = _close_position(nxt, position, frac, fill_price, now, events, fills, order_id=order.id)
        nxt = _cancel_oco_siblings(nxt, filled, now, events)
        logger.info("Exit order {} filled @ {}", order.id, fill_price)
        return Transition(
            account=_sweep(nxt, now),
            events=tuple(events),
            fills=tuple(fills),
            order_id=order.id,
            position_id=position.id,
        )

    side: PositionSide = "long" if order.side == "buy" else "short"
    opened = open_position(account, order.symbol, side, order.amount, fill_price, now, order.leverage, policy, order.id)
    if not opened.ok:
        events.extend(opened.events)
        nxt = _replace_order(opened.account, _cancel(order, now))
        if not opened.events:
            nxt = _with_event(nxt, now, "error", events, message=opened.rejection.message, symbol=order.symbol, order_id=order.id)
        nxt = _with_event(nxt, now, "order_canceled", events, symbol=order.symbol, order_id=order.id)
        return Transition(account=_sweep(nxt, now), events=tuple(events), rejection=opened.rejection, order_id=order.id)

    events.extend(opened.events)
    filled = order.model_copy(update={"status": "filled", "filled_at": now, "filled_price": fill_price})
    nxt = _replace_order(opened.account, filled)
    nxt = _with_event(nxt, now, "order_filled", events, symbol=order.symbol, order_id=order.id, position_id=opened.position_id)
    nxt = _cancel_oco_siblings(nxt, filled, now, events)
    fills.append(
        Fill(
            order_id=order.id,
            position_id=opened.position_id,
            symbol=order.symbol,
            side=order.side,
            amount=order.amount,
            price=fill_price,
            timestamp=now,
        )
    )
    logger.info("Entry order {} filled @ {}", order.id, fill_price)
    return Transition(
        account=_sweep(nxt, now),
        events=tuple(events),
        fills=tuple(fills),
        order_id=order.id,
        position_id=opened.position_id,
    )


def close_position_manually(
    account: PaperAccount,
    position_id: str,
    fraction: float,
    market_price: float,
    now: int,
    rng: random.Random | None = None,
) -> Transition:
    position = account.find_position(position_id)
    if position is None:
        return _reject(account, RejectReason.UNKNOWN_POSITION, f"Position {position_id} is not open")
    if not is_finite_number(fraction, market_price):
        return _reject(account, RejectReason.NON_FINITE_INPUT, "Fraction and market price must be finite")
    if fraction <= 0 or fraction > 1:
        return _reject(account, RejectReason.INVALID_PERCENT, f"Close fraction must be within (0, 1], got {fraction}")
    if market_price <= 0:
        return _reject(account, RejectReason.INVALID_PARAMETER, "Market price must be positive")

    events: list[ExecutionEvent] = []
    fills: list[Fill] = []
    fill_price = apply_slippage(market_price, position.exit_side, position.amount * fraction, account.slippage_config, rng)
    nxt = _close_position(account, position, fraction, fill_price, now, events, fills)
    return Transition(account=_sweep(nxt, now), events=tuple(events), fills=tuple(fills), position_id=position.id)


def set_slippage_config(account: PaperAccount, config: SlippageConfig, now: int) -> Transition:
    if not is_finite_number(config.percent_bps):
        return _reject(account, RejectReason.NON_FINITE_INPUT, "Slippage bps must be finite")
    if config.percent_bps < 0:
        return _reject(account, RejectReason.INVALID_PARAMETER, "Slippage bps cannot be negative")
    logger.info("Slippage set: enabled={} bps={}", config.enabled, config.percent_bps)
    return Transition(account=account.model_copy(update={"slippage_config": config, "updated_at": now}))


def mark_triggered(account: PaperAccount, order_id: str, now: int) -> Transition:
    order = account.find_open_order(order_id)
    if order is None or order.triggered_at is not None:
        return Transition(account=account)
    events: list[ExecutionEvent] = []
    nxt = _replace_order(account, order.model_copy(update={"triggered_at": now}))
    nxt = _with_event(
        nxt,
        now,
        "trigger_fired",
        events,
        symbol=order.symbol,
        order_id=order.id,
        position_id=order.position_id,
        message=f"resting limit {order.price2}",
    )
    return Transition(account=nxt.model_copy(update={"updated_at": now}), events=tuple(events), order_id=order.id)


def enforce_liquidation(
    account: PaperAccount,
    mark_price: float,
    symbol: str,
    now: int,
    policy: MarginPolicy = DEFAULT_POLICY,
) -> Transition:
    risk = RiskManager(policy)
    if not risk.needs_liquidation(account, mark_price, symbol):
        return Transition(account=account)

    level = margin_snapshot(account, mark_price, symbol).margin_level_pct
    events: list[ExecutionEvent] = []
    fills: list[Fill] = []
    logger.warning("Liquidation triggered at margin level {:.1f}%", level)
    nxt = _with_event(account, now, "liquidation", events, symbol=symbol, message=f"Liquidation triggered (margin level {level:.1f}%)")
    nxt = nxt.model_copy(update={"open_orders": tuple(_cancel(o, now) if o.is_open else o for o in nxt.open_orders)})

    for position in sorted(nxt.open_positions, key=position_margin_usd, reverse=True):
        if not risk.needs_liquidation(nxt, mark_price, symbol):
            break
        mark = mark_price if position.symbol == symbol else position.entry_price
        nxt = _close_position(nxt, position, 1.0, mark, now, events, fills)
    return Transition(account=_sweep(nxt, now), events=tuple(events), fills=tuple(fills))
