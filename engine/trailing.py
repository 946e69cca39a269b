"""Trailing-stop reference tracking.

A trailing order keeps the most favorable price seen since placement in
``trail_ref_price`` and derives its trigger level (``price``) from it. For a
sell-side order protecting a long the reference only rises; for a buy-side
order protecting a short it only falls. The trigger level follows the same
one-way ratchet, so a retrace never loosens the stop.
"""

from __future__ import annotations

import math

from engine.models import OffsetUnit, Order, PaperAccount


def trail_delta(ref_price: float, offset: float, unit: OffsetUnit | None) -> float:
    if unit == "percent":
        return ref_price * offset / 100.0
    return offset


def limit_for_trigger(order: Order, trigger: float) -> float:
    offset = order.limit_offset if order.limit_offset is not None else 0.0
    return trigger - offset if order.side == "sell" else trigger + offset


def has_valid_offset(order: Order) -> bool:
    raw = order.trailing_offset
    return raw is not None and math.isfinite(raw) and raw > 0


def update_trailing_order(order: Order, last_price: float) -> Order:
    if not order.is_trailing or not order.is_open or order.triggered_at is not None:
        return order
    if not has_valid_offset(order) or not math.isfinite(last_price) or last_price <= 0:
        return order

    ref = order.trail_ref_price
    if ref is None or not math.isfinite(ref) or ref <= 0:
        ref = last_price

    if order.side == "sell":
        next_ref = max(ref, last_price)
        trigger = next_ref - trail_delta(next_ref, order.trailing_offset, order.trailing_offset_unit)
        if order.price is not None and math.isfinite(order.price):
            trigger = max(trigger, order.price)
    else:
        next_ref = min(ref, last_price)
        trigger = next_ref + trail_delta(next_ref, order.trailing_offset, order.trailing_offset_unit)
        if order.price is not None and math.isfinite(order.price):
            trigger = min(trigger, order.price)

    update: dict = {}
    if next_ref != order.trail_ref_price:
        update["trail_ref_price"] = next_ref
    if trigger != order.price:
        update["price"] = trigger
    if order.type == "trailing-stop-limit":
        limit = limit_for_trigger(order, trigger)
        if limit != order.price2:
            update["price2"] = limit
    if not update:
        return order
    return order.model_copy(update=update)


def reseed_trailing_order(order: Order, ref_price: float | None) -> Order:
    """Recompute trigger and limit from ``ref_price``, e.g. after the offset changed."""
    cleared = order.model_copy(update={"price": None, "price2": None, "trail_ref_price": None})
    if ref_price is None or not math.isfinite(ref_price) or ref_price <= 0:
        return cleared
    return update_trailing_order(cleared, ref_price)


def ratchet_trailing_orders(account: PaperAccount, symbol: str, last_price: float) -> tuple[PaperAccount, list[Order]]:
    moved: list[Order] = []
    orders: list[Order] = []
    for order in account.open_orders:
        if order.symbol != symbol or not order.is_trailing or not order.is_open:
            orders.append(order)
            continue
        if order.is_exit and account.find_position(order.position_id) is None:
            orders.append(order)
            continue
        updated = update_trailing_order(order, last_price)
        if updated is not order:
            moved.append(updated)
        orders.append(updated)
    if not moved:
        return account, moved
    return account.model_copy(update={"open_orders": tuple(orders)}), moved
