from __future__ import annotations

import math
from datetime import datetime, timezone

from engine.models import Order, PositionHistoryItem, PositionView
from services.commands import CommandResult


def main_menu_text() -> str:
    return "Paper Trading Desk"


def access_denied_text() -> str:
    return "Access denied. This desk is restricted to admins."


def _ts(ms: int | None) -> str:
    if ms is None:
        return "n/a"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _px(value: float | None) -> str:
    return "n/a" if value is None else f"{value:.2f}"


def balance_text(balances: dict[str, float], margin_level: float | None) -> str:
    if not balances:
        return "No paper account yet. Use /reset to create one."
    lines = [f"{ccy}: {amount:.2f}" for ccy, amount in sorted(balances.items())]
    if margin_level is not None:
        lines.append("Margin level: " + ("n/a" if math.isinf(margin_level) else f"{margin_level:.1f}%"))
    return "Balances\n" + "\n".join(lines)


def positions_text(views: list[PositionView]) -> str:
    if not views:
        return "No open positions."
    lines = []
    for v in views:
        pnl = "n/a" if v.pnl_usd is None else f"{v.pnl_usd:+.2f} USD ({v.pnl_pct:+.2f}%)"
        lines.append(
            f"{v.id}\n  {v.symbol} {v.side.upper()} {v.amount:g} @ {_px(v.entry_price)} x{v.leverage or 1}"
            f"\n  last {_px(v.last_price)}  pnl {pnl}  exits {len(v.exit_orders)}"
        )
    return "Open positions\n" + "\n".join(lines)


def order_line(order: Order) -> str:
    parts = [order.id, order.type, order.side.upper(), order.symbol]
    if order.price is not None:
        parts.append(f"@ {_px(order.price)}")
    if order.price2 is not None:
        parts.append(f"limit {_px(order.price2)}")
    if order.close_percent is not None:
        parts.append(f"{order.close_percent:g}%")
    if order.trailing_offset is not None:
        unit = "%" if order.trailing_offset_unit == "percent" else ""
        parts.append(f"trail {order.trailing_offset:g}{unit} ref {_px(order.trail_ref_price)}")
    if order.oco_group_id:
        parts.append(f"oco {order.oco_group_id}")
    if order.triggered_at is not None:
        parts.append("triggered")
    if not order.is_open:
        parts.append(order.status)
    if order.warning:
        parts.append(f"⚠ {order.warning}")
    return " ".join(parts)


def orders_text(orders: list[Order]) -> str:
    if not orders:
        return "No open orders."
    return "Open orders\n" + "\n".join(order_line(o) for o in orders)


def history_text(items: list[PositionHistoryItem], orders: list[Order]) -> str:
    lines = ["Closed positions"]
    lines += [
        f"{_ts(h.closed_at)} {h.symbol} {h.side.upper()} {h.amount:g} {_px(h.entry_price)} -> {_px(h.exit_price)} pnl {h.realized_pnl:+.2f}"
        for h in items
    ] or ["none"]
    lines.append("Recent orders")
    lines += [f"{_ts(o.filled_at or o.canceled_at)} {order_line(o)}" for o in orders] or ["none"]
    return "\n".join(lines)


def result_text(result: CommandResult, done: str) -> str:
    if not result.ok:
        reason = result.reason.value if result.reason else "error"
        return f"Rejected ({reason}): {result.message}"
    lines = [done]
    if result.order_id:
        lines.append(f"Order: {result.order_id}")
    if result.position_id:
        lines.append(f"Position: {result.position_id}")
    lines += [f"⚠ {w}" for w in result.warnings]
    return "\n".join(lines)


def confirm_reset_text(initial_usd: float) -> str:
    return f"Reset wipes positions, orders and history and starts over with {initial_usd:.2f} USD."
