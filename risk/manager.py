from __future__ import annotations

import math
from dataclasses import dataclass

from engine.models import PaperAccount, Position, RejectReason


@dataclass(frozen=True)
class MarginPolicy:
    max_leverage: int = 5
    margin_call_level_pct: float = 100.0
    liquidation_level_pct: float = 40.0


DEFAULT_POLICY = MarginPolicy()


@dataclass
class RiskDecision:
    allowed: bool
    reason: RejectReason | None
    message: str | None = None


@dataclass(frozen=True)
class MarginSnapshot:
    equity_usd: float
    used_margin_usd: float
    margin_level_pct: float


def _finite(value: float | None) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def sanitize_leverage(raw: float | None, policy: MarginPolicy = DEFAULT_POLICY) -> int:
    lev = raw if _finite(raw) else 1
    return max(1, min(policy.max_leverage, math.floor(lev + 0.5)))


def position_margin_usd(position: Position) -> float:
    if _finite(position.margin_used_usd) and position.margin_used_usd >= 0:
        return float(position.margin_used_usd)
    if _finite(position.reserved_usd) and position.reserved_usd >= 0:
        return float(position.reserved_usd)
    notional = position.amount * position.entry_price
    return notional if math.isfinite(notional) and notional > 0 else 0.0


def unrealized_pnl_usd(position: Position, mark_price: float | None) -> float:
    if not _finite(mark_price) or mark_price <= 0:
        return 0.0
    diff = mark_price - position.entry_price if position.side == "long" else position.entry_price - mark_price
    pnl = diff * position.amount
    return pnl if math.isfinite(pnl) else 0.0


def margin_snapshot(account: PaperAccount, mark_price: float | None, mark_symbol: str | None = None) -> MarginSnapshot:
    used = 0.0
    upnl = 0.0
    for pos in account.open_positions:
        used += position_margin_usd(pos)
        mark = mark_price if mark_symbol is None or pos.symbol == mark_symbol else pos.entry_price
        upnl += unrealized_pnl_usd(pos, mark)
    used = max(0.0, used) if math.isfinite(used) else 0.0
    upnl = upnl if math.isfinite(upnl) else 0.0
    equity = account.usd + used + upnl
    level = (equity / used) * 100.0 if used > 0 else math.inf
    return MarginSnapshot(equity_usd=equity, used_margin_usd=used, margin_level_pct=level)


class RiskManager:
    def __init__(self, policy: MarginPolicy = DEFAULT_POLICY) -> None:
        self.policy = policy

    def evaluate_open(
        self,
        account: PaperAccount,
        margin_usd: float,
        mark_price: float,
        mark_symbol: str | None = None,
    ) -> RiskDecision:
        if not _finite(margin_usd) or margin_usd <= 0:
            return RiskDecision(False, RejectReason.INVALID_PARAMETER, "Invalid margin requirement")
        if account.usd < margin_usd:
            return RiskDecision(
                False,
                RejectReason.INSUFFICIENT_BALANCE,
                f"Insufficient free USD margin: need {margin_usd:.2f}, have {account.usd:.2f}",
            )

        snap = margin_snapshot(account, mark_price, mark_symbol)
        next_used = snap.used_margin_usd + margin_usd
        next_level = (snap.equity_usd / next_used) * 100.0 if next_used > 0 else math.inf
        if next_level < self.policy.margin_call_level_pct:
            return RiskDecision(False, RejectReason.MARGIN_LEVEL_TOO_LOW, f"Margin level too low ({next_level:.1f}%)")
        return RiskDecision(True, None)

    def needs_liquidation(self, account: PaperAccount, mark_price: float, mark_symbol: str | None = None) -> bool:
        if not account.open_positions:
            return False
        snap = margin_snapshot(account, mark_price, mark_symbol)
        return snap.margin_level_pct < self.policy.liquidation_level_pct
