from __future__ import annotations

import math
import random

from engine.models import OrderSide, SlippageConfig

DEFAULT_SLIPPAGE_CONFIG = SlippageConfig(enabled=True, model="percentage", percent_bps=2.0)

SLIPPAGE_JITTER_LOW = 0.8
SLIPPAGE_JITTER_HIGH = 1.2


def apply_slippage(
    price: float,
    side: OrderSide,
    quantity: float,
    config: SlippageConfig | None,
    rng: random.Random | None = None,
) -> float:
    if not math.isfinite(price) or price <= 0:
        return price
    if config is None or not config.enabled:
        return price

    bps = config.percent_bps if math.isfinite(config.percent_bps) else 0.0
    magnitude = price * (max(0.0, bps) / 10_000.0)
    draw = (rng or random).uniform(SLIPPAGE_JITTER_LOW, SLIPPAGE_JITTER_HIGH)
    slip = magnitude * draw
    # quantity is part of the contract for size-dependent models; unused here
    return price + slip if side == "buy" else price - slip
