from __future__ import annotations

from abc import ABC, abstractmethod

from engine.models import PricePoint, Tick

# offsets of open, high, low and close inside one candle
CANDLE_FRACTIONS = (0.05, 0.35, 0.55, 0.85)


def candle_points(open_time_ms: int, prices: tuple[float, float, float, float], interval_ms: int) -> list[PricePoint]:
    return [
        PricePoint(timestamp=round(open_time_ms + interval_ms * frac), price=float(price))
        for frac, price in zip(CANDLE_FRACTIONS, prices)
    ]


class PriceFeed(ABC):
    @abstractmethod
    async def fetch_tick(self, symbol: str) -> Tick | None:
        raise NotImplementedError

    async def fetch_ticks(self, symbols: list[str]) -> list[Tick]:
        ticks = []
        for symbol in symbols:
            tick = await self.fetch_tick(symbol)
            if tick is not None:
                ticks.append(tick)
        return ticks

    async def fetch_history(self, symbol: str, limit: int = 150) -> list[PricePoint]:
        """Recent candles expanded to price points; feeds without history return none."""
        return []
