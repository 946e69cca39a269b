from __future__ import annotations

import asyncio
import time

from binance.client import Client
from binance.exceptions import BinanceAPIException
from loguru import logger

from adapters.base import PriceFeed, candle_points
from engine.models import PricePoint, Tick

KLINE_INTERVAL_MS = 60_000


class BinancePriceFeed(PriceFeed):
    def __init__(self, client: Client | None = None) -> None:
        # public market data only, no keys
        self.client = client or Client("", "")

    async def fetch_tick(self, symbol: str) -> Tick | None:
        try:
            ticker = await asyncio.to_thread(self.client.get_symbol_ticker, symbol=symbol)
        except BinanceAPIException as exc:
            logger.warning("Binance ticker failed for {}: {}", symbol, exc.message)
            return None
        return Tick(symbol=symbol, price=float(ticker["price"]), timestamp=int(time.time() * 1000))

    async def fetch_history(self, symbol: str, limit: int = 150) -> list[PricePoint]:
        try:
            klines = await asyncio.to_thread(
                self.client.get_klines, symbol=symbol, interval=Client.KLINE_INTERVAL_1MINUTE, limit=limit
            )
        except BinanceAPIException as exc:
            logger.warning("Binance klines failed for {}: {}", symbol, exc.message)
            return []
        points: list[PricePoint] = []
        for k in klines:
            try:
                ohlc = (float(k[1]), float(k[2]), float(k[3]), float(k[4]))
                points.extend(candle_points(int(k[0]), ohlc, KLINE_INTERVAL_MS))
            except (IndexError, TypeError, ValueError):
                continue
        return points
