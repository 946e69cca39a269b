from __future__ import annotations

import time

import httpx
from loguru import logger

from adapters.base import PriceFeed, candle_points
from engine.models import PricePoint, Tick

DEFAULT_INTERVAL_MS = 60_000


class HttpPriceFeed(PriceFeed):
    """Polls a JSON ticker bridge.

    ``GET {base_url}/ticker?symbol=X`` -> ``{"price": .., "timestamp": ..}``
    ``GET {base_url}/klines?symbol=X&limit=N`` -> ``{"interval_ms": .., "rows": [[open_time_ms, o, h, l, c], ..]}``
    """

    def __init__(self, base_url: str, transport: httpx.AsyncBaseTransport | None = None, timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.timeout = timeout

    async def fetch_tick(self, symbol: str) -> Tick | None:
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                resp = await client.get(f"{self.base_url}/ticker", params={"symbol": symbol})
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Ticker request failed for {}: {}", symbol, exc)
            return None
        try:
            price = float(data["price"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed ticker payload for {}: {}", symbol, data)
            return None
        timestamp = data.get("timestamp")
        if not isinstance(timestamp, int):
            timestamp = int(time.time() * 1000)
        return Tick(symbol=data.get("symbol", symbol), price=price, timestamp=timestamp)

    async def fetch_history(self, symbol: str, limit: int = 150) -> list[PricePoint]:
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                resp = await client.get(f"{self.base_url}/klines", params={"symbol": symbol, "limit": limit})
                resp.raise_for_status()
                data = resp.json()
            interval_ms = int(data.get("interval_ms", DEFAULT_INTERVAL_MS))
            rows = data["rows"]
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("History request failed for {}: {}", symbol, exc)
            return []
        if not isinstance(rows, list):
            logger.warning("Malformed history payload for {}: {}", symbol, data)
            return []
        points: list[PricePoint] = []
        for row in rows:
            try:
                ohlc = (float(row[1]), float(row[2]), float(row[3]), float(row[4]))
                points.extend(candle_points(int(row[0]), ohlc, interval_ms))
            except (IndexError, TypeError, ValueError):
                continue
        return points
