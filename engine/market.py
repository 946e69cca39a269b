from __future__ import annotations

from typing import Iterable

from loguru import logger

from engine.ledger import is_finite_number
from engine.models import PricePoint, Tick

MERGE_WINDOW_MS = 250
MAX_POINTS = 600


class PriceBook:
    def __init__(self, merge_window_ms: int = MERGE_WINDOW_MS, max_points: int = MAX_POINTS) -> None:
        self.merge_window_ms = merge_window_ms
        self.max_points = max_points
        self._history: dict[str, list[PricePoint]] = {}
        self._last: dict[str, float] = {}

    def record(self, tick: Tick) -> bool:
        if not tick.symbol or not is_finite_number(tick.price) or tick.price <= 0:
            logger.debug("Price book ignored tick {} {}", tick.symbol, tick.price)
            return False
        points = self._history.setdefault(tick.symbol, [])
        point = PricePoint(timestamp=tick.timestamp, price=float(tick.price))
        if points and tick.timestamp - points[0].timestamp < self.merge_window_ms:
            points[0] = point
        else:
            points.insert(0, point)
            del points[self.max_points :]
        self._last[tick.symbol] = point.price
        return True

    def seed(self, symbol: str, points: Iterable[PricePoint]) -> int:
        """Merge backfilled points into the history.

        Existing points win on equal timestamps. The merged history is sorted
        newest first and capped, and a last price already set by a live tick is
        kept. Returns the number of points added.
        """
        valid = [p for p in points if is_finite_number(p.timestamp, p.price) and p.price > 0]
        if not symbol or not valid:
            return 0
        by_ts = {p.timestamp: p for p in self._history.get(symbol, [])}
        added = 0
        for p in valid:
            if p.timestamp not in by_ts:
                by_ts[p.timestamp] = PricePoint(timestamp=p.timestamp, price=float(p.price))
                added += 1
        merged = sorted(by_ts.values(), key=lambda p: p.timestamp, reverse=True)[: self.max_points]
        self._history[symbol] = merged
        if symbol not in self._last and merged:
            self._last[symbol] = merged[0].price
        logger.debug("Seeded {} points for {}", added, symbol)
        return added

    def last_price(self, symbol: str) -> float | None:
        return self._last.get(symbol)

    def history(self, symbol: str, limit: int | None = None) -> list[PricePoint]:
        points = self._history.get(symbol, [])
        return list(points if limit is None else points[:limit])
