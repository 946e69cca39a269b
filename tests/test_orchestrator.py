import asyncio
import random

import pytest

from adapters.base import PriceFeed
from engine.core import PaperTradingEngine
from engine.models import PricePoint, RejectReason, SlippageConfig, Tick
from engine.persistence import PaperAccountGateway
from services.commands import CommandSurface, OpenPosition, PlaceExitOrder, ResetAccount
from services.config_service import EngineSettings
from services.notifier import Notifier
from services.orchestrator import EngineOrchestrator, SessionRunner

NOW = 1_700_000_000_000


class StaticFeed(PriceFeed):
    async def fetch_tick(self, symbol):
        return Tick(symbol, 100.0, NOW)


def test_runner_serializes_ticks_and_commands(store):
    engine = PaperTradingEngine(store, user_id=1, rng=random.Random(0), autoflush=False)
    surface = CommandSurface(engine, default_slippage=SlippageConfig(enabled=False), clock=lambda: NOW)
    alerts = []

    async def on_fills(fills):
        alerts.extend(fills)

    async def scenario():
        runner = SessionRunner(engine, surface, on_fills=on_fills)
        await runner.start()
        assert (await runner.execute(ResetAccount(initial_usd=10000.0))).ok
        await runner.submit_tick(Tick("BTCUSDT", 50000.0, NOW))
        opened = await runner.execute(OpenPosition(symbol="BTCUSDT", side="long", amount=0.1))
        placed = await runner.execute(
            PlaceExitOrder(position_id=opened.position_id, order_type="stop-loss", price=49000.0, close_percent=50.0)
        )
        for i, price in enumerate((50500.0, 49200.0, 48900.0)):
            await runner.submit_tick(Tick("BTCUSDT", price, NOW + 1000 * (i + 1)))
        await runner.stop()
        return placed

    placed = asyncio.run(scenario())

    assert placed.ok
    assert [f.order_id for f in alerts] == [placed.order_id]
    stored = PaperAccountGateway(store, user_id=1).read()
    assert stored.open_positions[0].amount == pytest.approx(0.05)
    assert stored.usd == pytest.approx(5000.0 + 0.05 * 48900.0)


def test_orchestrator_creates_account_and_runs_commands(store):
    settings = EngineSettings(SYMBOLS="BTCUSDT", INITIAL_USD=2500.0, POLL_INTERVAL_SECONDS=60.0)
    orchestrator = EngineOrchestrator(store, settings, Notifier(), feed=StaticFeed())

    async def scenario():
        await orchestrator.start(5, chat_id="5")
        missing = await orchestrator.execute(5, OpenPosition(symbol="ETHUSDT", side="long", amount=1.0))
        big = await orchestrator.execute(5, OpenPosition(symbol="BTCUSDT", side="long", amount=1.0, entry_price=5000.0))
        balances = orchestrator.engine(5).balances()
        await orchestrator.stop_all()
        return missing, big, balances

    missing, big, balances = asyncio.run(scenario())

    assert missing.reason == RejectReason.NO_MARKET_PRICE
    assert big.reason == RejectReason.INSUFFICIENT_BALANCE
    assert balances == {"USD": 2500.0}
    assert PaperAccountGateway(store, user_id=5).read().usd == 2500.0


class HistoryFeed(StaticFeed):
    async def fetch_history(self, symbol, limit=150):
        if symbol == "ETHUSDT":
            raise RuntimeError("no klines")
        return [PricePoint(NOW - 2000, 98.0), PricePoint(NOW - 1000, 99.0)]


def test_runner_seeds_history_on_start(store):
    engine = PaperTradingEngine(store, user_id=3, autoflush=False)
    surface = CommandSurface(engine, clock=lambda: NOW)

    async def scenario():
        runner = SessionRunner(engine, surface, feed=HistoryFeed(), symbols=["BTCUSDT", "ETHUSDT"], poll_interval=60.0)
        await runner.start()
        seeded = engine.prices.history("BTCUSDT")
        await runner.stop()
        return seeded

    seeded = asyncio.run(scenario())

    assert [(p.timestamp, p.price) for p in seeded] == [(NOW - 1000, 99.0), (NOW - 2000, 98.0)]
    assert engine.prices.last_price("ETHUSDT") in (None, 100.0)
