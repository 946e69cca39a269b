from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from loguru import logger

from adapters.base import PriceFeed
from adapters.binance_feed import BinancePriceFeed
from adapters.http_feed import HttpPriceFeed
from data.store import BaseStore
from engine.core import PaperTradingEngine
from engine.idempotency import Idempotency
from engine.market import PriceBook
from engine.models import Fill, Tick
from services.commands import Command, CommandResult, CommandSurface
from services.config_service import ConfigService, EngineSettings
from services.notifier import Notifier
from services.scheduler import wait_next_poll

FillCallback = Callable[[Sequence[Fill]], Awaitable[None]]


@dataclass
class _TickMessage:
    tick: Tick


@dataclass
class _CommandMessage:
    command: Command
    future: asyncio.Future


class SessionRunner:
    """Feeds ticks and commands for one session through a single consumer task."""

    def __init__(
        self,
        engine: PaperTradingEngine,
        surface: CommandSurface,
        feed: PriceFeed | None = None,
        symbols: Sequence[str] = (),
        poll_interval: float = 2.0,
        on_fills: FillCallback | None = None,
    ) -> None:
        self.engine = engine
        self.surface = surface
        self.feed = feed
        self.symbols = list(symbols)
        self.poll_interval = poll_interval
        self.on_fills = on_fills
        self.queue: asyncio.Queue = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        await self._seed_history()
        self._tasks = [asyncio.create_task(self._consume())]
        if self.feed is not None and self.symbols:
            self._tasks.append(asyncio.create_task(self._poll()))
        logger.info("Session runner started for user {}", self.engine.user_id)

    async def stop(self) -> None:
        await self.queue.join()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await asyncio.to_thread(self.engine.flush)
        logger.info("Session runner stopped for user {}", self.engine.user_id)

    async def submit_tick(self, tick: Tick) -> None:
        await self.queue.put(_TickMessage(tick))

    async def execute(self, command: Command) -> CommandResult:
        future = asyncio.get_running_loop().create_future()
        await self.queue.put(_CommandMessage(command, future))
        return await future

    async def _consume(self) -> None:
        while True:
            message = await self.queue.get()
            try:
                await self._handle(message)
            except Exception as exc:
                logger.exception("Session loop error: {}", exc)
                if isinstance(message, _CommandMessage) and not message.future.done():
                    message.future.set_exception(exc)
            try:
                if not await asyncio.to_thread(self.engine.flush):
                    logger.warning(
                        "Paper account for user {} not persisted: {}", self.engine.user_id, self.engine.last_persist_error
                    )
            finally:
                self.queue.task_done()

    async def _handle(self, message: _TickMessage | _CommandMessage) -> None:
        if isinstance(message, _TickMessage):
            outcome = self.engine.on_tick(message.tick)
            if outcome.fills and self.on_fills:
                await self.on_fills(outcome.fills)
            return
        result = self.surface.dispatch(message.command)
        if not message.future.done():
            message.future.set_result(result)

    async def _seed_history(self) -> None:
        if self.feed is None:
            return
        for symbol in self.symbols:
            try:
                points = await self.feed.fetch_history(symbol)
            except Exception as exc:
                logger.exception("Price history error for {}: {}", symbol, exc)
                continue
            self.engine.prices.seed(symbol, points)

    async def _poll(self) -> None:
        while True:
            try:
                ticks = await self.feed.fetch_ticks(self.symbols)
            except Exception as exc:
                logger.exception("Price feed error: {}", exc)
                ticks = []
            for tick in ticks:
                await self.submit_tick(tick)
            await wait_next_poll(self.poll_interval)


class EngineOrchestrator:
    def __init__(self, store: BaseStore, settings: EngineSettings, notifier: Notifier, feed: PriceFeed | None = None) -> None:
        self.store = store
        self.settings = settings
        self.notifier = notifier
        self.config_service = ConfigService(store, settings)
        self._feed = feed
        self._runners: dict[int, SessionRunner] = {}

    def _build_feed(self, kind: str) -> PriceFeed:
        if self._feed is not None:
            return self._feed
        if kind == "binance":
            self._feed = BinancePriceFeed()
        elif kind == "http":
            self._feed = HttpPriceFeed(self.settings.FEED_URL)
        else:
            raise ValueError(f"Unknown price feed: {kind}")
        return self._feed

    def _build_runner(self, user_id: int, chat_id: str | None) -> SessionRunner:
        config = self.config_service.load(user_id)
        engine = PaperTradingEngine(
            self.store,
            user_id,
            price_book=PriceBook(self.settings.TICK_MERGE_WINDOW_MS, self.settings.PRICE_HISTORY_POINTS),
            policy=config.margin_policy,
            rng=random.Random(self.settings.RANDOM_SEED),
            autoflush=False,
        )
        engine.hydrate()
        engine.ensure_account(config.initial_usd, config.slippage)
        surface = CommandSurface(
            engine,
            Idempotency(self.store, user_id),
            initial_usd=config.initial_usd,
            default_slippage=config.slippage,
        )

        async def _alert(fills: Sequence[Fill]) -> None:
            await self.notifier.send_fills(chat_id, fills)

        return SessionRunner(
            engine,
            surface,
            feed=self._build_feed(config.feed),
            symbols=config.symbols,
            poll_interval=config.poll_interval_seconds,
            on_fills=_alert,
        )

    async def start(self, user_id: int, chat_id: str | None = None) -> SessionRunner:
        runner = self._runners.get(user_id)
        if runner and runner.running:
            return runner
        runner = self._build_runner(user_id, chat_id)
        self._runners[user_id] = runner
        await runner.start()
        return runner

    def engine(self, user_id: int) -> PaperTradingEngine | None:
        runner = self._runners.get(user_id)
        return runner.engine if runner else None

    async def execute(self, user_id: int, command: Command, chat_id: str | None = None) -> CommandResult:
        runner = await self.start(user_id, chat_id=chat_id)
        return await runner.execute(command)

    async def stop(self, user_id: int) -> None:
        runner = self._runners.pop(user_id, None)
        if runner:
            await runner.stop()

    async def stop_all(self) -> None:
        for user_id in list(self._runners):
            await self.stop(user_id)
