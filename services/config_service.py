from __future__ import annotations

from typing import Any

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

from data.store import BaseStore
from engine.models import SlippageConfig
from risk.manager import MarginPolicy


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    TELEGRAM_BOT_TOKEN: str = ""
    ADMIN_TELEGRAM_IDS: str = ""
    ALLOW_ALL_USERS: bool = True
    FEED: str = "binance"
    FEED_URL: str = ""
    SYMBOLS: str = "BTCUSDT"
    POLL_INTERVAL_SECONDS: float = 2.0
    INITIAL_USD: float = 10000.0
    SLIPPAGE_ENABLED: bool = True
    SLIPPAGE_BPS: float = 2.0
    MAX_LEVERAGE: int = 5
    MARGIN_CALL_LEVEL_PCT: float = 100.0
    LIQUIDATION_LEVEL_PCT: float = 40.0
    TICK_MERGE_WINDOW_MS: int = 250
    PRICE_HISTORY_POINTS: int = 600
    ORDER_HISTORY_DISPLAY: int = 10
    RANDOM_SEED: int | None = None
    DATABASE_PATH: str = "./paper.db"
    DATABASE_URL: str = ""


class RuntimeConfig(BaseModel):
    feed: str
    symbols: list[str]
    poll_interval_seconds: float
    initial_usd: float
    slippage_enabled: bool
    slippage_bps: float
    max_leverage: int
    margin_call_level_pct: float
    liquidation_level_pct: float
    order_history_display: int

    @property
    def slippage(self) -> SlippageConfig:
        return SlippageConfig(enabled=self.slippage_enabled, percent_bps=self.slippage_bps)

    @property
    def margin_policy(self) -> MarginPolicy:
        return MarginPolicy(
            max_leverage=self.max_leverage,
            margin_call_level_pct=self.margin_call_level_pct,
            liquidation_level_pct=self.liquidation_level_pct,
        )


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


class ConfigService:
    def __init__(self, store: BaseStore, base: EngineSettings) -> None:
        self.store = store
        self.base = base

    def load(self, user_id: int) -> RuntimeConfig:
        def _get(key: str, default: Any) -> Any:
            return self.store.get_setting(user_id, key, default)

        symbols = _get("SYMBOLS", self.base.SYMBOLS)
        if isinstance(symbols, str):
            symbols = [s.strip().upper() for s in symbols.split(",") if s.strip()]
        return RuntimeConfig(
            feed=_get("FEED", self.base.FEED),
            symbols=symbols,
            poll_interval_seconds=float(_get("POLL_INTERVAL_SECONDS", self.base.POLL_INTERVAL_SECONDS)),
            initial_usd=float(_get("INITIAL_USD", self.base.INITIAL_USD)),
            slippage_enabled=_as_bool(_get("SLIPPAGE_ENABLED", self.base.SLIPPAGE_ENABLED)),
            slippage_bps=float(_get("SLIPPAGE_BPS", self.base.SLIPPAGE_BPS)),
            max_leverage=int(_get("MAX_LEVERAGE", self.base.MAX_LEVERAGE)),
            margin_call_level_pct=float(_get("MARGIN_CALL_LEVEL_PCT", self.base.MARGIN_CALL_LEVEL_PCT)),
            liquidation_level_pct=float(_get("LIQUIDATION_LEVEL_PCT", self.base.LIQUIDATION_LEVEL_PCT)),
            order_history_display=int(_get("ORDER_HISTORY_DISPLAY", self.base.ORDER_HISTORY_DISPLAY)),
        )

    def update_for_user(self, user_id: int, key: str, value: Any) -> None:
        self.store.set_setting(user_id, key, value)
