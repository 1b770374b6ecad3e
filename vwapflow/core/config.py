# vwapflow/core/config.py
from __future__ import annotations

import logging
from typing import Any, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("vwapflow.config")

MAINNET_FAPI = "https://fapi.binance.com"
TESTNET_FAPI = "https://testnet.binancefuture.com"
MAINNET_WS = "wss://fstream.binance.com/ws"
TESTNET_WS = "wss://fstream.binancefuture.com/ws"


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # --- Exchange / API ---
    BINANCE_API_KEY: str = ""
    BINANCE_API_SECRET: str = ""

    # mainnet/testnet; base URLs follow this unless explicitly overridden
    BINANCE_ENV: str = "mainnet"
    BINANCE_FAPI_BASE_URL: str = MAINNET_FAPI
    BINANCE_WS_BASE_URL: str = MAINNET_WS
    BINANCE_RECV_WINDOW: int = 5000

    # --- Execution ---
    EXECUTION_MODE: str = "paper"  # paper/live
    SYMBOL: str = "BTCUSDT"
    LEVERAGE: int = 5
    # balance used for sizing in paper mode when no API key is configured
    PAPER_BALANCE: float = 10000.0

    # --- Sizing / brackets ---
    RISK_PER_TRADE: float = 0.005  # fraction of balance risked per 1R
    BASIC_RR: float = 1.5
    CONVICTION_RR: float = 2.5
    SL_ATR_MULT: float = 1.2

    # --- Risk breakers ---
    MAX_CONSECUTIVE_LOSS: int = 4
    MAX_DRAWDOWN_PCT: float = 6.0
    DAILY_LOSS_LIMIT_R: float = 3.0

    # --- Entry gating ---
    MIN_SCORE: float = 8.0
    TRADE_COOLDOWN_SECONDS: int = 60

    # --- Timers ---
    FLOW_RESET_SECONDS: int = 60
    ATR_REFRESH_SECONDS: int = 60
    OI_REFRESH_SECONDS: int = 60
    BALANCE_SYNC_SECONDS: int = 60
    RECONCILE_SECONDS: int = 10
    STATUS_SECONDS: int = 10
    RECONNECT_DELAY_SECONDS: int = 5
    INIT_RETRY_SECONDS: int = 10

    # --- Notifications ---
    TG_TOKEN: str = ""
    TG_CHAT_ID: str = ""

    # --- Persistence ---
    DB_PATH: str = "data/bot.db"
    TRADE_LOG_PATH: str = "logs/trade_logs.jsonl"

    AUTO_START: bool = True

    # --- HTTP control surface ---
    HTTP_HOST: str = "0.0.0.0"
    HTTP_PORT: int = 8000

    @field_validator("SYMBOL", mode="before")
    @classmethod
    def normalize_symbol(cls, v: Any) -> str:
        return str(v or "").strip().upper()

    def model_post_init(self, __context: Any) -> None:
        self.BINANCE_ENV = (self.BINANCE_ENV or "mainnet").lower().strip()
        self.EXECUTION_MODE = (self.EXECUTION_MODE or "paper").lower().strip()

        # Keep endpoints consistent with BINANCE_ENV unless user explicitly overrides
        if self.BINANCE_ENV == "testnet":
            if self.BINANCE_FAPI_BASE_URL.strip() == MAINNET_FAPI:
                self.BINANCE_FAPI_BASE_URL = TESTNET_FAPI
            if self.BINANCE_WS_BASE_URL.strip() == MAINNET_WS:
                self.BINANCE_WS_BASE_URL = TESTNET_WS

    @property
    def is_testnet(self) -> bool:
        return self.BINANCE_ENV == "testnet"

    @property
    def is_live(self) -> bool:
        return self.EXECUTION_MODE == "live"

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.EXECUTION_MODE not in {"paper", "live"}:
            errors.append("EXECUTION_MODE must be 'paper' or 'live'.")

        if self.BINANCE_ENV not in {"mainnet", "testnet"}:
            errors.append("BINANCE_ENV must be 'mainnet' or 'testnet'.")

        if not self.SYMBOL:
            errors.append("SYMBOL must not be empty.")

        if self.LEVERAGE < 1:
            errors.append("LEVERAGE must be >= 1.")

        if not (0 < self.HTTP_PORT < 65536):
            errors.append("HTTP_PORT must be between 1 and 65535.")

        # Sizing / bracket sanity
        if not (0 < self.RISK_PER_TRADE < 1):
            errors.append("RISK_PER_TRADE must be between 0 and 1 (fraction of balance).")
        if self.SL_ATR_MULT <= 0:
            errors.append("SL_ATR_MULT must be > 0.")
        if self.BASIC_RR <= 0 or self.CONVICTION_RR <= 0:
            errors.append("BASIC_RR and CONVICTION_RR must be > 0.")

        # Breaker sanity
        if self.MAX_CONSECUTIVE_LOSS < 1:
            errors.append("MAX_CONSECUTIVE_LOSS must be >= 1.")
        if self.MAX_DRAWDOWN_PCT <= 0:
            errors.append("MAX_DRAWDOWN_PCT must be > 0.")
        if self.DAILY_LOSS_LIMIT_R <= 0:
            errors.append("DAILY_LOSS_LIMIT_R must be > 0.")

        if self.TRADE_COOLDOWN_SECONDS < 0:
            errors.append("TRADE_COOLDOWN_SECONDS must be >= 0.")

        for name in (
            "FLOW_RESET_SECONDS",
            "ATR_REFRESH_SECONDS",
            "OI_REFRESH_SECONDS",
            "BALANCE_SYNC_SECONDS",
            "RECONCILE_SECONDS",
            "STATUS_SECONDS",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be > 0.")

        # Safety: mismatch guard
        if self.BINANCE_FAPI_BASE_URL.strip() == MAINNET_FAPI and self.BINANCE_ENV != "mainnet":
            errors.append(
                "BINANCE_ENV mismatch: base URL is mainnet but BINANCE_ENV is not 'mainnet'."
            )

        if self.is_live and (not self.BINANCE_API_KEY or not self.BINANCE_API_SECRET):
            errors.append("EXECUTION_MODE=live requires BINANCE_API_KEY and BINANCE_API_SECRET.")

        if not self.TG_TOKEN:
            warnings.append("TG_TOKEN is empty. Telegram alerts are disabled.")

        # Safety warning for real money
        if self.is_live and self.BINANCE_ENV == "mainnet":
            warnings.append(
                "EXECUTION_MODE=live with BINANCE_ENV=mainnet will trade REAL money. "
                "If you meant demo/testnet, set BINANCE_ENV=testnet (recommended)."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
