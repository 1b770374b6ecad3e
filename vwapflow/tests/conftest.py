import pytest


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    """
    Ensure tests never hit live trading or real Telegram accidentally.
    """
    monkeypatch.setenv("EXECUTION_MODE", "paper")
    monkeypatch.setenv("BINANCE_ENV", "testnet")
    monkeypatch.setenv("SYMBOL", "BTCUSDT")
    monkeypatch.delenv("BINANCE_API_KEY", raising=False)
    monkeypatch.delenv("BINANCE_API_SECRET", raising=False)
    monkeypatch.delenv("TG_TOKEN", raising=False)
    monkeypatch.delenv("TG_CHAT_ID", raising=False)
